"""Shared pytest fixtures for release-driver tests."""

import subprocess
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


MANIFEST_TEMPLATE = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: orders
  labels:
    app: orders
spec:
  replicas: 3
  template:
    spec:
      containers:
        - name: orders
          image: registry.example.com/acme/orders:{tag}  # managed by release-driver
        - name: proxy
          image: registry.example.com/acme/orders-proxy:7
"""


def git(cwd: Path, *args: str) -> str:
    """Run git with a fixed identity; raise on failure."""
    result = subprocess.run(
        ['git', '-c', 'user.name=test', '-c', 'user.email=test@example.com', *args],
        cwd=cwd, capture_output=True, text=True, check=True,
    )
    return result.stdout


@pytest.fixture
def release_config_dir(tmp_path):
    """Create a temporary release config directory.

    Creates:
    - release.yaml (service 'orders')
    - secrets.yaml (registry password, sonar token)
    """
    (tmp_path / 'release.yaml').write_text("""
service: orders
source:
  repo: https://git.example.com/acme/orders.git
  branch: main
registry:
  uri: registry.example.com/acme
  username: ci-bot
  retention: 5
cluster:
  region: eu-west-1
  name: prod
  namespace: shop
  rollout_timeout: 120
  poll_interval: 2
manifest:
  repo: https://git.example.com/acme/gitops.git
  branch: main
  path: apps/orders/deployment.yaml
quality_gate:
  blocking: false
  timeout: 60
sonar:
  host_url: https://sonar.example.com/
  project_key: acme-orders
scan:
  blocking_severity: critical
paths:
  workspace: ws
  state: state
  reports: reports
""")

    (tmp_path / 'secrets.yaml').write_text("""
registry_passwords:
  ci-bot: "s3cret"
sonar_tokens:
  acme-orders: "squ_token"
""")
    return tmp_path


@pytest.fixture
def release_config(release_config_dir):
    """Loaded ReleaseConfig for the 'orders' service."""
    from config import ReleaseConfig
    return ReleaseConfig(name='', config_file=release_config_dir / 'release.yaml')


@pytest.fixture
def manifest_origin(tmp_path):
    """Bare manifest repository whose main branch holds orders:40."""
    origin = tmp_path / 'origin.git'
    seed = tmp_path / 'seed'
    git(tmp_path, 'init', '--quiet', '--bare', str(origin))
    git(origin, 'symbolic-ref', 'HEAD', 'refs/heads/main')

    git(tmp_path, 'init', '--quiet', str(seed))
    git(seed, 'symbolic-ref', 'HEAD', 'refs/heads/main')
    manifest = seed / 'apps' / 'orders' / 'deployment.yaml'
    manifest.parent.mkdir(parents=True)
    manifest.write_text(MANIFEST_TEMPLATE.format(tag='40'))
    (seed / 'README.md').write_text('gitops\n')
    git(seed, 'add', '-A')
    git(seed, 'commit', '--quiet', '-m', 'initial')
    git(seed, 'remote', 'add', 'origin', str(origin))
    git(seed, 'push', '--quiet', 'origin', 'main')
    return origin


@pytest.fixture
def clone_manifests(tmp_path, manifest_origin):
    """Factory returning fresh clones of the manifest origin."""
    def _clone(name: str) -> Path:
        dest = tmp_path / name
        git(tmp_path, 'clone', '--quiet', '--branch', 'main', str(manifest_origin), str(dest))
        return dest
    return _clone
