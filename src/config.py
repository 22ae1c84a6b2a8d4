"""Release configuration management.

Configuration is loaded from a release YAML file plus an optional sibling
secrets file:
- release.yaml: service, source, registry, cluster, manifest and policy settings
- secrets.yaml: sensitive values (decrypted), resolved by key reference

Resolution order for the release file:
1. --config flag
2. $RELEASE_DRIVER_CONFIG environment variable
3. ./release.yaml in the current directory

The merge order is: defaults → release.yaml → environment overrides.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from publisher import RetentionPolicy

CONFIG_ENV_VAR = 'RELEASE_DRIVER_CONFIG'

# Environment variables that override release.yaml values
ENV_OVERRIDES = {
    'RELEASE_REGISTRY_URI': 'registry_uri',
    'RELEASE_NAMESPACE': 'namespace',
    'RELEASE_ROLLOUT_TIMEOUT': 'rollout_timeout',
    'RELEASE_REGISTRY_PASSWORD': 'registry_password',
    'RELEASE_SONAR_TOKEN': 'sonar_token',
}

SEVERITIES = ('UNKNOWN', 'LOW', 'MEDIUM', 'HIGH', 'CRITICAL')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class ReleaseConfig:
    """Configuration for releasing one service.

    Passed explicitly to every stage action; nothing in the pipeline reads
    registry, cluster or counter settings from process-global state.
    """
    name: str
    config_file: Optional[Path] = None

    # Source
    source_repo: str = ''
    source_branch: str = 'main'
    source_subdir: str = '.'

    # Registry
    registry_uri: str = ''
    registry_username: str = ''
    retention: str = 'all'
    registry_insecure: bool = False

    # Cluster
    cluster_region: str = ''
    cluster_name: str = ''
    namespace: str = 'default'
    workload: str = ''
    container: str = ''
    rollout_timeout: int = 300
    poll_interval: float = 5.0

    # Manifest repository (GitOps)
    manifest_repo: str = ''
    manifest_branch: str = 'main'
    manifest_path: str = ''

    # Policies
    quality_gate_blocking: bool = False
    quality_gate_timeout: int = 300
    scan_blocking_severity: Optional[str] = None

    # Build counter
    version_source: str = 'file'
    version_env_var: str = 'BUILD_NUMBER'

    # External tools
    credentials_command: list = field(default_factory=list)
    sonar_host_url: str = ''
    sonar_project_key: str = ''

    # Local paths
    workspace_dir: Path = field(default_factory=lambda: Path('.workspace'))
    state_dir: Path = field(default_factory=lambda: Path('.states'))
    report_dir: Path = field(default_factory=lambda: Path('reports'))

    # Secrets (resolved from secrets.yaml or environment at load time)
    registry_password: str = field(default='', repr=False)
    sonar_token: str = field(default='', repr=False)

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)

        if self.config_file is not None and self.config_file.exists():
            self._load_from_yaml()
        self._apply_env_overrides()

        # Derive workload/container from service name if not set
        if not self.workload:
            self.workload = self.name
        if not self.container:
            self.container = self.name

        for attr in ('workspace_dir', 'state_dir', 'report_dir'):
            value = getattr(self, attr)
            if isinstance(value, str):
                value = Path(value)
            if not value.is_absolute() and self.config_file is not None:
                value = self.config_file.parent / value
            setattr(self, attr, value)

    def _load_from_yaml(self):
        """Load settings from the release file with secrets resolution."""
        data = _parse_yaml(self.config_file)

        if service := data.get('service'):
            self.name = service

        source = data.get('source') or {}
        self.source_repo = source.get('repo', self.source_repo)
        self.source_branch = source.get('branch', self.source_branch)
        self.source_subdir = source.get('subdir', self.source_subdir)

        registry = data.get('registry') or {}
        self.registry_uri = str(registry.get('uri') or self.registry_uri).rstrip('/')
        self.registry_username = registry.get('username', self.registry_username)
        self.retention = str(registry.get('retention', self.retention))
        self.registry_insecure = bool(registry.get('insecure', self.registry_insecure))

        cluster = data.get('cluster') or {}
        self.cluster_region = cluster.get('region', self.cluster_region)
        self.cluster_name = cluster.get('name', self.cluster_name)
        self.namespace = cluster.get('namespace', self.namespace)
        self.workload = cluster.get('workload', self.workload)
        self.container = cluster.get('container', self.container)
        self.rollout_timeout = int(cluster.get('rollout_timeout', self.rollout_timeout))
        self.poll_interval = float(cluster.get('poll_interval', self.poll_interval))

        manifest = data.get('manifest') or {}
        self.manifest_repo = manifest.get('repo', self.manifest_repo)
        self.manifest_branch = manifest.get('branch', self.manifest_branch)
        self.manifest_path = manifest.get('path', self.manifest_path)

        gate = data.get('quality_gate') or {}
        self.quality_gate_blocking = bool(gate.get('blocking', self.quality_gate_blocking))
        self.quality_gate_timeout = int(gate.get('timeout', self.quality_gate_timeout))

        scan = data.get('scan') or {}
        if severity := scan.get('blocking_severity'):
            self.scan_blocking_severity = str(severity).upper()

        version = data.get('version') or {}
        self.version_source = version.get('source', self.version_source)
        self.version_env_var = version.get('env_var', self.version_env_var)

        credentials = data.get('credentials') or {}
        if command := credentials.get('command'):
            self.credentials_command = list(command)

        sonar = data.get('sonar') or {}
        self.sonar_host_url = str(sonar.get('host_url') or self.sonar_host_url).rstrip('/')
        self.sonar_project_key = sonar.get('project_key', self.sonar_project_key)

        paths = data.get('paths') or {}
        if workspace := paths.get('workspace'):
            self.workspace_dir = Path(workspace)
        if state := paths.get('state'):
            self.state_dir = Path(state)
        if reports := paths.get('reports'):
            self.report_dir = Path(reports)

        # Secrets: registry password keyed by username, sonar token by project
        secrets = _load_secrets(self.config_file.parent)
        if secrets:
            passwords = secrets.get('registry_passwords') or {}
            self.registry_password = passwords.get(self.registry_username, self.registry_password)
            tokens = secrets.get('sonar_tokens') or {}
            self.sonar_token = tokens.get(self.sonar_project_key or self.name, self.sonar_token)

    def _apply_env_overrides(self):
        """Apply RELEASE_* environment variables over file values."""
        for env_var, attr in ENV_OVERRIDES.items():
            value = os.environ.get(env_var)
            if value is None:
                continue
            if attr == 'rollout_timeout':
                try:
                    self.rollout_timeout = int(value)
                except ValueError as e:
                    raise ConfigError(f"{env_var}={value!r} is not an integer") from e
            else:
                setattr(self, attr, value)

    @property
    def manifest_checkout_dir(self) -> Path:
        return self.workspace_dir / 'manifests'

    @property
    def source_dir(self) -> Path:
        return self.workspace_dir / 'source'

    @property
    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy.parse(self.retention)

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        errors = []
        if not self.name:
            errors.append("service name is required")
        if not self.registry_uri:
            errors.append("registry.uri is required")
        if not self.manifest_repo:
            errors.append("manifest.repo is required")
        if not self.manifest_path:
            errors.append("manifest.path is required")
        if self.rollout_timeout <= 0:
            errors.append(f"cluster.rollout_timeout must be positive, got {self.rollout_timeout}")
        if self.version_source not in ('file', 'env'):
            errors.append(f"version.source must be 'file' or 'env', got {self.version_source!r}")
        if self.scan_blocking_severity and self.scan_blocking_severity not in SEVERITIES:
            errors.append(f"scan.blocking_severity must be one of {', '.join(SEVERITIES)}")
        try:
            self.retention_policy
        except ValueError as e:
            errors.append(str(e))
        return errors


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def _load_secrets(config_dir: Path) -> Optional[dict]:
    """Load decrypted secrets from secrets.yaml next to the release file."""
    secrets_file = config_dir / 'secrets.yaml'
    if not secrets_file.exists():
        return None
    return _parse_yaml(secrets_file)


def find_config_file(explicit: Optional[str] = None) -> Path:
    """Discover the release file.

    Resolution order:
    1. explicit path (--config)
    2. $RELEASE_DRIVER_CONFIG environment variable
    3. ./release.yaml
    """
    if explicit:
        path = Path(explicit)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit}")

    if env_path := os.environ.get(CONFIG_ENV_VAR):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"{CONFIG_ENV_VAR}={env_path} does not exist")

    local = Path.cwd() / 'release.yaml'
    if local.exists():
        return local

    raise ConfigError(
        "release.yaml not found. "
        f"Pass --config or set {CONFIG_ENV_VAR}."
    )


def load_release_config(path: Optional[str] = None) -> ReleaseConfig:
    """Load and validate the release configuration.

    Raises:
        ConfigError: If the file is missing or invalid
    """
    config_file = find_config_file(path)
    config = ReleaseConfig(name='', config_file=config_file)
    errors = config.validate()
    if errors:
        raise ConfigError(
            f"Invalid release config {config_file}:\n  - " + "\n  - ".join(errors)
        )
    return config
