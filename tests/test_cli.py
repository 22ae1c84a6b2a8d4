"""Tests for CLI module."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ActionResult
from conftest import git
from errors import BuildFailed
from pipelines import Stage


class _Action:
    def __init__(self, error=None):
        self.error = error

    def run(self, config, context):
        if self.error:
            raise self.error
        return ActionResult(success=True, message='ok')


class _Pipeline:
    name = 'fake'
    description = 'fake'

    def __init__(self, stages):
        self.stages = stages

    def get_stages(self, config):
        return self.stages


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep the CLI from replacing pytest's log handlers."""
    with patch('cli._setup_logging'):
        yield


class TestMain:
    """Tests for noun dispatch."""

    def test_no_args_prints_usage(self, capsys):
        from cli import main
        assert main([]) == 1
        assert 'Usage: release-driver' in capsys.readouterr().out

    def test_help(self, capsys):
        from cli import main
        assert main(['--help']) == 0
        assert 'release' in capsys.readouterr().out

    def test_unknown_noun(self, capsys):
        from cli import main
        assert main(['rollback']) == 1
        assert "Unknown noun 'rollback'" in capsys.readouterr().out

    def test_unknown_action(self, capsys):
        from cli import main
        assert main(['release', 'destroy']) == 1
        assert "Unknown command 'release destroy'" in capsys.readouterr().out


class TestReleaseCommand:
    """Tests for 'release run' and 'release plan'."""

    def test_plan_is_dry_run(self, release_config_dir, capsys):
        from cli import main
        config = str(release_config_dir / 'release.yaml')
        assert main(['release', 'plan', '-c', config]) == 0
        out = capsys.readouterr().out
        assert 'DRY-RUN: release' in out
        assert 'manifest_patch' in out

    def test_deploy_requires_tag(self, release_config_dir):
        from cli import main
        config = str(release_config_dir / 'release.yaml')
        assert main(['release', 'run', '-c', config, '--pipeline', 'deploy']) == 2

    def test_unknown_pipeline(self, release_config_dir):
        from cli import main
        config = str(release_config_dir / 'release.yaml')
        assert main(['release', 'run', '-c', config, '--pipeline', 'rollback']) == 2

    def test_missing_config_exits(self, tmp_path):
        from cli import main
        with pytest.raises(SystemExit) as exc_info:
            main(['release', 'run', '-c', str(tmp_path / 'missing.yaml')])
        assert exc_info.value.code == 2

    def test_failed_release_exit_code(self, release_config_dir, capsys):
        """An aborting stage failure gives a non-zero exit and a JSON report."""
        from cli import main
        pipeline = _Pipeline([
            Stage('checkout', _Action(), 'Check out'),
            Stage('build', _Action(BuildFailed('compile error')), 'Build'),
        ])
        config = str(release_config_dir / 'release.yaml')

        with patch('cli.get_pipeline', return_value=pipeline):
            rc = main(['release', 'run', '-c', config, '--json-output', '--tag', '41'])

        assert rc == 1
        data = json.loads(capsys.readouterr().out)
        assert data['aborted_at'] == 'build'
        assert data['error_kind'] == 'BuildFailed'
        assert data['context']['image_tag'] == '41'

    def test_successful_release(self, release_config_dir):
        from cli import main
        pipeline = _Pipeline([Stage('build', _Action(), 'Build')])
        config = str(release_config_dir / 'release.yaml')
        with patch('cli.get_pipeline', return_value=pipeline):
            assert main(['release', 'run', '-c', config]) == 0
        assert list((release_config_dir / 'reports').glob('*.orders.passed.json'))


class TestVersionCommand:
    """Tests for 'version allocate'."""

    def test_allocate_prints_id(self, release_config_dir, capsys):
        from cli import main
        config = str(release_config_dir / 'release.yaml')
        assert main(['version', 'allocate', '-c', config]) == 0
        assert main(['version', 'allocate', '-c', config]) == 0
        assert capsys.readouterr().out.split() == ['1', '2']


class TestManifestCommand:
    """Tests for 'manifest patch'."""

    def test_patch_prints_sha(self, clone_manifests, manifest_origin, capsys):
        from cli import main
        repo = clone_manifests('work')
        rc = main(['manifest', 'patch', '--repo-dir', str(repo), '--file', 'apps/orders/deployment.yaml',
                   '--service', 'orders', '--tag', '41'])
        assert rc == 0
        sha = capsys.readouterr().out.strip()
        assert git(manifest_origin, 'rev-parse', 'main').strip() == sha

    def test_patch_anchor_missing(self, clone_manifests):
        from cli import main
        repo = clone_manifests('work')
        rc = main(['manifest', 'patch', '--repo-dir', str(repo), '--file', 'apps/orders/deployment.yaml',
                   '--service', 'payments', '--tag', '41'])
        assert rc == 1


class TestClusterCommand:
    """Tests for 'cluster reconcile'."""

    def test_requires_tag_or_manifest(self, release_config_dir):
        from cli import main
        config = str(release_config_dir / 'release.yaml')
        with pytest.raises(SystemExit) as exc_info:
            main(['cluster', 'reconcile', '-c', config])
        assert exc_info.value.code == 2

    def test_manifest_alone_leaves_image_to_manifest(self, release_config_dir, tmp_path, capsys):
        from cli import main
        from reconciler import Reconciliation, ReconciliationTarget

        manifest = tmp_path / 'deployment.yaml'
        reconciler = MagicMock()
        reconciler.reconcile.return_value = Reconciliation(
            target=ReconciliationTarget('shop', 'orders', 'registry.example.com/acme/orders:41'),
            outcome='Created', transitions=['Absent', 'Created', 'Stable'], changed=True)
        config = str(release_config_dir / 'release.yaml')

        with patch('actions.deploy.make_reconciler', return_value=reconciler):
            rc = main(['cluster', 'reconcile', '-c', config, '--manifest', str(manifest)])

        assert rc == 0
        reconciler.reconcile.assert_called_once_with('shop', 'orders', manifest, 120, desired_image=None)
        assert capsys.readouterr().out.strip() == 'Created: Absent -> Created -> Stable'
