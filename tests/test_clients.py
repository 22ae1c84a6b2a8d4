"""Tests for the external tool clients (git, docker, registry, kubernetes, trivy, sonar)."""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import requests
from kubernetes import client as k8s, config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.utils import FailToCreateError
from clients.docker import DockerClient, DockerError
from clients.git import GitClient, GitError, PushRejected
from clients.kube import KubeClient, KubeError, container_image, deployment_rollout_state, load_api_client
from clients.registry import RegistryClient, RegistryError, split_registry_uri
from clients.sonar import SonarClient, SonarError, read_report_task
from clients.trivy import ScannerError, TrivyScanner, exceeds_threshold, format_findings, summarize

DIGEST = 'sha256:' + '0123456789abcdef' * 4


def _response(status_code=200, json_data=None, headers=None, text=''):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json_data or {}
    resp.headers = headers or {}
    resp.text = text
    return resp


class TestGitClient:
    """Test push rejection mapping."""

    def test_push_rejected_fetch_first(self, tmp_path):
        err = ("To /srv/gitops.git\n ! [rejected]        HEAD -> main (fetch first)\n"
               "error: failed to push some refs to '/srv/gitops.git'\n")
        with patch('clients.git.run_command', return_value=(1, '', err)):
            with pytest.raises(PushRejected):
                GitClient().push(tmp_path, 'main')

    def test_push_other_error(self, tmp_path):
        with patch('clients.git.run_command', return_value=(128, '', 'fatal: Authentication failed')):
            with pytest.raises(GitError) as exc_info:
                GitClient().push(tmp_path, 'main')
        assert not isinstance(exc_info.value, PushRejected)

    def test_commit_sets_identity(self, tmp_path):
        with patch('clients.git.run_command', return_value=(0, 'abc\n', '')) as mock_run:
            sha = GitClient(author_name='bot', author_email='bot@example.com').commit(tmp_path, 'msg')
        assert sha == 'abc'
        commit_cmd = mock_run.call_args_list[0][0][0]
        assert 'user.name=bot' in commit_cmd
        assert 'user.email=bot@example.com' in commit_cmd

    def test_pull_rebase_aborts_on_conflict(self, tmp_path):
        results = [(1, '', 'CONFLICT (content)'), (0, '', '')]
        with patch('clients.git.run_command', side_effect=results) as mock_run:
            with pytest.raises(GitError, match='CONFLICT'):
                GitClient().pull_rebase(tmp_path, 'main')
        assert mock_run.call_args_list[1][0][0] == ['git', 'rebase', '--abort']


class TestDockerClient:
    """Test docker CLI wrapper."""

    def test_push_parses_digest(self):
        out = f"41: digest: {DIGEST} size: 1570\n"
        with patch('clients.docker.run_command', return_value=(0, out, '')):
            assert DockerClient().push('registry.example.com/acme/orders:41') == DIGEST

    def test_push_failure(self):
        with patch('clients.docker.run_command', return_value=(1, '', 'denied: requested access')):
            with pytest.raises(DockerError, match='denied'):
                DockerClient().push('registry.example.com/acme/orders:41')

    def test_login_uses_stdin(self):
        with patch('clients.docker.run_command', return_value=(0, '', '')) as mock_run:
            DockerClient().login('registry.example.com', 'ci-bot', 's3cret')
        cmd = mock_run.call_args[0][0]
        assert 's3cret' not in cmd
        assert mock_run.call_args[1]['input_data'] == 's3cret'

    def test_build_command(self, tmp_path):
        with patch('clients.docker.run_command', return_value=(0, '', '')) as mock_run:
            DockerClient().build(tmp_path, 'orders:41')
        assert mock_run.call_args[0][0] == ['docker', 'build', '--tag', 'orders:41', str(tmp_path)]


class TestRegistryClient:
    """Test registry API client with a mocked session."""

    def test_split_uri(self):
        assert split_registry_uri('registry.example.com/acme') == ('registry.example.com', 'acme')
        assert split_registry_uri('https://localhost:5000/') == ('localhost:5000', '')

    def test_list_tags(self):
        client = RegistryClient('registry.example.com/acme')
        with patch.object(client.session, 'request', return_value=_response(json_data={'tags': ['1', '2']})) as req:
            assert client.list_tags('orders') == ['1', '2']
        assert req.call_args[0][1] == 'https://registry.example.com/v2/acme/orders/tags/list'

    def test_list_tags_missing_repo(self):
        client = RegistryClient('registry.example.com/acme')
        with patch.object(client.session, 'request', return_value=_response(404)):
            assert client.list_tags('orders') == []

    def test_get_digest(self):
        client = RegistryClient('registry.example.com/acme')
        resp = _response(headers={'Docker-Content-Digest': DIGEST})
        with patch.object(client.session, 'request', return_value=resp):
            assert client.get_digest('orders', '41') == DIGEST

    def test_get_digest_absent(self):
        client = RegistryClient('registry.example.com/acme')
        with patch.object(client.session, 'request', return_value=_response(404)):
            assert client.get_digest('orders', '41') is None

    def test_connection_error(self):
        client = RegistryClient('registry.example.com/acme')
        with patch.object(client.session, 'request', side_effect=requests.exceptions.ConnectionError('refused')):
            with pytest.raises(RegistryError, match='Cannot connect'):
                client.list_tags('orders')

    def test_delete_failure(self):
        client = RegistryClient('registry.example.com/acme')
        with patch.object(client.session, 'request', return_value=_response(405, text='unsupported')):
            with pytest.raises(RegistryError, match='405'):
                client.delete_image('orders', DIGEST)

    def test_basic_auth(self):
        client = RegistryClient('registry.example.com/acme', 'ci-bot', 's3cret', insecure=True)
        assert client.session.auth == ('ci-bot', 's3cret')
        assert client.base_url == 'http://registry.example.com/v2'


class TestRolloutState:
    """Test deployment_rollout_state classification."""

    def _deployment(self, **status):
        base = {'observedGeneration': 2, 'replicas': 3, 'updatedReplicas': 3, 'availableReplicas': 3}
        base.update(status)
        return {'metadata': {'generation': 2}, 'spec': {'replicas': 3}, 'status': base}

    def test_stable(self):
        assert deployment_rollout_state(self._deployment()) == 'stable'

    def test_generation_not_observed(self):
        assert deployment_rollout_state(self._deployment(observedGeneration=1)) == 'progressing'

    def test_old_replicas_remaining(self):
        assert deployment_rollout_state(self._deployment(replicas=4)) == 'progressing'

    def test_not_available(self):
        assert deployment_rollout_state(self._deployment(availableReplicas=1)) == 'progressing'

    def test_deadline_exceeded(self):
        dep = self._deployment(conditions=[{'type': 'Progressing', 'reason': 'ProgressDeadlineExceeded'}])
        assert deployment_rollout_state(dep) == 'failed'

    def test_container_image(self):
        dep = {'spec': {'template': {'spec': {'containers': [{'name': 'orders', 'image': 'orders:1'}]}}}}
        assert container_image(dep, 'orders') == 'orders:1'
        assert container_image(dep, 'proxy') is None


def _deployment_model(image: str):
    return k8s.V1Deployment(
        metadata=k8s.V1ObjectMeta(name='orders', namespace='shop', generation=2),
        spec=k8s.V1DeploymentSpec(
            replicas=3,
            selector=k8s.V1LabelSelector(match_labels={'app': 'orders'}),
            template=k8s.V1PodTemplateSpec(spec=k8s.V1PodSpec(containers=[
                k8s.V1Container(name='orders', image=image),
            ])),
        ),
        status=k8s.V1DeploymentStatus(observed_generation=2, replicas=3, updated_replicas=3,
                                      available_replicas=3),
    )


class TestKubeClient:
    """Test the Kubernetes API client."""

    @pytest.fixture
    def kube(self):
        return KubeClient(api_client=k8s.ApiClient())

    def test_get_workload_not_found(self, kube):
        with patch.object(kube.apps, 'read_namespaced_deployment',
                          side_effect=ApiException(status=404, reason='Not Found')):
            assert kube.get_workload('shop', 'orders') is None

    def test_get_workload_returns_api_json(self, kube):
        """Models come back in the camelCase JSON form the classifier reads."""
        with patch.object(kube.apps, 'read_namespaced_deployment',
                          return_value=_deployment_model('orders:41')) as mock_read:
            workload = kube.get_workload('shop', 'orders')

        mock_read.assert_called_once_with(name='orders', namespace='shop')
        assert workload['status']['observedGeneration'] == 2
        assert container_image(workload, 'orders') == 'orders:41'
        assert deployment_rollout_state(workload) == 'stable'

    def test_get_workload_forbidden(self, kube):
        with patch.object(kube.apps, 'read_namespaced_deployment',
                          side_effect=ApiException(status=403, reason='Forbidden')):
            with pytest.raises(KubeError, match='403 Forbidden'):
                kube.get_workload('shop', 'orders')

    def test_set_image_patches_one_container(self, kube):
        with patch.object(kube.apps, 'patch_namespaced_deployment') as mock_patch:
            kube.set_image('shop', 'orders', 'orders', 'orders:41')

        body = mock_patch.call_args.kwargs['body']
        assert mock_patch.call_args.kwargs['name'] == 'orders'
        assert body == {'spec': {'template': {'spec': {'containers': [
            {'name': 'orders', 'image': 'orders:41'}]}}}}

    def test_set_image_failure(self, kube):
        with patch.object(kube.apps, 'patch_namespaced_deployment',
                          side_effect=ApiException(status=422, reason='Unprocessable Entity')):
            with pytest.raises(KubeError, match='422'):
                kube.set_image('shop', 'orders', 'orders', 'orders:41')

    def test_create_namespace_exists(self, kube):
        with patch.object(kube.core, 'read_namespace', return_value=k8s.V1Namespace()), \
                patch.object(kube.core, 'create_namespace') as mock_create:
            assert kube.create_namespace('shop') is False
        mock_create.assert_not_called()

    def test_create_namespace_missing(self, kube):
        with patch.object(kube.core, 'read_namespace', side_effect=ApiException(status=404)), \
                patch.object(kube.core, 'create_namespace') as mock_create:
            assert kube.create_namespace('shop') is True
        assert mock_create.call_args.kwargs['body'].metadata.name == 'shop'

    def test_create_namespace_race(self, kube):
        with patch.object(kube.core, 'read_namespace', side_effect=ApiException(status=404)), \
                patch.object(kube.core, 'create_namespace', side_effect=ApiException(status=409)):
            assert kube.create_namespace('shop') is False

    def test_apply_manifest(self, kube, tmp_path):
        manifest = tmp_path / 'deployment.yaml'
        with patch('clients.kube.utils.create_from_yaml') as mock_create:
            kube.apply_manifest(manifest, 'shop')
        mock_create.assert_called_once_with(kube.api_client, yaml_file=str(manifest), namespace='shop')

    def test_apply_manifest_existing_objects_tolerated(self, kube, tmp_path):
        error = FailToCreateError([ApiException(status=409, reason='Conflict')])
        with patch('clients.kube.utils.create_from_yaml', side_effect=error):
            kube.apply_manifest(tmp_path / 'deployment.yaml', 'shop')

    def test_apply_manifest_rejected(self, kube, tmp_path):
        error = FailToCreateError([ApiException(status=409, reason='Conflict'),
                                   ApiException(status=422, reason='Unprocessable Entity')])
        with patch('clients.kube.utils.create_from_yaml', side_effect=error):
            with pytest.raises(KubeError, match='422 Unprocessable Entity'):
                kube.apply_manifest(tmp_path / 'deployment.yaml', 'shop')

    def test_load_falls_back_to_kubeconfig(self):
        sentinel = MagicMock()
        with patch('clients.kube.kube_config.load_incluster_config',
                   side_effect=kube_config.ConfigException('not in a pod')), \
                patch('clients.kube.kube_config.new_client_from_config', return_value=sentinel) as mock_new:
            assert load_api_client('prod') is sentinel
        mock_new.assert_called_once_with(context='prod')

    def test_load_without_any_config(self):
        with patch('clients.kube.kube_config.load_incluster_config',
                   side_effect=kube_config.ConfigException('not in a pod')), \
                patch('clients.kube.kube_config.new_client_from_config',
                      side_effect=kube_config.ConfigException('no kubeconfig')):
            with pytest.raises(KubeError, match='no kubeconfig'):
                load_api_client()



class TestTrivy:
    """Test trivy report handling."""

    REPORT = {'Results': [
        {'Vulnerabilities': [{'Severity': 'HIGH'}, {'Severity': 'LOW'}]},
        {'Vulnerabilities': [{'Severity': 'HIGH'}]},
        {'Target': 'no vulns'},
    ]}

    def test_summarize(self):
        assert summarize(self.REPORT) == {'HIGH': 2, 'LOW': 1}

    def test_threshold(self):
        assert exceeds_threshold({'HIGH': 1}, 'HIGH') is True
        assert exceeds_threshold({'MEDIUM': 5}, 'HIGH') is False
        assert exceeds_threshold({'CRITICAL': 1}, None) is False

    def test_format_orders_by_severity(self):
        assert format_findings({'LOW': 1, 'CRITICAL': 2}) == 'CRITICAL=2, LOW=1'
        assert format_findings({}) == 'no findings'

    def test_scan_failure(self):
        with patch('clients.trivy.run_command', return_value=(1, '', 'db download failed')):
            with pytest.raises(ScannerError):
                TrivyScanner().scan_image('orders:41')

    def test_scan_parses_output(self):
        import json
        with patch('clients.trivy.run_command', return_value=(0, json.dumps(self.REPORT), '')):
            assert TrivyScanner().scan_filesystem(Path('/src')) == {'HIGH': 2, 'LOW': 1}


class TestSonar:
    """Test SonarQube client."""

    def test_read_report_task(self, tmp_path):
        (tmp_path / '.scannerwork').mkdir()
        (tmp_path / '.scannerwork' / 'report-task.txt').write_text(
            "projectKey=acme-orders\nceTaskId=AX123\nceTaskUrl=https://sonar/api/ce/task?id=AX123\n")
        task = read_report_task(tmp_path)
        assert task['ceTaskId'] == 'AX123'
        assert task['ceTaskUrl'] == 'https://sonar/api/ce/task?id=AX123'

    def test_missing_report_task(self, tmp_path):
        with pytest.raises(SonarError):
            read_report_task(tmp_path)

    def test_wait_for_gate(self):
        client = SonarClient('https://sonar.example.com', 'acme-orders', token='t')
        responses = [
            _response(json_data={'task': {'status': 'IN_PROGRESS'}}),
            _response(json_data={'task': {'status': 'SUCCESS', 'analysisId': 'AN1'}}),
            _response(json_data={'projectStatus': {'status': 'OK'}}),
        ]
        with patch.object(client.session, 'get', side_effect=responses), patch('clients.sonar.time.sleep'):
            assert client.wait_for_gate('AX123', timeout=60, interval=1) == 'OK'

    def test_failed_task(self):
        client = SonarClient('https://sonar.example.com', 'acme-orders')
        with patch.object(client.session, 'get',
                          return_value=_response(json_data={'task': {'status': 'FAILED'}})):
            with pytest.raises(SonarError, match='FAILED'):
                client.wait_for_gate('AX123', timeout=60)

    def test_analyze_passes_token_in_env(self, tmp_path):
        (tmp_path / '.scannerwork').mkdir()
        (tmp_path / '.scannerwork' / 'report-task.txt').write_text("ceTaskId=AX9\n")
        client = SonarClient('https://sonar.example.com', 'acme-orders', token='squ_token')
        with patch('clients.sonar.run_command', return_value=(0, '', '')) as mock_run:
            assert client.analyze(tmp_path) == 'AX9'
        assert mock_run.call_args[1]['env']['SONAR_TOKEN'] == 'squ_token'
        assert not any('squ_token' in part for part in mock_run.call_args[0][0])
