"""SonarQube static analysis: scanner CLI plus quality-gate polling."""

import logging
import os
import time
from pathlib import Path

import requests

from common import run_command

logger = logging.getLogger(__name__)

REPORT_TASK_FILE = Path('.scannerwork') / 'report-task.txt'


class SonarError(Exception):
    """Analysis or quality-gate lookup failed."""


def read_report_task(source_dir: Path) -> dict[str, str]:
    """Parse the key=value report-task.txt the scanner leaves behind."""
    path = Path(source_dir) / REPORT_TASK_FILE
    if not path.exists():
        raise SonarError(f"Scanner report not found: {path}")
    values = {}
    for line in path.read_text(encoding='utf-8').splitlines():
        key, sep, value = line.partition('=')
        if sep:
            values[key.strip()] = value.strip()
    return values


class SonarClient:
    """Runs sonar-scanner and waits for the server-side quality gate."""

    def __init__(self, host_url: str, project_key: str, token: str = '',
                 binary: str = 'sonar-scanner', timeout: int = 1800):
        self.host_url = host_url.rstrip('/')
        self.project_key = project_key
        self.binary = binary
        self.timeout = timeout
        self.session = requests.Session()
        if token:
            # Token as basic-auth username with empty password
            self.session.auth = (token, '')
        self._token = token

    def analyze(self, source_dir: Path) -> str:
        """Run the scanner and return the compute-engine task id."""
        cmd = [
            self.binary,
            f'-Dsonar.projectKey={self.project_key}',
            f'-Dsonar.host.url={self.host_url}',
            '-Dsonar.sources=.',
        ]
        env = None
        if self._token:
            env = {**os.environ, 'SONAR_TOKEN': self._token}
        rc, out, err = run_command(cmd, cwd=source_dir, timeout=self.timeout, env=env)
        if rc != 0:
            raise SonarError(f"sonar-scanner failed: {(err or out).strip()[-500:]}")
        task = read_report_task(source_dir)
        if 'ceTaskId' not in task:
            raise SonarError("Scanner report has no ceTaskId")
        return task['ceTaskId']

    def _get(self, path: str, params: dict) -> dict:
        try:
            resp = self.session.get(f'{self.host_url}{path}', params=params, timeout=30)
        except requests.exceptions.RequestException as e:
            raise SonarError(f"Cannot reach {self.host_url}: {e}") from e
        if resp.status_code != 200:
            raise SonarError(f"{path} returned {resp.status_code}: {resp.text[:100]}")
        return resp.json()

    def wait_for_gate(self, task_id: str, timeout: int = 300, interval: float = 5.0) -> str:
        """Wait for analysis processing, then return the gate status ('OK', 'ERROR', ...).

        Raises:
            SonarError: On API errors, failed analysis or timeout
        """
        start = time.time()
        analysis_id = None
        while time.time() - start < timeout:
            task = self._get('/api/ce/task', {'id': task_id}).get('task', {})
            status = task.get('status')
            if status == 'SUCCESS':
                analysis_id = task.get('analysisId')
                break
            if status in ('FAILED', 'CANCELED'):
                raise SonarError(f"Analysis task {task_id} ended with {status}")
            logger.debug(f"Analysis task {task_id} is {status}, retrying in {interval}s...")
            time.sleep(interval)
        if analysis_id is None:
            raise SonarError(f"Quality gate timeout after {timeout}s waiting for task {task_id}")

        result = self._get('/api/qualitygates/project_status', {'analysisId': analysis_id})
        return result.get('projectStatus', {}).get('status', 'NONE')
