"""Static analysis, quality gate and filesystem scan actions.

These stages are advisory by default: their pipeline entries decide whether
a failure aborts the release.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from clients.sonar import SonarClient, SonarError
from clients.trivy import ScannerError, TrivyScanner, format_findings
from common import ActionResult
from config import ReleaseConfig
from errors import AdvisoryFindingsPresent, QualityGateFailed, ToolFailed

logger = logging.getLogger(__name__)


def make_sonar(config: ReleaseConfig) -> SonarClient:
    return SonarClient(config.sonar_host_url, config.sonar_project_key or config.name,
                       token=config.sonar_token)


def make_scanner(_config: ReleaseConfig) -> TrivyScanner:
    return TrivyScanner()


def _source_dir(config: ReleaseConfig, context: dict) -> Path:
    return Path(context.get('source_dir', config.source_dir))


@dataclass
class StaticAnalysisAction:
    """Run sonar-scanner over the checked-out source."""
    name: str

    def run(self, config: ReleaseConfig, context: dict) -> ActionResult:
        start = time.time()

        if not config.sonar_host_url:
            return ActionResult(
                success=True,
                message="Static analysis not configured",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Analyzing {_source_dir(config, context)}")
        try:
            task_id = make_sonar(config).analyze(_source_dir(config, context))
        except SonarError as e:
            raise ToolFailed(f"Static analysis failed: {e}") from e

        return ActionResult(
            success=True,
            message=f"Analysis submitted (task {task_id})",
            duration=time.time() - start,
            context_updates={'sonar_task_id': task_id}
        )


@dataclass
class QualityGateAction:
    """Wait for the SonarQube quality gate verdict."""
    name: str
    timeout: int = 300
    interval: float = 5.0

    def run(self, config: ReleaseConfig, context: dict) -> ActionResult:
        start = time.time()

        if not config.sonar_host_url:
            return ActionResult(
                success=True,
                message="Quality gate not configured",
                duration=time.time() - start
            )

        task_id = context.get('sonar_task_id')
        if not task_id:
            raise QualityGateFailed("No analysis task to wait for (static analysis did not run)")

        timeout = config.quality_gate_timeout or self.timeout
        try:
            status = make_sonar(config).wait_for_gate(task_id, timeout=timeout, interval=self.interval)
        except SonarError as e:
            raise QualityGateFailed(str(e)) from e

        if status != 'OK':
            raise QualityGateFailed(f"Quality gate status: {status}")

        return ActionResult(
            success=True,
            message="Quality gate passed",
            duration=time.time() - start
        )


@dataclass
class FilesystemScanAction:
    """Scan the source tree for vulnerable dependencies and secrets."""
    name: str

    def run(self, config: ReleaseConfig, context: dict) -> ActionResult:
        start = time.time()
        source = _source_dir(config, context)

        logger.info(f"[{self.name}] Scanning {source}")
        try:
            findings = make_scanner(config).scan_filesystem(source)
        except ScannerError as e:
            raise ToolFailed(f"Filesystem scan failed: {e}") from e

        if findings:
            raise AdvisoryFindingsPresent(f"Filesystem scan: {format_findings(findings)}",
                                          findings=findings)

        return ActionResult(
            success=True,
            message="Filesystem scan clean",
            duration=time.time() - start
        )
