"""Credential scope action (external credential helper)."""

import logging
import time
from dataclasses import dataclass

from common import ActionResult, run_command
from config import ReleaseConfig
from errors import ToolFailed

logger = logging.getLogger(__name__)


def credential_command(config: ReleaseConfig) -> list[str]:
    """Configured helper command, else EKS kubeconfig when a cluster is named."""
    if config.credentials_command:
        return [str(part) for part in config.credentials_command]
    if config.cluster_region and config.cluster_name:
        return ['aws', 'eks', 'update-kubeconfig',
                '--region', config.cluster_region, '--name', config.cluster_name]
    return []


@dataclass
class CredentialScopeAction:
    """Run the credential helper that scopes cluster and registry access."""
    name: str
    timeout: int = 120

    def run(self, config: ReleaseConfig, _context: dict) -> ActionResult:
        start = time.time()

        cmd = credential_command(config)
        if not cmd:
            return ActionResult(
                success=True,
                message="No credential helper configured",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Running credential helper: {cmd[0]}")
        rc, _, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            raise ToolFailed(f"Credential helper failed: {err.strip()}")

        return ActionResult(
            success=True,
            message=f"Credentials scoped via {cmd[0]}",
            duration=time.time() - start
        )
