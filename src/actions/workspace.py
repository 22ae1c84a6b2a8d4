"""Workspace and source checkout actions."""

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from clients.git import GitClient, GitError
from common import ActionResult
from config import ReleaseConfig
from errors import ToolFailed

logger = logging.getLogger(__name__)


@dataclass
class ResetWorkspaceAction:
    """Wipe and recreate the workspace directory."""
    name: str

    def run(self, config: ReleaseConfig, _context: dict) -> ActionResult:
        start = time.time()
        workspace = Path(config.workspace_dir).resolve()

        if workspace == Path(workspace.anchor) or workspace == Path.home().resolve():
            raise ToolFailed(f"Refusing to reset workspace at {workspace}")

        if workspace.exists():
            logger.info(f"[{self.name}] Removing {workspace}")
            try:
                shutil.rmtree(workspace)
            except OSError as e:
                raise ToolFailed(f"Cannot clean workspace {workspace}: {e}") from e
        workspace.mkdir(parents=True, exist_ok=True)

        return ActionResult(
            success=True,
            message=f"Workspace reset: {workspace}",
            duration=time.time() - start
        )


@dataclass
class CheckoutSourceAction:
    """Clone the service source branch into the workspace."""
    name: str
    depth: int = 1
    timeout: int = 600

    def run(self, config: ReleaseConfig, _context: dict) -> ActionResult:
        start = time.time()

        if not config.source_repo:
            raise ToolFailed("source.repo is not configured")

        dest = config.source_dir
        logger.info(f"[{self.name}] Checking out {config.source_repo} ({config.source_branch})")
        git = GitClient(timeout=self.timeout)
        try:
            git.clone(config.source_repo, config.source_branch, dest, depth=self.depth)
            revision = git.head(dest)
        except GitError as e:
            raise ToolFailed(f"Source checkout failed: {e}") from e

        return ActionResult(
            success=True,
            message=f"Checked out {config.source_branch} at {revision[:12]}",
            duration=time.time() - start,
            context_updates={'source_dir': str(dest), 'source_revision': revision}
        )
