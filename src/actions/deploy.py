"""GitOps manifest patch and cluster reconcile actions."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from clients.kube import KubeClient, KubeError
from common import ActionResult
from config import ReleaseConfig
from errors import ClusterApplyFailed, ToolFailed
from manifest_patch import ManifestPatcher
from publisher import ImageReference
from reconciler import ClusterReconciler

logger = logging.getLogger(__name__)


def make_patcher(config: ReleaseConfig) -> ManifestPatcher:
    return ManifestPatcher(config.manifest_checkout_dir, config.manifest_branch)


def make_reconciler(config: ReleaseConfig) -> ClusterReconciler:
    try:
        cluster = KubeClient()
    except KubeError as e:
        raise ClusterApplyFailed(str(e)) from e
    return ClusterReconciler(cluster, container=config.container,
                             poll_interval=config.poll_interval, service=config.name)


@dataclass
class PatchManifestAction:
    """Point the GitOps manifest at the new tag and push the commit."""
    name: str

    def run(self, config: ReleaseConfig, context: dict) -> ActionResult:
        start = time.time()
        tag = context.get('image_tag')
        if not tag:
            raise ToolFailed("No image_tag in context")

        patcher = make_patcher(config)
        patcher.ensure_checkout(config.manifest_repo)
        commit = patcher.patch_and_commit(config.manifest_path, config.name, str(tag))

        if commit.changed:
            message = f"Committed {commit.sha[:12]} ({commit.old_tag} -> {tag})"
        else:
            message = f"Manifest already at {tag}"
        return ActionResult(
            success=True,
            message=message,
            duration=time.time() - start,
            context_updates={
                'manifest_commit': commit.sha,
                'manifest_file': str(patcher.repo_dir / config.manifest_path),
            }
        )


@dataclass
class ReconcileClusterAction:
    """Create or update the workload and wait for the rollout."""
    name: str
    timeout: Optional[int] = None

    def run(self, config: ReleaseConfig, context: dict) -> ActionResult:
        start = time.time()
        tag = context.get('image_tag')
        if not tag:
            raise ToolFailed("No image_tag in context")

        desired = str(ImageReference(config.registry_uri, config.name, str(tag)))
        manifest = context.get('manifest_file')
        timeout = self.timeout or config.rollout_timeout

        result = make_reconciler(config).reconcile(
            config.namespace,
            config.workload,
            Path(manifest) if manifest else desired,
            timeout,
            desired_image=desired,
        )

        return ActionResult(
            success=True,
            message=f"{result.outcome}: {' -> '.join(result.transitions)}",
            duration=time.time() - start,
            context_updates={
                'reconcile_outcome': result.outcome,
                'reconcile_transitions': list(result.transitions),
            }
        )
