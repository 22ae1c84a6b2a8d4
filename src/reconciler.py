"""Cluster reconciliation: create-or-update a workload and wait for rollout.

State machine per release:

    Absent  --apply manifest-->  Created  --poll-->  Stable | RolloutFailed
    Present --set image------->  Updating --poll-->  Stable | RolloutFailed
    Present (image matches)  ------------poll-->  Stable

A freshly created workload whose manifest pins another image is moved to
the desired image before the rollout wait.

A present workload only ever gets a targeted image update, so fields the
cluster manages itself (replica counts from autoscaling, annotations added
by controllers) are left alone.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from clients.kube import KubeError, container_image, deployment_rollout_state
from errors import ClusterApplyFailed, RolloutFailed
from manifest_patch import image_reference

logger = logging.getLogger(__name__)

ABSENT = 'Absent'
PRESENT = 'Present'
CREATED = 'Created'
UPDATING = 'Updating'
UPDATED = 'Updated'
STABLE = 'Stable'
ROLLOUT_FAILED = 'RolloutFailed'


@dataclass
class ReconciliationTarget:
    namespace: str
    workload_name: str
    desired_image: str


@dataclass
class Reconciliation:
    """Result of one reconcile call."""
    target: ReconciliationTarget
    outcome: str
    transitions: list = field(default_factory=list)
    changed: bool = False


class ClusterReconciler:
    """Drives a cluster client towards the desired image.

    The client must provide get_workload, apply_manifest, set_image and
    create_namespace (see clients.kube.KubeClient).
    """

    def __init__(self, cluster, container: Optional[str] = None, poll_interval: float = 5.0,
                 service: Optional[str] = None):
        self.cluster = cluster
        self.container = container
        self.poll_interval = poll_interval
        self.service = service

    def reconcile(self, namespace: str, workload_name: str,
                  manifest_or_image: Union[Path, str], timeout: float,
                  desired_image: Optional[str] = None) -> Reconciliation:
        """Make the workload run the desired image and wait until it is stable.

        Args:
            namespace: Target namespace (created if missing)
            workload_name: Deployment name
            manifest_or_image: Path to the manifest (needed to create an absent
                workload) or an image reference
            timeout: Seconds to wait for the rollout
            desired_image: Image to converge on. Defaults to manifest_or_image
                when that is an image string, or to the `<service>:<tag>`
                reference the manifest pins when it is a path.

        Raises:
            ManifestAnchorNotFound, ManifestAmbiguous: No single image
                reference in the manifest to take the desired image from
            ClusterApplyFailed: Namespace, apply or image update errors
            RolloutFailed: Workload did not stabilize within timeout
        """
        manifest = None
        if isinstance(manifest_or_image, Path):
            manifest = manifest_or_image
            if desired_image is None:
                desired_image = self._manifest_image(manifest, workload_name)
        elif desired_image is None:
            desired_image = manifest_or_image
        if not desired_image:
            raise ClusterApplyFailed("No desired image given")

        container = self.container or workload_name
        target = ReconciliationTarget(namespace, workload_name, desired_image)
        result = Reconciliation(target=target, outcome=STABLE)

        self._ensure_namespace(namespace)
        workload = self._get_workload(namespace, workload_name)

        if workload is None:
            result.transitions.append(ABSENT)
            if manifest is None:
                raise ClusterApplyFailed(
                    f"{namespace}/{workload_name} does not exist and no manifest was given to create it"
                )
            logger.info(f"Creating {namespace}/{workload_name} from {manifest}")
            try:
                self.cluster.apply_manifest(manifest, namespace)
            except KubeError as e:
                raise ClusterApplyFailed(str(e)) from e
            result.transitions.append(CREATED)
            result.outcome = CREATED
            result.changed = True

            workload = self._get_workload(namespace, workload_name)
            if workload is None:
                raise ClusterApplyFailed(f"{namespace}/{workload_name} still absent after applying {manifest}")
            if self._converge_image(workload, target, container):
                result.transitions.append(UPDATING)
        else:
            result.transitions.append(PRESENT)
            if self._converge_image(workload, target, container):
                result.transitions.append(UPDATING)
                result.outcome = UPDATED
                result.changed = True
            else:
                logger.info(f"{namespace}/{workload_name} already runs {desired_image}")

        self._wait_for_rollout(target, timeout, result)
        result.transitions.append(STABLE)
        if not result.changed:
            result.outcome = STABLE
        return result

    def _manifest_image(self, manifest: Path, workload_name: str) -> str:
        service = self.service or self.container or workload_name
        try:
            text = manifest.read_bytes().decode('utf-8')
        except OSError as e:
            raise ClusterApplyFailed(f"Cannot read manifest {manifest}: {e}") from e
        image = image_reference(text, service)
        logger.debug(f"Desired image from {manifest}: {image}")
        return image

    def _get_workload(self, namespace: str, name: str) -> Optional[dict]:
        try:
            return self.cluster.get_workload(namespace, name)
        except KubeError as e:
            raise ClusterApplyFailed(str(e)) from e

    def _converge_image(self, workload: dict, target: ReconciliationTarget, container: str) -> bool:
        """Point the container at the desired image. Returns True if it was changed."""
        name = f"{target.namespace}/{target.workload_name}"
        current = container_image(workload, container)
        if current is None:
            raise ClusterApplyFailed(f"Container '{container}' not found in {name}")
        if current == target.desired_image:
            return False
        logger.info(f"Updating {name} {container}: {current} -> {target.desired_image}")
        try:
            self.cluster.set_image(target.namespace, target.workload_name, container, target.desired_image)
        except KubeError as e:
            raise ClusterApplyFailed(str(e)) from e
        return True

    def _ensure_namespace(self, namespace: str) -> None:
        try:
            if self.cluster.create_namespace(namespace):
                logger.info(f"Created namespace {namespace}")
        except KubeError as e:
            raise ClusterApplyFailed(str(e)) from e

    def _wait_for_rollout(self, target: ReconciliationTarget, timeout: float,
                          result: Reconciliation) -> None:
        """Poll until stable, a deadline-exceeded condition, or timeout."""
        name = f"{target.namespace}/{target.workload_name}"
        logger.info(f"Waiting for rollout of {name} (timeout: {timeout}s)...")
        start = time.monotonic()
        while True:
            workload = self._get_workload(target.namespace, target.workload_name)

            state = 'absent' if workload is None else deployment_rollout_state(workload)
            if state == 'stable':
                logger.info(f"Rollout of {name} is stable")
                return
            if state == 'failed':
                result.transitions.append(ROLLOUT_FAILED)
                raise RolloutFailed(f"Rollout of {name} exceeded its progress deadline",
                                    transitions=result.transitions)

            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                result.transitions.append(ROLLOUT_FAILED)
                raise RolloutFailed(
                    f"Rollout of {name} not stable after {elapsed:.1f}s (last state: {state})",
                    transitions=result.transitions,
                )
            logger.debug(f"Rollout of {name} is {state}, retrying in {self.poll_interval}s...")
            time.sleep(min(self.poll_interval, max(timeout - elapsed, 0)))
