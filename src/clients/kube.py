"""Kubernetes API client implementing the cluster client contract."""

import logging
from pathlib import Path
from typing import Optional

from kubernetes import client, config as kube_config, utils
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)


class KubeError(Exception):
    """A Kubernetes API call failed."""


def load_api_client(context: Optional[str] = None) -> client.ApiClient:
    """Build an API client from the in-cluster service account or a kubeconfig."""
    try:
        kube_config.load_incluster_config()
        logger.debug("Using in-cluster Kubernetes configuration")
        return client.ApiClient()
    except kube_config.ConfigException:
        pass
    try:
        return kube_config.new_client_from_config(context=context)
    except kube_config.ConfigException as e:
        raise KubeError(f"No usable Kubernetes configuration: {e}") from e


class KubeClient:
    """Cluster control-plane client.

    Workloads are Deployments. Objects come back as plain dicts in the API's
    JSON form (camelCase keys), the same shape `kubectl get -o json` prints,
    so the rollout classifier below works on either.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None, context: Optional[str] = None):
        self.api_client = api_client or load_api_client(context)
        self.apps = client.AppsV1Api(self.api_client)
        self.core = client.CoreV1Api(self.api_client)

    def get_workload(self, namespace: str, name: str) -> Optional[dict]:
        try:
            deployment = self.apps.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubeError(f"get deployment {namespace}/{name} failed: {e.status} {e.reason}") from e
        return self.api_client.sanitize_for_serialization(deployment)

    def apply_manifest(self, manifest: Path, namespace: str) -> None:
        """Create every object in the manifest file.

        Objects that already exist (409) are left as they are; any other
        rejection fails the apply.
        """
        try:
            utils.create_from_yaml(self.api_client, yaml_file=str(manifest), namespace=namespace)
        except utils.FailToCreateError as e:
            fatal = [err for err in e.api_exceptions if err.status != 409]
            if fatal:
                reasons = '; '.join(f"{err.status} {err.reason}" for err in fatal)
                raise KubeError(f"apply {manifest} failed: {reasons}") from e
            logger.info(f"Objects in {manifest} already exist in {namespace}")
        except ApiException as e:
            raise KubeError(f"apply {manifest} failed: {e.status} {e.reason}") from e

    def set_image(self, namespace: str, workload: str, container: str, image: str) -> None:
        # Strategic merge on the container list keys by name, so only this image changes
        body = {'spec': {'template': {'spec': {'containers': [{'name': container, 'image': image}]}}}}
        try:
            self.apps.patch_namespaced_deployment(name=workload, namespace=namespace, body=body)
        except ApiException as e:
            raise KubeError(f"set image on {namespace}/{workload} failed: {e.status} {e.reason}") from e

    def create_namespace(self, namespace: str) -> bool:
        """Create the namespace. Returns False if it already existed."""
        try:
            self.core.read_namespace(name=namespace)
            return False
        except ApiException as e:
            if e.status != 404:
                raise KubeError(f"get namespace {namespace} failed: {e.status} {e.reason}") from e

        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
        try:
            self.core.create_namespace(body=body)
        except ApiException as e:
            if e.status == 409:
                return False
            raise KubeError(f"create namespace {namespace} failed: {e.status} {e.reason}") from e
        return True


def deployment_rollout_state(deployment: dict) -> str:
    """Classify a Deployment object the way `kubectl rollout status` does."""
    metadata = deployment.get('metadata') or {}
    spec = deployment.get('spec') or {}
    status = deployment.get('status') or {}

    for condition in status.get('conditions') or []:
        if condition.get('type') == 'Progressing' and condition.get('reason') == 'ProgressDeadlineExceeded':
            return 'failed'

    if (status.get('observedGeneration') or 0) < (metadata.get('generation') or 0):
        return 'progressing'

    desired = spec.get('replicas', 1)
    updated = status.get('updatedReplicas') or 0
    total = status.get('replicas') or 0
    available = status.get('availableReplicas') or 0
    if updated < desired:
        return 'progressing'
    if total > updated:
        # Old replicas still terminating
        return 'progressing'
    if available < updated:
        return 'progressing'
    return 'stable'


def container_image(deployment: dict, container: str) -> Optional[str]:
    """Return the image of the named container in a Deployment object."""
    pod_spec = ((deployment.get('spec') or {}).get('template') or {}).get('spec') or {}
    for entry in pod_spec.get('containers') or []:
        if entry.get('name') == container:
            return entry.get('image')
    return None
