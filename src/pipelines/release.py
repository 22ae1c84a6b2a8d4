"""Service release pipelines.

`release` takes a source change all the way to a stable rollout;
`deploy` re-points the manifest and cluster at an already published tag.
"""

from actions import (
    AllocateVersionAction,
    BuildImageAction,
    CheckoutSourceAction,
    CredentialScopeAction,
    FilesystemScanAction,
    PatchManifestAction,
    PublishImageAction,
    QualityGateAction,
    ReconcileClusterAction,
    ResetWorkspaceAction,
    StaticAnalysisAction,
)
from config import ReleaseConfig
from pipelines import Stage, register_pipeline


@register_pipeline
class ServiceRelease:
    """Build, publish, patch manifest and reconcile the cluster."""

    name = 'release'
    description = 'Build and publish a new image, update the GitOps manifest, roll it out'

    def get_stages(self, config: ReleaseConfig) -> list[Stage]:
        """Return stages for a full release."""
        return [
            Stage('workspace_reset', ResetWorkspaceAction(
                name='reset-workspace',
            ), 'Reset workspace'),

            Stage('checkout', CheckoutSourceAction(
                name='checkout-source',
            ), 'Check out service source'),

            Stage('credentials', CredentialScopeAction(
                name='credential-scope',
            ), 'Scope cluster and registry credentials'),

            Stage('allocate_version', AllocateVersionAction(
                name='allocate-version',
            ), 'Allocate build identifier'),

            Stage('static_analysis', StaticAnalysisAction(
                name='static-analysis',
            ), 'Run static analysis', abort_on_failure=False),

            Stage('quality_gate', QualityGateAction(
                name='quality-gate',
                timeout=config.quality_gate_timeout,
            ), 'Check quality gate', abort_on_failure=config.quality_gate_blocking),

            Stage('fs_scan', FilesystemScanAction(
                name='fs-scan',
            ), 'Scan source tree for vulnerabilities', abort_on_failure=False),

            Stage('build', BuildImageAction(
                name='build-image',
            ), 'Build container image'),

            Stage('publish', PublishImageAction(
                name='publish-image',
            ), 'Push image to registry'),

            Stage('manifest_patch', PatchManifestAction(
                name='patch-manifest',
            ), 'Update GitOps manifest image tag'),

            Stage('reconcile', ReconcileClusterAction(
                name='reconcile-cluster',
                timeout=config.rollout_timeout,
            ), 'Reconcile cluster workload'),
        ]


@register_pipeline
class ServiceDeploy:
    """Redeploy an existing image tag (context must carry image_tag)."""

    name = 'deploy'
    description = 'Point the GitOps manifest and cluster at an already published tag'

    def get_stages(self, config: ReleaseConfig) -> list[Stage]:
        """Return stages for a redeploy."""
        return [
            Stage('workspace_reset', ResetWorkspaceAction(
                name='reset-workspace',
            ), 'Reset workspace'),

            Stage('credentials', CredentialScopeAction(
                name='credential-scope',
            ), 'Scope cluster and registry credentials'),

            Stage('manifest_patch', PatchManifestAction(
                name='patch-manifest',
            ), 'Update GitOps manifest image tag'),

            Stage('reconcile', ReconcileClusterAction(
                name='reconcile-cluster',
                timeout=config.rollout_timeout,
            ), 'Reconcile cluster workload'),
        ]
