"""Pipeline stage actions."""

from actions.analysis import FilesystemScanAction, QualityGateAction, StaticAnalysisAction
from actions.credentials import CredentialScopeAction
from actions.deploy import PatchManifestAction, ReconcileClusterAction
from actions.image import AllocateVersionAction, BuildImageAction, PublishImageAction
from actions.workspace import CheckoutSourceAction, ResetWorkspaceAction

__all__ = [
    'ResetWorkspaceAction',
    'CheckoutSourceAction',
    'CredentialScopeAction',
    'AllocateVersionAction',
    'StaticAnalysisAction',
    'QualityGateAction',
    'FilesystemScanAction',
    'BuildImageAction',
    'PublishImageAction',
    'PatchManifestAction',
    'ReconcileClusterAction',
]
