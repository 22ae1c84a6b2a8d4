"""Release error taxonomy.

Every error carries a `kind` (the class name) which the stage executor
records verbatim in the aggregate report next to the stage name.
"""


class ReleaseError(Exception):
    """Base class for release pipeline errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class AllocationUnavailable(ReleaseError):
    """Build counter source is unreachable or corrupt."""


class BuildFailed(ReleaseError):
    """Container image build failed."""


class PushFailed(ReleaseError):
    """Registry login or image push failed, or the tag already exists."""


class ManifestAnchorNotFound(ReleaseError):
    """No '<service>:<tag>' reference found in the manifest."""


class ManifestAmbiguous(ReleaseError):
    """More than one '<service>:<tag>' reference found in the manifest."""


class ManifestPushConflict(ReleaseError):
    """Manifest push rejected again after one rebase attempt."""


class ClusterApplyFailed(ReleaseError):
    """Cluster apply, image update or namespace creation failed."""


class RolloutFailed(ReleaseError):
    """Workload exists but did not stabilize before the timeout."""

    def __init__(self, message: str, transitions: list = None):
        super().__init__(message)
        self.transitions = list(transitions or [])


class AdvisoryFindingsPresent(ReleaseError):
    """Scanner reported findings (advisory unless a blocking threshold is set)."""

    def __init__(self, message: str, findings: dict = None):
        super().__init__(message)
        self.findings = dict(findings or {})


class QualityGateFailed(ReleaseError):
    """Static analysis quality gate did not pass."""


class ToolFailed(ReleaseError):
    """An external tool (git checkout, credential helper, scanner) failed."""
