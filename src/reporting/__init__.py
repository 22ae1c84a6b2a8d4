"""Release reporting."""

from reporting.report import FAILED, SKIPPED, SUCCESS, ReleaseReport, StageResult

__all__ = ['ReleaseReport', 'StageResult', 'SUCCESS', 'FAILED', 'SKIPPED']
