"""Trivy vulnerability scanner wrapper."""

import json
import logging
from pathlib import Path
from typing import Optional

from common import run_command

logger = logging.getLogger(__name__)

SEVERITY_ORDER = ('UNKNOWN', 'LOW', 'MEDIUM', 'HIGH', 'CRITICAL')


class ScannerError(Exception):
    """The scanner could not produce a report."""


def summarize(report: dict) -> dict[str, int]:
    """Count vulnerabilities by severity in a trivy JSON report."""
    counts: dict[str, int] = {}
    for result in report.get('Results') or []:
        for vuln in result.get('Vulnerabilities') or []:
            severity = str(vuln.get('Severity', 'UNKNOWN')).upper()
            counts[severity] = counts.get(severity, 0) + 1
    return counts


def exceeds_threshold(findings: dict[str, int], threshold: Optional[str]) -> bool:
    """True if any finding is at or above the threshold severity."""
    if not threshold:
        return False
    floor = SEVERITY_ORDER.index(threshold.upper())
    return any(
        count > 0 and sev in SEVERITY_ORDER and SEVERITY_ORDER.index(sev) >= floor
        for sev, count in findings.items()
    )


def format_findings(findings: dict[str, int]) -> str:
    if not findings:
        return 'no findings'
    def rank(item):
        return SEVERITY_ORDER.index(item[0]) if item[0] in SEVERITY_ORDER else -1

    ordered = sorted(findings.items(), key=rank, reverse=True)
    return ', '.join(f'{sev}={count}' for sev, count in ordered)


class TrivyScanner:
    """Runs `trivy fs` and `trivy image` and summarizes the JSON output."""

    def __init__(self, binary: str = 'trivy', timeout: int = 900):
        self.binary = binary
        self.timeout = timeout

    def _scan(self, target_type: str, target: str) -> dict[str, int]:
        cmd = [self.binary, target_type, '--quiet', '--format', 'json', target]
        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            raise ScannerError(f"trivy {target_type} {target} failed: {err.strip()}")
        try:
            report = json.loads(out) if out.strip() else {}
        except json.JSONDecodeError as e:
            raise ScannerError(f"trivy produced invalid JSON: {e}") from e
        findings = summarize(report)
        logger.debug(f"trivy {target_type} {target}: {format_findings(findings)}")
        return findings

    def scan_filesystem(self, path: Path) -> dict[str, int]:
        return self._scan('fs', str(path))

    def scan_image(self, reference: str) -> dict[str, int]:
        return self._scan('image', reference)
