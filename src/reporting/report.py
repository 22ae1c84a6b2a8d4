"""Release reporting: the aggregate StageResult report."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

SUCCESS = 'success'
FAILED = 'failed'
SKIPPED = 'skipped'


@dataclass
class StageResult:
    """Result of one pipeline stage."""
    name: str
    description: str
    outcome: str  # 'success', 'failed', 'skipped'
    aborts_pipeline: bool = False
    message: str = ''
    error_kind: Optional[str] = None
    advisories: list = field(default_factory=list)
    duration: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = {
            'name': self.name,
            'description': self.description,
            'outcome': self.outcome,
            'aborts_pipeline': self.aborts_pipeline,
            'message': self.message,
            'duration': round(self.duration, 1),
        }
        if self.error_kind:
            data['error_kind'] = self.error_kind
        if self.advisories:
            data['advisories'] = list(self.advisories)
        return data


@dataclass
class ReleaseReport:
    """Collects stage results and writes JSON and markdown reports."""
    service: str
    report_dir: Path
    pipeline: str = ''
    stages: list[StageResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    _stage_start: Optional[datetime] = field(default=None, repr=False)

    def start(self):
        """Mark release start."""
        self.started_at = datetime.now()

    def start_stage(self, _name: str):
        """Mark stage start."""
        self._stage_start = datetime.now()

    def pass_stage(self, name: str, description: str, message: str = '',
                   duration: float = 0.0, advisories: Optional[list] = None):
        """Record a successful stage."""
        self._record(name, description, SUCCESS, False, message, duration, None, advisories)

    def fail_stage(self, name: str, description: str, message: str = '',
                   duration: float = 0.0, error_kind: Optional[str] = None,
                   aborts_pipeline: bool = True, advisories: Optional[list] = None):
        """Record a failed stage."""
        self._record(name, description, FAILED, aborts_pipeline, message, duration, error_kind, advisories)

    def skip_stage(self, name: str, description: str):
        """Record a skipped stage."""
        self.stages.append(StageResult(name=name, description=description, outcome=SKIPPED))

    def _record(self, name, description, outcome, aborts, message, duration, error_kind, advisories):
        now = datetime.now()
        if duration == 0.0 and self._stage_start:
            duration = (now - self._stage_start).total_seconds()
        self.stages.append(StageResult(
            name=name,
            description=description,
            outcome=outcome,
            aborts_pipeline=aborts,
            message=message,
            error_kind=error_kind,
            advisories=list(advisories or []),
            duration=duration,
            started_at=self._stage_start,
            finished_at=now,
        ))
        self._stage_start = None

    @property
    def first_abort(self) -> Optional[StageResult]:
        """The stage that stopped the pipeline, if any."""
        for stage in self.stages:
            if stage.outcome == FAILED and stage.aborts_pipeline:
                return stage
        return None

    @property
    def advisories(self) -> list[str]:
        """All advisory notes, prefixed with their stage name."""
        notes = []
        for stage in self.stages:
            notes.extend(f'{stage.name}: {note}' for note in stage.advisories)
            if stage.outcome == FAILED and not stage.aborts_pipeline:
                notes.append(f'{stage.name}: {stage.error_kind or "failed"}: {stage.message}')
        return notes

    @property
    def exit_code(self) -> int:
        """0 only if no abort-on-failure stage failed."""
        return 0 if self.first_abort is None else 1

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self, success: bool, write: bool = True):
        """Finalize report and optionally write files."""
        self.finished_at = datetime.now()
        self.success = success
        if write:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            self._write_json()
            self._write_markdown()

    def _write_json(self):
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    def _write_markdown(self):
        status = 'PASSED' if self.success else 'FAILED'
        lines = [
            f"# {self.service} {self.pipeline}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
        ]
        if abort := self.first_abort:
            lines.append(f"**Aborted at**: {abort.name} ({abort.error_kind or 'failed'})")
        lines.extend([
            "",
            "## Stages",
            "",
            "| Stage | Outcome | Aborts | Duration | Message |",
            "|-------|---------|--------|----------|---------|",
        ])

        for s in self.stages:
            icon = {SUCCESS: '✅', FAILED: '❌', SKIPPED: '⏭️'}.get(s.outcome, '❓')
            kind = f"{s.error_kind}: " if s.error_kind else ''
            message = f"{kind}{s.message}".replace('|', '\\|').replace('\n', ' ')
            aborts = 'yes' if s.aborts_pipeline else 'no'
            lines.append(f"| {s.name} | {icon} {s.outcome} | {aborts} | {s.duration:.1f}s | {message} |")

        if notes := self.advisories:
            lines.extend(["", "## Advisories", ""])
            lines.extend(f"- {note}" for note in notes)

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename.

        Includes service name so reports of different services can share a directory.
        """
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        slug = self.service.replace('/', '-') if self.service else 'release'
        return self.report_dir / f"{timestamp}.{slug}.{status}.{ext}"

    def to_dict(self, context: Optional[dict] = None) -> dict:
        """Return report as dictionary for JSON output.

        Args:
            context: Optional context dict to include in output.
                     Only JSON-serializable values are included.
        """
        result = {
            'service': self.service,
            'pipeline': self.pipeline,
            'success': self.success,
            'exit_code': self.exit_code,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': round(self.duration, 1),
            'stages': [s.to_dict() for s in self.stages],
        }

        if abort := self.first_abort:
            result['aborted_at'] = abort.name
            result['error_kind'] = abort.error_kind
            result['error'] = abort.message

        if notes := self.advisories:
            result['advisories'] = notes

        if context:
            serializable_context = {}
            for key, value in context.items():
                # Skip internal/private keys
                if key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    serializable_context[key] = value
                except (TypeError, ValueError):
                    # Skip non-serializable values
                    pass
            if serializable_context:
                result['context'] = serializable_context

        return result
