"""Pipeline definitions and the stage executor."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from config import ReleaseConfig
from errors import ReleaseError
from reporting import ReleaseReport

logger = logging.getLogger(__name__)


@dataclass
class Stage:
    """One step of a pipeline.

    `action` is any object with `run(config, context) -> ActionResult`; it
    signals failure by raising a ReleaseError (or returning success=False).
    """
    name: str
    action: Any
    description: str
    abort_on_failure: bool = True


@runtime_checkable
class Pipeline(Protocol):
    """Protocol for pipeline definitions.

    Class attributes:
        name: Pipeline identifier (e.g., 'release')
        description: Human-readable description
    """
    name: str
    description: str

    def get_stages(self, config: ReleaseConfig) -> list[Stage]:
        """Return the ordered list of stages."""
        ...


class ReleaseExecutor:
    """Runs a pipeline's stages in order under their failure policies."""

    def __init__(
        self,
        pipeline: Pipeline,
        config: ReleaseConfig,
        report_dir: Optional[Path] = None,
        skip_stages: Optional[list[str]] = None,
        timeout: Optional[int] = None,
        dry_run: bool = False,
        context: Optional[dict] = None,
        write_report: bool = True,
    ):
        self.pipeline = pipeline
        self.config = config
        self.report_dir = report_dir or config.report_dir
        self.skip_stages = skip_stages or []
        self.timeout = timeout  # Overall pipeline timeout in seconds
        self.dry_run = dry_run
        self.write_report = write_report
        self.report = ReleaseReport(service=config.name, report_dir=self.report_dir,
                                    pipeline=pipeline.name)
        self.context: dict[str, Any] = dict(context or {})

    def preview(self) -> bool:
        """Show what would be executed without running. Returns True."""
        stages = self.pipeline.get_stages(self.config)

        print("")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  DRY-RUN: {self.pipeline.name}")
        print(f"  Service: {self.config.name}")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        print("Stages to execute:")
        run_count = 0
        skip_count = 0

        for stage in stages:
            action_type = type(stage.action).__name__
            policy = 'abort on failure' if stage.abort_on_failure else 'continue on failure'
            if stage.name in self.skip_stages:
                print(f"  [SKIP] {stage.name}: {stage.description}")
                skip_count += 1
            else:
                print(f"  [ OK ] {stage.name}: {stage.description}")
                run_count += 1
            print(f"         Action: {action_type} ({policy})")
            if getattr(stage.action, 'timeout', None):
                print(f"         Timeout: {stage.action.timeout}s")
            print("")

        print("═══════════════════════════════════════════════════════════════")
        print(f"  Summary: {run_count} stages to execute, {skip_count} to skip")
        if self.timeout:
            print(f"  Timeout: {self.timeout}s")
        print("  Mode: DRY-RUN (no changes made)")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        return True

    def run(self) -> bool:
        """Run all stages. Returns True if no abort-on-failure stage failed."""
        if self.dry_run:
            return self.preview()

        timeout_msg = f" (timeout: {self.timeout}s)" if self.timeout else ""
        logger.info(f"Starting pipeline '{self.pipeline.name}' for service: {self.config.name}{timeout_msg}")
        self.report.start()

        stages = self.pipeline.get_stages(self.config)
        start_time = time.time()

        for stage in stages:
            # Check timeout before starting each stage
            if self.timeout:
                elapsed = time.time() - start_time
                if elapsed >= self.timeout:
                    logger.error(f"Pipeline timeout ({self.timeout}s) exceeded after {elapsed:.1f}s")
                    self.report.fail_stage(stage.name, stage.description,
                                           f"Timeout exceeded ({elapsed:.1f}s >= {self.timeout}s)",
                                           error_kind='PipelineTimeout')
                    break

            if stage.name in self.skip_stages:
                logger.info(f"Skipping stage: {stage.name}")
                self.report.skip_stage(stage.name, stage.description)
                continue

            logger.info(f"Running stage: {stage.name} - {stage.description}")
            self.report.start_stage(stage.name)

            try:
                result = stage.action.run(self.config, self.context)
            except ReleaseError as e:
                self._record_failure(stage, str(e), e.kind)
            except Exception as e:
                logger.exception(f"Stage {stage.name} raised exception")
                self._record_failure(stage, str(e), type(e).__name__)
            else:
                if result.success:
                    logger.info(f"Stage {stage.name} passed")
                    self.report.pass_stage(stage.name, stage.description, result.message,
                                           result.duration, result.advisories)
                    self.context.update(result.context_updates or {})
                    continue
                self._record_failure(stage, result.message, None, result.advisories)

            if stage.abort_on_failure:
                logger.error(f"Aborting pipeline at stage {stage.name}")
                break

        total_time = time.time() - start_time
        success = self.report.exit_code == 0
        logger.info(f"Pipeline completed in {total_time:.1f}s")
        self.report.finish(success, write=self.write_report)
        return success

    def _record_failure(self, stage: Stage, message: str, kind: Optional[str],
                        advisories: Optional[list] = None) -> None:
        label = f" [{kind}]" if kind else ""
        if stage.abort_on_failure:
            logger.error(f"Stage {stage.name} failed{label}: {message}")
        else:
            logger.warning(f"Stage {stage.name} failed{label} (non-blocking): {message}")
        self.report.fail_stage(stage.name, stage.description, message, error_kind=kind,
                               aborts_pipeline=stage.abort_on_failure, advisories=advisories)


# Registry of available pipelines
_pipelines: dict[str, type] = {}


def register_pipeline(cls: type) -> type:
    """Decorator to register a pipeline class."""
    _pipelines[cls.name] = cls
    return cls


def get_pipeline(name: str) -> Pipeline:
    """Get a pipeline instance by name."""
    if name not in _pipelines:
        available = list(_pipelines.keys())
        raise ValueError(f"Unknown pipeline: {name}. Available: {available}")
    pipeline: Pipeline = _pipelines[name]()
    return pipeline


def list_pipelines() -> list[str]:
    """List available pipeline names."""
    return sorted(_pipelines.keys())


# Import pipelines to trigger registration
from pipelines import release  # noqa: E402, F401
