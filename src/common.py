"""Common utilities and types for release automation."""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Result returned by a stage action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)
    advisories: list = field(default_factory=list)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_data: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_data,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except Exception as e:
        return -1, '', str(e)


def retry(
    func: Callable[[], Any],
    attempts: int = 2,
    delay: float = 0.0,
    backoff: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
) -> Any:
    """Call func up to `attempts` times, re-raising the last error.

    Only exceptions in `retry_on` trigger another attempt. `on_retry` runs
    between attempts with the caught error and the attempt number that failed;
    an exception raised by it aborts the loop.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    wait = delay
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == attempts:
                raise
            logger.debug(f"Attempt {attempt}/{attempts} failed ({e}), retrying in {wait:.1f}s...")
            if on_retry is not None:
                on_retry(e, attempt)
            if wait > 0:
                time.sleep(wait)
            wait *= backoff
    # Unreachable: the loop either returns or raises
    raise AssertionError('retry loop exited without result')


def natural_key(value: str) -> tuple:
    """Sort key that orders '9' before '10'."""
    if value.isdigit():
        return (0, int(value), value)
    return (1, 0, value)
