"""Build identifier allocation.

A build identifier is a strictly increasing positive integer per service. It
becomes the image tag and the correlation key for every later stage, so two
concurrent releases of the same service must never receive the same value.
"""

import fcntl
import logging
import os
from pathlib import Path
from typing import Protocol

from errors import AllocationUnavailable

logger = logging.getLogger(__name__)


class CounterSource(Protocol):
    """Something that hands out the next build number."""

    def next_value(self) -> int:
        ...


def _read_counter(handle) -> int:
    handle.seek(0)
    raw = handle.read().strip()
    if not raw:
        return 0
    try:
        value = int(raw)
    except ValueError as e:
        raise AllocationUnavailable(f"Counter file is corrupt: {raw[:40]!r}") from e
    if value < 0:
        raise AllocationUnavailable(f"Counter file holds a negative value: {value}")
    return value


def _write_counter(handle, value: int) -> None:
    handle.seek(0)
    handle.truncate()
    handle.write(f'{value}\n')
    handle.flush()
    os.fsync(handle.fileno())


class FileCounter:
    """Counter file incremented under an exclusive lock.

    The lock serializes concurrent invocations on the same host (or on a
    shared filesystem with working flock), which is what makes allocation
    unique across racing releases.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def next_value(self) -> int:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'a+', encoding='utf-8') as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    value = _read_counter(handle) + 1
                    _write_counter(handle, value)
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise AllocationUnavailable(f"Counter file {self.path} unavailable: {e}") from e
        return value


class EnvCounter:
    """Build number supplied by the CI environment (e.g. BUILD_NUMBER).

    The environment owns uniqueness; a high-water mark file still rejects a
    number that does not exceed the last one handed out.
    """

    def __init__(self, env_var: str, high_water_path: Path):
        self.env_var = env_var
        self.high_water_path = Path(high_water_path)

    def next_value(self) -> int:
        raw = os.environ.get(self.env_var)
        if raw is None or not raw.strip():
            raise AllocationUnavailable(f"${self.env_var} is not set")
        try:
            value = int(raw.strip())
        except ValueError as e:
            raise AllocationUnavailable(f"${self.env_var}={raw!r} is not an integer") from e
        if value <= 0:
            raise AllocationUnavailable(f"${self.env_var}={value} must be positive")

        try:
            self.high_water_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.high_water_path, 'a+', encoding='utf-8') as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    last = _read_counter(handle)
                    if value <= last:
                        raise AllocationUnavailable(
                            f"${self.env_var}={value} is not greater than last allocated {last}"
                        )
                    _write_counter(handle, value)
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise AllocationUnavailable(f"High-water file {self.high_water_path} unavailable: {e}") from e
        return value


class VersionAllocator:
    """Allocates build identifiers for one service."""

    def __init__(self, service: str, counter: CounterSource):
        self.service = service
        self.counter = counter

    def allocate(self) -> int:
        """Return the next build identifier.

        Raises:
            AllocationUnavailable: If the counter source cannot be used
        """
        build_id = self.counter.next_value()
        logger.info(f"Allocated build id {build_id} for {self.service}")
        return build_id


def allocator_for(service: str, state_dir: Path, source: str = 'file',
                  env_var: str = 'BUILD_NUMBER') -> VersionAllocator:
    """Build an allocator from configuration values."""
    service_dir = Path(state_dir) / service
    if source == 'file':
        return VersionAllocator(service, FileCounter(service_dir / 'build-counter'))
    if source == 'env':
        return VersionAllocator(service, EnvCounter(env_var, service_dir / 'build-high-water'))
    raise AllocationUnavailable(f"Unknown counter source: {source}")
