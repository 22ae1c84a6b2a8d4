"""Docker CLI wrapper for building images and pushing them to a registry."""

import logging
import re
from pathlib import Path
from typing import Optional

from common import run_command

logger = logging.getLogger(__name__)

_DIGEST_RE = re.compile(r'digest:\s*(sha256:[0-9a-f]{64})')


class DockerError(Exception):
    """A docker command failed."""


class DockerClient:
    """Runs docker build/login/push."""

    def __init__(self, binary: str = 'docker', build_timeout: int = 1800, push_timeout: int = 900):
        self.binary = binary
        self.build_timeout = build_timeout
        self.push_timeout = push_timeout

    def build(self, context_dir: Path, tag: str, dockerfile: Optional[str] = None) -> str:
        """Build an image from `context_dir` and tag it locally."""
        cmd = [self.binary, 'build', '--tag', tag]
        if dockerfile:
            cmd += ['--file', str(Path(context_dir) / dockerfile)]
        cmd.append(str(context_dir))
        rc, out, err = run_command(cmd, timeout=self.build_timeout)
        if rc != 0:
            raise DockerError(f"docker build failed: {_tail(err or out)}")
        return tag

    def login(self, registry_host: str, username: str, password: str) -> None:
        """Log in with the password on stdin so it never appears in argv."""
        rc, _, err = run_command(
            [self.binary, 'login', '--username', username, '--password-stdin', registry_host],
            timeout=120,
            input_data=password,
        )
        if rc != 0:
            raise DockerError(f"docker login to {registry_host} failed: {err.strip()}")

    def push(self, reference: str) -> Optional[str]:
        """Push `reference` and return the manifest digest if reported."""
        rc, out, err = run_command([self.binary, 'push', reference], timeout=self.push_timeout)
        if rc != 0:
            raise DockerError(f"docker push {reference} failed: {_tail(err or out)}")
        match = _DIGEST_RE.search(out)
        return match.group(1) if match else None


def _tail(text: str, lines: int = 20) -> str:
    return '\n'.join(text.strip().splitlines()[-lines:])
