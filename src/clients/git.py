"""Git command wrapper for source and manifest repositories."""

import logging
from pathlib import Path
from typing import Optional

from common import run_command

logger = logging.getLogger(__name__)

# stderr fragments git prints when a push loses a race with another writer
_REJECTION_MARKERS = ('non-fast-forward', 'fetch first', '[rejected]', 'failed to push some refs')


class GitError(Exception):
    """A git command failed."""


class PushRejected(GitError):
    """Push rejected because the remote branch moved (non-fast-forward)."""


class GitClient:
    """Runs git commands in a working tree."""

    def __init__(self, author_name: str = 'release-driver',
                 author_email: str = 'release-driver@localhost', timeout: int = 300):
        self.author_name = author_name
        self.author_email = author_email
        self.timeout = timeout

    def _git(self, args: list[str], cwd: Optional[Path] = None) -> str:
        rc, out, err = run_command(['git'] + args, cwd=cwd, timeout=self.timeout)
        if rc != 0:
            raise GitError(f"git {args[0]} failed: {err.strip() or out.strip()}")
        return out

    def clone(self, repo: str, branch: str, dest: Path, depth: Optional[int] = None) -> Path:
        """Clone `branch` of `repo` into `dest`."""
        cmd = ['clone', '--quiet', '--branch', branch]
        if depth:
            cmd += ['--depth', str(depth)]
        cmd += [repo, str(dest)]
        logger.info(f"Cloning {repo} ({branch}) into {dest}")
        self._git(cmd)
        return dest

    def head(self, cwd: Path) -> str:
        return self._git(['rev-parse', 'HEAD'], cwd=cwd).strip()

    def add(self, cwd: Path, *paths: str) -> None:
        self._git(['add', '--'] + list(paths), cwd=cwd)

    def commit(self, cwd: Path, message: str) -> str:
        """Commit staged changes and return the new commit sha."""
        self._git([
            '-c', f'user.name={self.author_name}',
            '-c', f'user.email={self.author_email}',
            'commit', '--quiet', '-m', message,
        ], cwd=cwd)
        return self.head(cwd)

    def push(self, cwd: Path, branch: str, remote: str = 'origin') -> None:
        """Push HEAD to `remote/branch`.

        Raises:
            PushRejected: If the remote branch moved since the last fetch
            GitError: For any other failure
        """
        rc, out, err = run_command(['git', 'push', '--porcelain', remote, f'HEAD:{branch}'],
                                   cwd=cwd, timeout=self.timeout)
        if rc == 0:
            return
        output = f'{out}\n{err}'
        if any(marker in output for marker in _REJECTION_MARKERS):
            raise PushRejected(f"push to {remote}/{branch} rejected: {err.strip()}")
        raise GitError(f"git push failed: {err.strip() or out.strip()}")

    def pull_rebase(self, cwd: Path, branch: str, remote: str = 'origin') -> None:
        """Rebase local commits onto the remote branch, aborting on conflict."""
        rc, out, err = run_command([
            'git', '-c', f'user.name={self.author_name}', '-c', f'user.email={self.author_email}',
            'pull', '--rebase', '--quiet', remote, branch,
        ], cwd=cwd, timeout=self.timeout)
        if rc == 0:
            return
        # Leave the working tree usable for diagnostics
        run_command(['git', 'rebase', '--abort'], cwd=cwd, timeout=60)
        raise GitError(f"git pull --rebase failed: {err.strip() or out.strip()}")
