"""GitOps manifest patching.

Rewrites the `<service>:<tag>` image reference in a deployment manifest and
commits the change to the manifest repository. The patch is textual and
anchor-based: the document is never parsed, so comments, key order and
formatting survive byte-for-byte. The cost is that a manifest whose image
line no longer contains `<service>:<tag>` cannot be patched; that case fails
loudly with ManifestAnchorNotFound rather than guessing.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from clients.git import GitClient, GitError, PushRejected
from common import retry
from errors import ManifestAmbiguous, ManifestAnchorNotFound, ManifestPushConflict, ToolFailed

logger = logging.getLogger(__name__)

# Docker tag grammar: [A-Za-z0-9_][A-Za-z0-9_.-]{0,127}
_TAG = r'[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}'
_REFERENCE_DELIMITERS = ' \t\r\n"\'='

PUSH_ATTEMPTS = 2


@dataclass
class CommitReference:
    """Outcome of a manifest patch."""
    sha: str
    branch: str
    message: str = ''
    changed: bool = True
    old_tag: Optional[str] = None


def anchor_pattern(service: str) -> re.Pattern:
    """Regex for `<service>:<tag>` not preceded by another name character."""
    return re.compile(rf'(?<![A-Za-z0-9_.-]){re.escape(service)}:(?P<tag>{_TAG})(?![A-Za-z0-9_.-])')


def find_anchors(text: str, service: str) -> list[re.Match]:
    return list(anchor_pattern(service).finditer(text))


def single_anchor(text: str, service: str) -> re.Match:
    """Return the one `<service>:<tag>` reference in text.

    Raises:
        ManifestAnchorNotFound: No reference to the service
        ManifestAmbiguous: More than one reference to the service
    """
    matches = find_anchors(text, service)
    if not matches:
        raise ManifestAnchorNotFound(f"No '{service}:<tag>' image reference found")
    if len(matches) > 1:
        lines = sorted({text.count('\n', 0, m.start()) + 1 for m in matches})
        raise ManifestAmbiguous(
            f"{len(matches)} '{service}:<tag>' references found (lines {', '.join(map(str, lines))})"
        )
    return matches[0]


def image_reference(text: str, service: str) -> str:
    """Return the full image reference the manifest pins for the service.

    The anchor only covers `<service>:<tag>`; the registry and repository
    path in front of it run back to the nearest whitespace, quote or `=`.
    """
    match = single_anchor(text, service)
    start = match.start()
    while start > 0 and text[start - 1] not in _REFERENCE_DELIMITERS:
        start -= 1
    return text[start:match.end()]


def patch_text(text: str, service: str, new_tag: str) -> tuple[str, str]:
    """Replace the service's single image tag with new_tag.

    Returns:
        (new_text, old_tag). new_text is identical to text if the tag is
        already new_tag.

    Raises:
        ManifestAnchorNotFound: No reference to the service
        ManifestAmbiguous: More than one reference to the service
    """
    if not re.fullmatch(_TAG, new_tag):
        raise ValueError(f"Invalid image tag: {new_tag!r}")

    match = single_anchor(text, service)
    old_tag = match.group('tag')
    if old_tag == new_tag:
        return text, old_tag
    start, end = match.span('tag')
    return text[:start] + new_tag + text[end:], old_tag


def commit_message(service: str, new_tag: str, old_tag: Optional[str] = None) -> str:
    message = f"release({service}): deploy image tag {new_tag}"
    if old_tag:
        message += f"\n\nPrevious tag: {old_tag}"
    return message


class ManifestPatcher:
    """Patches and commits the image tag in a checked-out manifest repository."""

    def __init__(self, repo_dir: Path, branch: str, git: Optional[GitClient] = None,
                 remote: str = 'origin', push_attempts: int = PUSH_ATTEMPTS):
        self.repo_dir = Path(repo_dir)
        self.branch = branch
        self.git = git or GitClient()
        self.remote = remote
        self.push_attempts = push_attempts

    def ensure_checkout(self, repo_url: str) -> Path:
        """Clone the manifest branch if the working tree is not there yet."""
        if (self.repo_dir / '.git').is_dir():
            return self.repo_dir
        try:
            self.git.clone(repo_url, self.branch, self.repo_dir)
        except GitError as e:
            raise ToolFailed(f"Manifest repository checkout failed: {e}") from e
        return self.repo_dir

    def patch_and_commit(self, manifest_path: str, service: str, new_tag: str) -> CommitReference:
        """Point the manifest at new_tag, commit and push.

        Re-running with a tag the manifest already holds is a no-op success
        (no commit, changed=False).

        Raises:
            ManifestAnchorNotFound, ManifestAmbiguous: Anchor problems
            ManifestPushConflict: Push still rejected after one rebase
            ToolFailed: Other git failures
        """
        path = self.repo_dir / manifest_path
        if not path.is_file():
            raise ManifestAnchorNotFound(f"Manifest file not found: {path}")

        # Decode without newline translation so CRLF and trailing bytes survive
        original = path.read_bytes().decode('utf-8')
        patched, old_tag = patch_text(original, service, new_tag)

        if patched == original:
            logger.info(f"Manifest {manifest_path} already at {service}:{new_tag}, nothing to commit")
            return CommitReference(sha=self._head(), branch=self.branch, changed=False, old_tag=old_tag)

        logger.info(f"Patching {manifest_path}: {service}:{old_tag} -> {service}:{new_tag}")
        path.write_bytes(patched.encode('utf-8'))

        message = commit_message(service, new_tag, old_tag)
        try:
            self.git.add(self.repo_dir, manifest_path)
            self.git.commit(self.repo_dir, message)
        except GitError as e:
            raise ToolFailed(f"Manifest commit failed: {e}") from e

        self._push_with_rebase()
        sha = self._head()
        logger.info(f"Pushed manifest commit {sha[:12]} to {self.remote}/{self.branch}")
        return CommitReference(sha=sha, branch=self.branch, message=message, old_tag=old_tag)

    def _head(self) -> str:
        try:
            return self.git.head(self.repo_dir)
        except GitError as e:
            raise ToolFailed(str(e)) from e

    def _rebase(self, error: BaseException, attempt: int) -> None:
        logger.warning(f"Manifest push rejected ({error}); rebasing onto {self.remote}/{self.branch}")
        try:
            self.git.pull_rebase(self.repo_dir, self.branch, self.remote)
        except GitError as e:
            # The other release touched the same line: never resolve that implicitly
            raise ManifestPushConflict(f"Rebase onto {self.remote}/{self.branch} failed: {e}") from e

    def _push_with_rebase(self) -> None:
        try:
            retry(
                lambda: self.git.push(self.repo_dir, self.branch, self.remote),
                attempts=self.push_attempts,
                retry_on=(PushRejected,),
                on_retry=self._rebase,
            )
        except PushRejected as e:
            raise ManifestPushConflict(
                f"Push to {self.remote}/{self.branch} rejected after {self.push_attempts} attempts: {e}"
            ) from e
        except GitError as e:
            raise ToolFailed(f"Manifest push failed: {e}") from e
