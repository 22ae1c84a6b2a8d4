"""Artifact publishing: build, tag, prune, push and scan a service image."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from clients.trivy import exceeds_threshold, format_findings
from common import natural_key
from errors import AdvisoryFindingsPresent, BuildFailed, PushFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageReference:
    """Immutable reference to a published image."""
    registry_uri: str
    service_name: str
    tag: str
    digest: Optional[str] = None

    @property
    def repository(self) -> str:
        return f'{self.registry_uri.rstrip("/")}/{self.service_name}'

    def __str__(self) -> str:
        return f'{self.repository}:{self.tag}'


@dataclass(frozen=True)
class RetentionPolicy:
    """How many previously published tags to keep in the registry.

    keep=None keeps everything, keep=0 keeps none, keep=N keeps the N newest.
    """
    keep: Optional[int] = None

    @classmethod
    def parse(cls, value) -> 'RetentionPolicy':
        text = str(value).strip().lower()
        if text in ('all', 'keep all', ''):
            return cls(None)
        if text in ('none', 'keep none', '0'):
            return cls(0)
        text = text.removeprefix('keep ').strip()
        try:
            keep = int(text)
        except ValueError as e:
            raise ValueError(f"registry.retention must be 'none', 'all' or a count, got {value!r}") from e
        if keep < 0:
            raise ValueError(f"registry.retention count must be >= 0, got {keep}")
        return cls(keep)

    def select_for_removal(self, tags: list[str]) -> list[str]:
        """Return the build tags to delete, oldest first.

        Only numeric build-id tags count towards retention; floating tags
        such as `latest` or `stable` are never selected.
        """
        if self.keep is None:
            return []
        ordered = sorted((t for t in tags if t.isdigit()), key=natural_key)
        if self.keep == 0:
            return ordered
        return ordered[:-self.keep] if len(ordered) > self.keep else []


@dataclass
class PublishResult:
    """What the push half of publishing produced."""
    image: ImageReference
    pruned: list = field(default_factory=list)
    advisories: list = field(default_factory=list)
    findings: dict = field(default_factory=dict)


class ArtifactPublisher:
    """Builds and publishes the image for one service.

    Collaborators (docker, registry API, scanner) are injected so tests can
    substitute fakes.
    """

    def __init__(self, service: str, registry_uri: str, docker, registry,
                 scanner=None, retention: RetentionPolicy = RetentionPolicy(),
                 username: str = '', password: str = '',
                 scan_blocking_severity: Optional[str] = None):
        self.service = service
        self.registry_uri = registry_uri.rstrip('/')
        self.docker = docker
        self.registry = registry
        self.scanner = scanner
        self.retention = retention
        self.username = username
        self.password = password
        self.scan_blocking_severity = scan_blocking_severity

    def reference(self, build_id) -> ImageReference:
        return ImageReference(self.registry_uri, self.service, str(build_id))

    def build(self, build_id, source_dir: Path) -> ImageReference:
        """Build the image and tag it `registry/service:build_id`.

        Raises:
            BuildFailed: If the build fails
        """
        ref = self.reference(build_id)
        logger.info(f"Building {ref} from {source_dir}")
        try:
            self.docker.build(Path(source_dir), str(ref))
        except Exception as e:
            raise BuildFailed(str(e)) from e
        return ref

    def push(self, ref: ImageReference) -> PublishResult:
        """Authenticate, prune old tags, push and scan.

        Raises:
            PushFailed: On login/push failure or if the tag was already published
            AdvisoryFindingsPresent: If a blocking scan threshold is exceeded
        """
        if self.username:
            host = self.registry_uri.split('/', 1)[0]
            try:
                self.docker.login(host, self.username, self.password)
            except Exception as e:
                raise PushFailed(f"Registry login failed: {e}") from e

        try:
            existing = self.registry.get_digest(self.service, ref.tag)
        except Exception as e:
            raise PushFailed(f"Cannot check registry for {ref}: {e}") from e
        if existing is not None:
            # Published references are immutable: never overwrite a tag
            raise PushFailed(f"{ref} already published with digest {existing}; refusing to overwrite")

        result = PublishResult(image=ref)
        self._prune(result)

        logger.info(f"Pushing {ref}")
        try:
            digest = self.docker.push(str(ref))
        except Exception as e:
            raise PushFailed(str(e)) from e
        result.image = ImageReference(ref.registry_uri, ref.service_name, ref.tag, digest)

        self._scan(result)
        return result

    def publish(self, build_id, source_dir: Path) -> ImageReference:
        """Build and push in one call."""
        ref = self.build(build_id, source_dir)
        return self.push(ref).image

    def _prune(self, result: PublishResult) -> None:
        """Delete old tags per retention policy. Failures are advisory.

        Deleting is by digest, which removes every tag on that manifest, so a
        doomed tag whose digest is also behind a kept tag is left in place.
        """
        if self.retention.keep is None:
            return
        try:
            tags = [t for t in self.registry.list_tags(self.service) if t != result.image.tag]
            # keep=N counts the image about to be pushed
            keep = max(self.retention.keep - 1, 0)
            doomed = RetentionPolicy(keep).select_for_removal(tags)
            kept = [t for t in tags if t not in doomed]
            protected = {self.registry.get_digest(self.service, t) for t in kept}
            digests = {t: self.registry.get_digest(self.service, t) for t in doomed}
            deleted = set()
            for tag in doomed:
                digest = digests[tag]
                if not digest:
                    continue
                if digest in protected:
                    logger.info(f"Keeping {self.service}:{tag}, its digest is shared with a retained tag")
                    continue
                if digest not in deleted:
                    self.registry.delete_image(self.service, digest)
                    deleted.add(digest)
                result.pruned.append(tag)
            if result.pruned:
                logger.info(f"Pruned {len(result.pruned)} old image(s): {', '.join(result.pruned)}")
        except Exception as e:
            logger.warning(f"Image prune failed (continuing): {e}")
            result.advisories.append(f"prune failed: {e}")

    def _scan(self, result: PublishResult) -> None:
        """Scan the pushed image; findings are advisory unless blocking."""
        if self.scanner is None:
            return
        try:
            findings = self.scanner.scan_image(str(result.image))
        except Exception as e:
            logger.warning(f"Image scan failed (continuing): {e}")
            result.advisories.append(f"image scan failed: {e}")
            return

        result.findings = findings
        if findings:
            summary = format_findings(findings)
            if exceeds_threshold(findings, self.scan_blocking_severity):
                raise AdvisoryFindingsPresent(
                    f"{result.image} has findings at or above {self.scan_blocking_severity}: {summary}",
                    findings=findings,
                )
            logger.warning(f"Image scan findings for {result.image}: {summary}")
            result.advisories.append(f"image scan: {summary}")
