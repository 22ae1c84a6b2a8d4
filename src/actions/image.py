"""Version allocation, image build and image publish actions."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from allocator import VersionAllocator, allocator_for
from clients.docker import DockerClient
from clients.registry import RegistryClient
from clients.trivy import TrivyScanner
from common import ActionResult
from config import ReleaseConfig
from errors import ToolFailed
from publisher import ArtifactPublisher

logger = logging.getLogger(__name__)


def make_allocator(config: ReleaseConfig) -> VersionAllocator:
    return allocator_for(config.name, config.state_dir, config.version_source, config.version_env_var)


def make_publisher(config: ReleaseConfig) -> ArtifactPublisher:
    return ArtifactPublisher(
        service=config.name,
        registry_uri=config.registry_uri,
        docker=DockerClient(),
        registry=RegistryClient(config.registry_uri, config.registry_username,
                                config.registry_password, insecure=config.registry_insecure),
        scanner=TrivyScanner(),
        retention=config.retention_policy,
        username=config.registry_username,
        password=config.registry_password,
        scan_blocking_severity=config.scan_blocking_severity,
    )


def _require_tag(context: dict) -> str:
    tag = context.get('image_tag')
    if not tag:
        raise ToolFailed("No image_tag in context (did allocate_version run?)")
    return str(tag)


@dataclass
class AllocateVersionAction:
    """Allocate the build identifier that becomes the image tag."""
    name: str

    def run(self, config: ReleaseConfig, _context: dict) -> ActionResult:
        start = time.time()
        build_id = make_allocator(config).allocate()
        return ActionResult(
            success=True,
            message=f"Build id {build_id}",
            duration=time.time() - start,
            context_updates={'build_id': build_id, 'image_tag': str(build_id)}
        )


@dataclass
class BuildImageAction:
    """Build the service image tagged with the build id."""
    name: str

    def run(self, config: ReleaseConfig, context: dict) -> ActionResult:
        start = time.time()
        tag = _require_tag(context)
        source = Path(context.get('source_dir', config.source_dir)) / config.source_subdir

        logger.info(f"[{self.name}] Building {config.name}:{tag}")
        ref = make_publisher(config).build(tag, source)

        return ActionResult(
            success=True,
            message=f"Built {ref}",
            duration=time.time() - start,
            context_updates={'image': str(ref)}
        )


@dataclass
class PublishImageAction:
    """Push the built image (with retention pruning and image scan)."""
    name: str

    def run(self, config: ReleaseConfig, context: dict) -> ActionResult:
        start = time.time()
        tag = _require_tag(context)
        publisher = make_publisher(config)

        result = publisher.push(publisher.reference(tag))
        updates = {'image': str(result.image)}
        if result.image.digest:
            updates['image_digest'] = result.image.digest
        if result.pruned:
            updates['pruned_tags'] = list(result.pruned)

        return ActionResult(
            success=True,
            message=f"Published {result.image}",
            duration=time.time() - start,
            context_updates=updates,
            advisories=result.advisories
        )
