"""Docker Registry HTTP API v2 client (tag listing and manifest deletion)."""

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ', '.join([
    'application/vnd.docker.distribution.manifest.v2+json',
    'application/vnd.docker.distribution.manifest.list.v2+json',
    'application/vnd.oci.image.manifest.v1+json',
    'application/vnd.oci.image.index.v1+json',
])


class RegistryError(Exception):
    """Registry API call failed."""


def split_registry_uri(registry_uri: str) -> tuple[str, str]:
    """Split 'host[:port]/path' into (host, path prefix)."""
    uri = registry_uri.split('://', 1)[-1].rstrip('/')
    host, _, prefix = uri.partition('/')
    return host, prefix


class RegistryClient:
    """Minimal registry API client authenticated with basic auth."""

    def __init__(self, registry_uri: str, username: str = '', password: str = '',
                 insecure: bool = False, timeout: int = 30):
        self.host, self.prefix = split_registry_uri(registry_uri)
        scheme = 'http' if insecure else 'https'
        self.base_url = f'{scheme}://{self.host}/v2'
        self.timeout = timeout
        self.session = requests.Session()
        if username:
            self.session.auth = (username, password)

    def repository(self, service: str) -> str:
        return f'{self.prefix}/{service}' if self.prefix else service

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise RegistryError(f"Cannot connect to {self.host}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise RegistryError(f"Timeout talking to {self.host}") from e

    def list_tags(self, service: str) -> list[str]:
        """List tags of the service repository (empty if it does not exist yet)."""
        repo = self.repository(service)
        resp = self._request('GET', f'{self.base_url}/{repo}/tags/list')
        if resp.status_code == 404:
            return []
        if resp.status_code != 200:
            raise RegistryError(f"Listing tags of {repo} failed: {resp.status_code} {resp.text[:100]}")
        return list(resp.json().get('tags') or [])

    def get_digest(self, service: str, tag: str) -> Optional[str]:
        """Return the manifest digest for a tag, or None if the tag is absent."""
        repo = self.repository(service)
        resp = self._request('HEAD', f'{self.base_url}/{repo}/manifests/{tag}',
                             headers={'Accept': MANIFEST_ACCEPT})
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise RegistryError(f"Looking up {repo}:{tag} failed: {resp.status_code}")
        digest = resp.headers.get('Docker-Content-Digest')
        if not digest:
            raise RegistryError(f"Registry did not return a digest for {repo}:{tag}")
        return digest

    def delete_image(self, service: str, digest: str) -> None:
        repo = self.repository(service)
        resp = self._request('DELETE', f'{self.base_url}/{repo}/manifests/{digest}')
        if resp.status_code not in (200, 202, 404):
            raise RegistryError(f"Deleting {repo}@{digest} failed: {resp.status_code} {resp.text[:100]}")
        logger.debug(f"Deleted {repo}@{digest}")
