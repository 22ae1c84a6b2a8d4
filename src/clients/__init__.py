"""Wrappers around the external tools a release drives."""

from clients.docker import DockerClient, DockerError
from clients.git import GitClient, GitError, PushRejected
from clients.kube import KubeClient, KubeError
from clients.registry import RegistryClient, RegistryError
from clients.sonar import SonarClient, SonarError
from clients.trivy import ScannerError, TrivyScanner

__all__ = [
    'DockerClient',
    'DockerError',
    'GitClient',
    'GitError',
    'PushRejected',
    'KubeClient',
    'KubeError',
    'RegistryClient',
    'RegistryError',
    'SonarClient',
    'SonarError',
    'ScannerError',
    'TrivyScanner',
]
