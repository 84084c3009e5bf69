"""Collaborator services used by the workers."""

from .downloader import MediaDownloader
from .projects import InMemoryProjectService, ProjectService, SecretStore, StaticSecretStore, is_empty_secret
from .publish import PublishService

__all__ = [
    "InMemoryProjectService",
    "MediaDownloader",
    "ProjectService",
    "PublishService",
    "SecretStore",
    "StaticSecretStore",
    "is_empty_secret",
]
