"""Project configuration and secret lookup boundaries.

Project/platform CRUD and secret encryption live outside the pipeline; the
workers only need to read a project's platforms with decrypted secrets.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol

from ..domain.models import PlatformConfig, PlatformSecret, ProjectConfig


class ProjectService(Protocol):
    def get_project_config(self, project_id: str) -> ProjectConfig | None: ...


class SecretStore(Protocol):
    def get(self, scope: str, platform: str) -> PlatformSecret | None: ...


def is_empty_secret(data: Any) -> bool:
    """True for ``None``, empty containers and mappings of empty values."""

    if data is None:
        return True
    if isinstance(data, str):
        return not data.strip()
    if isinstance(data, Mapping):
        return all(is_empty_secret(value) for value in data.values())
    if isinstance(data, (list, tuple, set)):
        return len(data) == 0
    return False


class InMemoryProjectService:
    """Dictionary backed project lookup used by scripts and tests."""

    def __init__(self, projects: Iterable[ProjectConfig] = (), *, secrets: SecretStore | None = None) -> None:
        self._projects = {project.id: project for project in projects}
        self._secrets = secrets

    def add(self, project: ProjectConfig) -> None:
        self._projects[project.id] = project

    def get_project_config(self, project_id: str) -> ProjectConfig | None:
        project = self._projects.get(project_id)
        if project is None or self._secrets is None:
            return project
        platforms: list[PlatformConfig] = []
        for platform in project.platforms:
            secret = self._secrets.get(project.id, platform.name) or platform.secret
            platforms.append(
                PlatformConfig(
                    name=platform.name,
                    enabled=platform.enabled,
                    upload_type=platform.upload_type,
                    secret=secret,
                    settings=dict(platform.settings),
                )
            )
        return ProjectConfig(id=project.id, name=project.name, platforms=platforms)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "InMemoryProjectService":
        """Build from ``{"projects": [{"id", "name", "platforms": [...]}]}``."""

        projects = []
        for item in raw.get("projects", []):
            platforms = [
                PlatformConfig(
                    name=str(platform["name"]),
                    enabled=bool(platform.get("enabled", True)),
                    upload_type=platform.get("upload_type"),
                    secret=PlatformSecret(
                        data=dict(platform.get("secret", {}).get("data") or {}),
                        tokens=dict(platform.get("secret", {}).get("tokens") or {}),
                    ),
                    settings=dict(platform.get("settings") or {}),
                )
                for platform in item.get("platforms", [])
            ]
            projects.append(ProjectConfig(id=str(item["id"]), name=str(item.get("name", item["id"])), platforms=platforms))
        return cls(projects)


class StaticSecretStore:
    def __init__(self, secrets: Mapping[tuple[str, str], PlatformSecret] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def put(self, scope: str, platform: str, secret: PlatformSecret) -> None:
        self._secrets[(scope, platform)] = secret

    def get(self, scope: str, platform: str) -> PlatformSecret | None:
        return self._secrets.get((scope, platform))


__all__ = [
    "InMemoryProjectService",
    "ProjectService",
    "SecretStore",
    "StaticSecretStore",
    "is_empty_secret",
]
