"""Domain models shared by the orchestrator, platform workers and tracing."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping


class TraceStatus(str, Enum):
    """Lifecycle of one publish request."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"


class SpanStatus(str, Enum):
    """Lifecycle of one unit of work inside a trace."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    SKIPPED = "SKIPPED"


class SpanKind(str, Enum):
    MASTER = "MASTER"
    PLATFORM = "PLATFORM"
    STEP = "STEP"


class EventLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class PlatformType(str, Enum):
    INSTAGRAM = "instagram"
    YOUTUBE = "youtube"


class UploadType(str, Enum):
    """Platform specific publication format."""

    IMAGE = "image"
    REELS = "reels"
    CAROUSEL = "carousel"
    SHORTS = "shorts"
    STANDARD = "standard"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


# ----------------------------------------------------------------------
# Job payloads
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class MasterJob:
    """Top-level publish request consumed by the master orchestrator."""

    project_id: str
    request_id: str
    media_url: str
    trace_id: str | None = None
    idempotency_key: str | None = None
    title: str | None = None
    description: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MasterJob":
        return cls(
            project_id=str(payload["project_id"]),
            request_id=str(payload["request_id"]),
            media_url=str(payload["media_url"]),
            trace_id=payload.get("trace_id"),
            idempotency_key=payload.get("idempotency_key"),
            title=payload.get("title"),
            description=payload.get("description"),
        )


@dataclass(frozen=True, slots=True)
class PublishJob:
    """Per-platform job; retries reuse the same payload."""

    trace_id: str
    project_id: str
    request_id: str
    platform: str
    media_url: str
    file_path: str
    upload_type: str | None = None
    title: str | None = None
    description: str | None = None
    trace_started_at: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PublishJob":
        return cls(
            trace_id=str(payload["trace_id"]),
            project_id=str(payload["project_id"]),
            request_id=str(payload["request_id"]),
            platform=str(payload["platform"]),
            media_url=str(payload.get("media_url") or ""),
            file_path=str(payload["file_path"]),
            upload_type=payload.get("upload_type"),
            title=payload.get("title"),
            description=payload.get("description"),
            trace_started_at=payload.get("trace_started_at"),
        )


@dataclass(frozen=True, slots=True)
class MediaPrepJob:
    """Sub-job asking the prep engine to make ``file_path`` platform-ready."""

    trace_id: str
    project_id: str
    request_id: str
    platform: str
    file_path: str
    upload_type: str | None = None
    parent_span_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MediaPrepJob":
        return cls(
            trace_id=str(payload["trace_id"]),
            project_id=str(payload["project_id"]),
            request_id=str(payload["request_id"]),
            platform=str(payload["platform"]),
            file_path=str(payload["file_path"]),
            upload_type=payload.get("upload_type"),
            parent_span_id=payload.get("parent_span_id"),
        )


@dataclass(slots=True)
class PrepResult:
    """Outcome of :meth:`MediaPrepEngine.prepare`."""

    file_path: str
    converted: bool
    media_type: MediaType | None = None
    issues: list[dict[str, Any]] = field(default_factory=list)
    target: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "converted": self.converted,
            "media_type": self.media_type.value if self.media_type else None,
            "issues": list(self.issues),
            "target": dict(self.target),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PrepResult":
        media_type = payload.get("media_type")
        return cls(
            file_path=str(payload["file_path"]),
            converted=bool(payload.get("converted", False)),
            media_type=MediaType(media_type) if media_type else None,
            issues=list(payload.get("issues") or []),
            target=dict(payload.get("target") or {}),
        )


@dataclass(slots=True)
class PublishResult:
    """Vendor resource produced by a platform worker."""

    platform: str
    resource_id: str
    url: str | None
    attempts: int = 1
    converted: bool = False
    file_path: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


# ----------------------------------------------------------------------
# Project configuration (provided by external stores)
# ----------------------------------------------------------------------
@dataclass(slots=True)
class PlatformSecret:
    """Decrypted credential data and OAuth tokens of one platform."""

    data: dict[str, Any] = field(default_factory=dict)
    tokens: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PlatformConfig:
    name: str
    enabled: bool = True
    upload_type: str | None = None
    secret: PlatformSecret = field(default_factory=PlatformSecret)
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProjectConfig:
    id: str
    name: str
    platforms: list[PlatformConfig] = field(default_factory=list)

    def enabled_platforms(self) -> list[PlatformConfig]:
        return [platform for platform in self.platforms if platform.enabled]

    def platform(self, name: str) -> PlatformConfig | None:
        for platform in self.platforms:
            if platform.name == name:
                return platform
        return None


__all__ = [
    "TraceStatus",
    "SpanStatus",
    "SpanKind",
    "EventLevel",
    "PlatformType",
    "UploadType",
    "MediaType",
    "MasterJob",
    "PublishJob",
    "MediaPrepJob",
    "PrepResult",
    "PublishResult",
    "PlatformSecret",
    "PlatformConfig",
    "ProjectConfig",
]
