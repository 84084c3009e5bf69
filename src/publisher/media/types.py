"""Value types shared by the inspector, validator and transcoder."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..domain.models import MediaType

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff"})
VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".avi", ".mkv", ".webm", ".flv", ".wmv", ".m4v"})


def detect_media_type(path: str | Path) -> MediaType:
    """Guess the media type from the file extension.

    Unknown extensions are treated as video; inspection confirms or rejects
    the guess.
    """

    suffix = Path(path).suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return MediaType.IMAGE
    return MediaType.VIDEO


def parse_frame_rate(value: str | float | int | None) -> float | None:
    """Parse ``"30000/1001"``, ``"25"`` or a number into frames per second."""

    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    text = str(value).strip()
    if not text:
        return None
    if "/" in text:
        numerator, _, denominator = text.partition("/")
        try:
            num = float(numerator)
            den = float(denominator)
        except ValueError:
            return None
        if den == 0 or num <= 0:
            return None
        return num / den
    try:
        parsed = float(text)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def parse_aspect_ratio(value: str | float | int | None) -> float | None:
    """Accept ``"9/16"``, ``"9:16"`` or ``"0.5625"``."""

    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    text = str(value).strip().replace(":", "/")
    return parse_frame_rate(text)


@dataclass(slots=True)
class MediaInfo:
    """Technical metadata of a local media file."""

    type: MediaType
    file_size: int
    width: int | None = None
    height: int | None = None
    aspect_ratio: float | None = None
    duration: float | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    frame_rate: float | None = None
    bitrate: int | None = None
    format: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass(frozen=True, slots=True)
class MediaRequirements:
    """Normalized media envelope accepted by one platform upload type."""

    formats: tuple[str, ...] = ()
    video_codecs: tuple[str, ...] = ()
    audio_codecs: tuple[str, ...] = ()
    min_duration: float | None = None
    max_duration: float | None = None
    min_width: int | None = None
    max_width: int | None = None
    min_height: int | None = None
    max_height: int | None = None
    min_aspect_ratio: float | None = None
    max_aspect_ratio: float | None = None
    recommended_aspect_ratio: float | None = None
    min_frame_rate: float | None = None
    max_frame_rate: float | None = None
    max_file_size_mb: float | None = None
    min_resolution: int | None = None


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    field: str
    actual: Any
    expected: Any
    message: str
    severity: IssueSeverity = IssueSeverity.ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "actual": self.actual,
            "expected": self.expected,
            "message": self.message,
            "severity": self.severity.value,
        }


@dataclass(slots=True)
class TargetSpec:
    """Re-encode target; unset fields keep the source value."""

    width: int | None = None
    height: int | None = None
    aspect_ratio: str | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    max_duration: float | None = None
    format: str | None = None
    quality: int | None = None
    frame_rate: float | None = None

    def is_empty(self) -> bool:
        return not self.to_dict()

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)
    requires_conversion: bool = False
    target: TargetSpec = field(default_factory=TargetSpec)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity is IssueSeverity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity is IssueSeverity.WARNING]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "requires_conversion": self.requires_conversion,
            "issues": [issue.to_dict() for issue in self.issues],
            "target": self.target.to_dict(),
        }


__all__ = [
    "IMAGE_EXTENSIONS",
    "VIDEO_EXTENSIONS",
    "IssueSeverity",
    "MediaInfo",
    "MediaRequirements",
    "TargetSpec",
    "ValidationIssue",
    "ValidationResult",
    "detect_media_type",
    "parse_aspect_ratio",
    "parse_frame_rate",
]
