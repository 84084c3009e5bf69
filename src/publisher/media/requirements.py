"""Platform media requirements resolved into one normalized shape.

Each ``(platform, upload type, media type)`` triple maps to a single
:class:`MediaRequirements` value so the validator has one code path for all
platforms. Project level overrides (``PlatformConfig.settings["requirements"]``)
are merged once when the registry is built.
"""

from __future__ import annotations

from dataclasses import fields, replace
from typing import Any, Mapping

from ..domain.models import MediaType, PlatformType, UploadType
from ..exceptions import ConfigurationError
from .types import MediaRequirements

RequirementsKey = tuple[str, str, MediaType]

# ----------------------------------------------------------------------
# Instagram
# ----------------------------------------------------------------------
INSTAGRAM_IMAGE = MediaRequirements(
    formats=("jpg", "jpeg", "png"),
    min_aspect_ratio=0.8,
    max_aspect_ratio=1.91,
    max_file_size_mb=8,
    min_width=320,
    max_width=1440,
)

INSTAGRAM_CAROUSEL_IMAGE = replace(
    INSTAGRAM_IMAGE,
    max_file_size_mb=30,
    min_width=600,
    min_resolution=1080,
)

_INSTAGRAM_VIDEO_BASE = MediaRequirements(
    formats=("mp4", "mov"),
    audio_codecs=("aac",),
    video_codecs=("h264", "hevc"),
)

INSTAGRAM_REELS_VIDEO = replace(
    _INSTAGRAM_VIDEO_BASE,
    min_duration=3,
    max_duration=90,
    min_width=540,
    min_height=960,
    max_width=1920,
    max_height=1920,
    min_aspect_ratio=0.5625,
    max_aspect_ratio=1.91,
    max_file_size_mb=4000,
    min_frame_rate=30,
    recommended_aspect_ratio=0.5625,
)

INSTAGRAM_CAROUSEL_VIDEO = replace(
    _INSTAGRAM_VIDEO_BASE,
    min_duration=3,
    max_duration=60,
    min_width=600,
    min_aspect_ratio=0.8,
    max_aspect_ratio=1.91,
    max_file_size_mb=4000,
    min_frame_rate=30,
)

# ----------------------------------------------------------------------
# YouTube
# ----------------------------------------------------------------------
_YOUTUBE_BASE = MediaRequirements(
    formats=("mp4", "mov"),
    audio_codecs=("aac", "mp3", "opus"),
    video_codecs=("h264",),
)

YOUTUBE_SHORTS = replace(
    _YOUTUBE_BASE,
    min_duration=1,
    max_duration=60,
    max_width=1080,
    max_height=1920,
    max_file_size_mb=128_000,
    recommended_aspect_ratio=0.5625,
    min_frame_rate=24,
    max_frame_rate=60,
)

YOUTUBE_STANDARD = replace(
    _YOUTUBE_BASE,
    min_duration=1,
    max_duration=43_200,
    max_width=3840,
    max_height=2160,
    max_file_size_mb=128_000,
    recommended_aspect_ratio=1.7778,
    min_frame_rate=24,
    max_frame_rate=60,
)

DEFAULT_REQUIREMENTS: Mapping[RequirementsKey, MediaRequirements] = {
    (PlatformType.INSTAGRAM.value, UploadType.IMAGE.value, MediaType.IMAGE): INSTAGRAM_IMAGE,
    (PlatformType.INSTAGRAM.value, UploadType.REELS.value, MediaType.VIDEO): INSTAGRAM_REELS_VIDEO,
    (PlatformType.INSTAGRAM.value, UploadType.CAROUSEL.value, MediaType.IMAGE): INSTAGRAM_CAROUSEL_IMAGE,
    (PlatformType.INSTAGRAM.value, UploadType.CAROUSEL.value, MediaType.VIDEO): INSTAGRAM_CAROUSEL_VIDEO,
    (PlatformType.YOUTUBE.value, UploadType.SHORTS.value, MediaType.VIDEO): YOUTUBE_SHORTS,
    (PlatformType.YOUTUBE.value, UploadType.STANDARD.value, MediaType.VIDEO): YOUTUBE_STANDARD,
}

DEFAULT_UPLOAD_TYPES: Mapping[tuple[str, MediaType], str] = {
    (PlatformType.INSTAGRAM.value, MediaType.IMAGE): UploadType.IMAGE.value,
    (PlatformType.INSTAGRAM.value, MediaType.VIDEO): UploadType.REELS.value,
    (PlatformType.YOUTUBE.value, MediaType.VIDEO): UploadType.SHORTS.value,
}

# camelCase keys accepted in stored platform configuration
_ALIASES = {
    "formats": "formats",
    "videoCodecs": "video_codecs",
    "audioCodecs": "audio_codecs",
    "minDurationSeconds": "min_duration",
    "maxDurationSeconds": "max_duration",
    "minWidthPixels": "min_width",
    "maxWidthPixels": "max_width",
    "minHeightPixels": "min_height",
    "maxHeightPixels": "max_height",
    "minAspectRatio": "min_aspect_ratio",
    "maxAspectRatio": "max_aspect_ratio",
    "recommendedAspectRatio": "recommended_aspect_ratio",
    "minFrameRate": "min_frame_rate",
    "maxFrameRate": "max_frame_rate",
    "maxFileSizeMB": "max_file_size_mb",
    "minResolution": "min_resolution",
}
_FIELD_NAMES = {item.name for item in fields(MediaRequirements)}
_TUPLE_FIELDS = {"formats", "video_codecs", "audio_codecs"}


def normalize_overrides(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Translate stored (camelCase or snake_case) overrides into field values."""

    normalized: dict[str, Any] = {}
    for key, value in raw.items():
        name = _ALIASES.get(key, key)
        if name not in _FIELD_NAMES:
            continue
        if name in _TUPLE_FIELDS:
            normalized[name] = tuple(str(item).lower() for item in (value or ()))
        else:
            normalized[name] = value
    return normalized


class RequirementsRegistry:
    """Lookup table of requirements per (platform, upload type, media type)."""

    def __init__(self, entries: Mapping[RequirementsKey, MediaRequirements] | None = None) -> None:
        self._entries: dict[RequirementsKey, MediaRequirements] = dict(entries or DEFAULT_REQUIREMENTS)

    def with_overrides(
        self,
        platform: str,
        overrides: Mapping[str, Any],
        *,
        upload_type: str | None = None,
    ) -> "RequirementsRegistry":
        """Return a copy where ``platform`` entries are patched with ``overrides``.

        ``overrides`` may be flat or nested per media type (``{"video": {...}}``).
        """

        entries = dict(self._entries)
        for key, requirements in self._entries.items():
            key_platform, key_upload, media_type = key
            if key_platform != platform or (upload_type and key_upload != upload_type):
                continue
            nested = overrides.get(media_type.value)
            source = nested if isinstance(nested, Mapping) else overrides
            patch = normalize_overrides(source)
            if patch:
                entries[key] = replace(requirements, **patch)
        return RequirementsRegistry(entries)

    def resolve(
        self,
        platform: str,
        media_type: MediaType,
        upload_type: str | None = None,
    ) -> MediaRequirements:
        upload = upload_type or DEFAULT_UPLOAD_TYPES.get((platform, media_type))
        if upload is None:
            raise ConfigurationError(f"{platform} does not accept {media_type.value} uploads")
        try:
            return self._entries[(platform, upload, media_type)]
        except KeyError:
            raise ConfigurationError(
                f"No {media_type.value} requirements for {platform} upload type '{upload}'"
            ) from None

    def default_upload_type(self, platform: str, media_type: MediaType) -> str | None:
        return DEFAULT_UPLOAD_TYPES.get((platform, media_type))


__all__ = [
    "DEFAULT_REQUIREMENTS",
    "INSTAGRAM_IMAGE",
    "INSTAGRAM_CAROUSEL_IMAGE",
    "INSTAGRAM_REELS_VIDEO",
    "INSTAGRAM_CAROUSEL_VIDEO",
    "YOUTUBE_SHORTS",
    "YOUTUBE_STANDARD",
    "RequirementsRegistry",
    "normalize_overrides",
]
