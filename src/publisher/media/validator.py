"""Compare inspected media against platform requirements.

Each rule is applied independently so several issues may be reported for
one file. Error issues also fill in the :class:`TargetSpec` the transcoder
needs to fix them; warnings never force a conversion.
"""

from __future__ import annotations

from ..domain.models import MediaType
from ..exceptions import MediaValidationError
from .types import (
    IssueSeverity,
    MediaInfo,
    MediaRequirements,
    TargetSpec,
    ValidationIssue,
    ValidationResult,
)

RECOMMENDED_ASPECT_TOLERANCE = 0.05
COMPRESSED_QUALITY = 85
SQUARE_FALLBACK_SIZE = 1080
DEFAULT_IMAGE_FORMAT = "jpeg"

_CODEC_ALIASES = {
    "h265": "hevc",
    "x265": "hevc",
    "avc": "h264",
    "avc1": "h264",
    "x264": "h264",
}


def _codec(value: str) -> str:
    lowered = value.strip().lower()
    return _CODEC_ALIASES.get(lowered, lowered)


def _mb(size_bytes: int) -> str:
    return f"{size_bytes / 1024 / 1024:.2f}MB"


def _fmt_number(value: float) -> str:
    return f"{value:g}"


def validate_media(info: MediaInfo, requirements: MediaRequirements) -> ValidationResult:
    """Validate ``info`` and return issues plus the re-encode target."""

    issues: list[ValidationIssue] = []
    target = TargetSpec()
    if info.type is MediaType.VIDEO:
        _validate_video(info, requirements, issues, target)
    else:
        _validate_image(info, requirements, issues, target)

    has_errors = any(issue.severity is IssueSeverity.ERROR for issue in issues)
    return ValidationResult(
        valid=not has_errors,
        issues=issues,
        requires_conversion=has_errors,
        target=target if has_errors else TargetSpec(),
    )


def assert_valid(result: ValidationResult) -> None:
    """Raise :class:`MediaValidationError` when ``result`` has error issues."""

    errors = result.errors
    if not errors:
        return
    message = "; ".join(issue.message for issue in errors)
    raise MediaValidationError(
        f"Media does not meet platform requirements: {message}",
        issues=errors,
    )


def _error(issues: list[ValidationIssue], field: str, actual: object, expected: object, message: str) -> None:
    issues.append(ValidationIssue(field, actual, expected, message, IssueSeverity.ERROR))


# ----------------------------------------------------------------------
# Video rules
# ----------------------------------------------------------------------
def _validate_video(
    info: MediaInfo,
    req: MediaRequirements,
    issues: list[ValidationIssue],
    target: TargetSpec,
) -> None:
    if info.duration:
        if req.min_duration is not None and info.duration < req.min_duration:
            _error(
                issues,
                "duration",
                info.duration,
                f">= {_fmt_number(req.min_duration)}s",
                f"Video duration {info.duration:.2f}s is below minimum {_fmt_number(req.min_duration)}s",
            )
        if req.max_duration is not None and info.duration > req.max_duration:
            _error(
                issues,
                "duration",
                info.duration,
                f"<= {_fmt_number(req.max_duration)}s",
                f"Video duration {info.duration:.2f}s exceeds maximum {_fmt_number(req.max_duration)}s",
            )
            target.max_duration = req.max_duration

    if info.width:
        if req.min_width is not None and info.width < req.min_width:
            _error(
                issues,
                "width",
                info.width,
                f">= {req.min_width}px",
                f"Video width {info.width}px is below minimum {req.min_width}px",
            )
        if req.max_width is not None and info.width > req.max_width:
            _error(
                issues,
                "width",
                info.width,
                f"<= {req.max_width}px",
                f"Video width {info.width}px exceeds maximum {req.max_width}px",
            )
            target.width = req.max_width
            if info.aspect_ratio:
                target.height = round(req.max_width / info.aspect_ratio)

    if info.height:
        if req.min_height is not None and info.height < req.min_height:
            _error(
                issues,
                "height",
                info.height,
                f">= {req.min_height}px",
                f"Video height {info.height}px is below minimum {req.min_height}px",
            )
        if req.max_height is not None and info.height > req.max_height:
            _error(
                issues,
                "height",
                info.height,
                f"<= {req.max_height}px",
                f"Video height {info.height}px exceeds maximum {req.max_height}px",
            )

    if info.aspect_ratio:
        ratio = info.aspect_ratio
        out_of_range = False
        if req.min_aspect_ratio is not None and ratio < req.min_aspect_ratio:
            out_of_range = True
            _error(
                issues,
                "aspectRatio",
                f"{ratio:.2f}",
                f">= {_fmt_number(req.min_aspect_ratio)}",
                f"Video aspect ratio {ratio:.2f} is below minimum {_fmt_number(req.min_aspect_ratio)}",
            )
        if req.max_aspect_ratio is not None and ratio > req.max_aspect_ratio:
            out_of_range = True
            _error(
                issues,
                "aspectRatio",
                f"{ratio:.2f}",
                f"<= {_fmt_number(req.max_aspect_ratio)}",
                f"Video aspect ratio {ratio:.2f} exceeds maximum {_fmt_number(req.max_aspect_ratio)}",
            )
        if out_of_range and req.recommended_aspect_ratio:
            target.aspect_ratio = _fmt_number(req.recommended_aspect_ratio)
        if (
            req.recommended_aspect_ratio is not None
            and abs(ratio - req.recommended_aspect_ratio) > RECOMMENDED_ASPECT_TOLERANCE
        ):
            issues.append(
                ValidationIssue(
                    "aspectRatio",
                    f"{ratio:.2f}",
                    f"{req.recommended_aspect_ratio:.2f}",
                    f"Video aspect ratio {ratio:.2f} differs from recommended {req.recommended_aspect_ratio:.2f}",
                    IssueSeverity.WARNING,
                )
            )

    if info.frame_rate:
        fps = info.frame_rate
        if req.min_frame_rate is not None and fps < req.min_frame_rate:
            _error(
                issues,
                "frameRate",
                fps,
                f">= {_fmt_number(req.min_frame_rate)} fps",
                f"Video frame rate {fps:g}fps is below minimum {_fmt_number(req.min_frame_rate)}fps",
            )
            target.frame_rate = req.min_frame_rate
        if req.max_frame_rate is not None and fps > req.max_frame_rate:
            _error(
                issues,
                "frameRate",
                fps,
                f"<= {_fmt_number(req.max_frame_rate)} fps",
                f"Video frame rate {fps:g}fps exceeds maximum {_fmt_number(req.max_frame_rate)}fps",
            )
            target.frame_rate = req.max_frame_rate

    if req.video_codecs and info.video_codec:
        accepted = [_codec(codec) for codec in req.video_codecs]
        if _codec(info.video_codec) not in accepted:
            supported = ", ".join(req.video_codecs)
            _error(
                issues,
                "videoCodec",
                info.video_codec,
                supported,
                f"Video codec '{info.video_codec}' is not supported. Supported codecs: {supported}",
            )
            target.video_codec = req.video_codecs[0]

    if req.audio_codecs and info.audio_codec:
        accepted = [_codec(codec) for codec in req.audio_codecs]
        if _codec(info.audio_codec) not in accepted:
            supported = ", ".join(req.audio_codecs)
            _error(
                issues,
                "audioCodec",
                info.audio_codec,
                supported,
                f"Audio codec '{info.audio_codec}' is not supported. Supported codecs: {supported}",
            )
            target.audio_codec = req.audio_codecs[0]

    _check_file_size(info, req, issues, target, label="Video")

    if req.formats and info.format:
        names = [name.strip().lower() for name in info.format.split(",")]
        if not any(name in req.formats for name in names):
            supported = ", ".join(req.formats)
            _error(
                issues,
                "format",
                info.format,
                supported,
                f"Video format '{info.format}' is not supported. Supported formats: {supported}",
            )
            target.format = req.formats[0]


# ----------------------------------------------------------------------
# Image rules
# ----------------------------------------------------------------------
def _validate_image(
    info: MediaInfo,
    req: MediaRequirements,
    issues: list[ValidationIssue],
    target: TargetSpec,
) -> None:
    if info.aspect_ratio:
        ratio = info.aspect_ratio
        if req.min_aspect_ratio is not None and ratio < req.min_aspect_ratio:
            _error(
                issues,
                "aspectRatio",
                f"{ratio:.2f}",
                f">= {_fmt_number(req.min_aspect_ratio)}",
                f"Image aspect ratio {ratio:.2f} is below minimum {_fmt_number(req.min_aspect_ratio)}",
            )
            target.width = SQUARE_FALLBACK_SIZE
            target.height = SQUARE_FALLBACK_SIZE
        if req.max_aspect_ratio is not None and ratio > req.max_aspect_ratio:
            _error(
                issues,
                "aspectRatio",
                f"{ratio:.2f}",
                f"<= {_fmt_number(req.max_aspect_ratio)}",
                f"Image aspect ratio {ratio:.2f} exceeds maximum {_fmt_number(req.max_aspect_ratio)}",
            )
            target.width = SQUARE_FALLBACK_SIZE
            target.height = SQUARE_FALLBACK_SIZE

    if info.width:
        if req.min_width is not None and info.width < req.min_width:
            _error(
                issues,
                "width",
                info.width,
                f">= {req.min_width}px",
                f"Image width {info.width}px is below minimum {req.min_width}px",
            )
            target.width = req.min_width
        if req.max_width is not None and info.width > req.max_width:
            _error(
                issues,
                "width",
                info.width,
                f"<= {req.max_width}px",
                f"Image width {info.width}px exceeds maximum {req.max_width}px",
            )
            target.width = req.max_width

    if info.height:
        if req.min_height is not None and info.height < req.min_height:
            _error(
                issues,
                "height",
                info.height,
                f">= {req.min_height}px",
                f"Image height {info.height}px is below minimum {req.min_height}px",
            )
            target.height = req.min_height
        if req.max_height is not None and info.height > req.max_height:
            _error(
                issues,
                "height",
                info.height,
                f"<= {req.max_height}px",
                f"Image height {info.height}px exceeds maximum {req.max_height}px",
            )
            target.height = req.max_height

    if req.min_resolution is not None and info.width and info.height:
        longest = max(info.width, info.height)
        if longest < req.min_resolution:
            _error(
                issues,
                "resolution",
                f"{info.width}x{info.height}",
                f">= {req.min_resolution}px",
                f"Image resolution {info.width}x{info.height} is below minimum {req.min_resolution}px",
            )
            if target.width is None and target.height is None:
                if info.width >= info.height:
                    target.width = req.min_resolution
                else:
                    target.height = req.min_resolution

    if req.formats and info.format:
        if info.format.lower() not in req.formats:
            supported = ", ".join(req.formats)
            _error(
                issues,
                "format",
                info.format,
                supported,
                f"Image format '{info.format}' is not supported. Supported formats: {supported}",
            )
            target.format = DEFAULT_IMAGE_FORMAT

    _check_file_size(info, req, issues, target, label="Image")


def _check_file_size(
    info: MediaInfo,
    req: MediaRequirements,
    issues: list[ValidationIssue],
    target: TargetSpec,
    *,
    label: str,
) -> None:
    if req.max_file_size_mb is None or not info.file_size:
        return
    max_bytes = req.max_file_size_mb * 1024 * 1024
    if info.file_size > max_bytes:
        actual = _mb(info.file_size)
        limit = f"{_fmt_number(req.max_file_size_mb)}MB"
        _error(
            issues,
            "fileSize",
            actual,
            f"<= {limit}",
            f"{label} file size {actual} exceeds maximum {limit}",
        )
        target.quality = COMPRESSED_QUALITY


__all__ = [
    "COMPRESSED_QUALITY",
    "RECOMMENDED_ASPECT_TOLERANCE",
    "assert_valid",
    "validate_media",
]
