"""Media inspection, constraint validation and transcoding."""

from .inspector import MediaInspector
from .prep import MediaPrepEngine
from .requirements import RequirementsRegistry
from .transcoder import MediaTranscoder, build_video_command, crf_for_quality
from .types import MediaInfo, MediaRequirements, TargetSpec, ValidationIssue, ValidationResult
from .validator import assert_valid, validate_media

__all__ = [
    "MediaInfo",
    "MediaInspector",
    "MediaPrepEngine",
    "MediaRequirements",
    "MediaTranscoder",
    "RequirementsRegistry",
    "TargetSpec",
    "ValidationIssue",
    "ValidationResult",
    "assert_valid",
    "build_video_command",
    "crf_for_quality",
    "validate_media",
]
