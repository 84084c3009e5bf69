"""Inspect, validate and (when needed) transcode media for one platform."""

from __future__ import annotations

import logging
from pathlib import Path

from ..domain.models import MediaType, PrepResult
from .inspector import MediaInspector
from .requirements import RequirementsRegistry
from .transcoder import MediaTranscoder
from .types import IssueSeverity, MediaRequirements, detect_media_type
from .validator import assert_valid, validate_media

logger = logging.getLogger(__name__)


class MediaPrepEngine:
    """Compose inspector, validator and transcoder into one operation.

    The verdict depends only on the file contents and the requirements, so
    running ``prepare`` twice for the same trace reaches the same decision
    and writes to the same ``converted.<ext>`` path.
    """

    def __init__(
        self,
        inspector: MediaInspector,
        transcoder: MediaTranscoder,
        work_root: str | Path,
        registry: RequirementsRegistry | None = None,
    ) -> None:
        self._inspector = inspector
        self._transcoder = transcoder
        self._work_root = Path(work_root)
        self._registry = registry or RequirementsRegistry()

    @property
    def registry(self) -> RequirementsRegistry:
        return self._registry

    def output_dir(self, file_path: str | Path, platform_type: str, trace_id: str | None) -> Path:
        if trace_id:
            return self._work_root / trace_id / platform_type
        return Path(file_path).parent / platform_type

    def prepare(
        self,
        file_path: str | Path,
        requirements: MediaRequirements,
        platform_type: str,
        *,
        enforce_constraints: bool = False,
        trace_id: str | None = None,
        media_type: MediaType | None = None,
    ) -> PrepResult:
        source = Path(file_path)
        kind = media_type or detect_media_type(source)
        info = self._inspector.inspect(source, kind)
        result = validate_media(info, requirements)

        for issue in result.issues:
            level = logging.WARNING if issue.severity is IssueSeverity.ERROR else logging.DEBUG
            logger.log(
                level,
                "media.prep.issue",
                extra={
                    "trace_id": trace_id,
                    "platform": platform_type,
                    "field": issue.field,
                    "severity": issue.severity.value,
                    "issue": issue.message,
                },
            )

        if enforce_constraints:
            assert_valid(result)

        issues = [issue.to_dict() for issue in result.issues]
        if not result.requires_conversion:
            logger.info(
                "media.prep.unchanged",
                extra={"trace_id": trace_id, "platform": platform_type, "media_type": info.type.value},
            )
            return PrepResult(file_path=str(source), converted=False, media_type=info.type, issues=issues)

        target = result.target
        logger.info(
            "media.prep.convert",
            extra={
                "trace_id": trace_id,
                "platform": platform_type,
                "error_count": len(result.errors),
                "target": target.to_dict(),
            },
        )
        converted = self._transcoder.transcode(
            source,
            target,
            self.output_dir(source, platform_type, trace_id),
            info.type,
            source_codec=info.video_codec,
        )
        return PrepResult(
            file_path=str(converted),
            converted=True,
            media_type=info.type,
            issues=issues,
            target=target.to_dict(),
        )

    def prepare_for(
        self,
        file_path: str | Path,
        platform_type: str,
        *,
        upload_type: str | None = None,
        enforce_constraints: bool = False,
        trace_id: str | None = None,
    ) -> PrepResult:
        """Resolve the platform requirements from the registry, then prepare."""

        media_type = detect_media_type(file_path)
        requirements = self._registry.resolve(platform_type, media_type, upload_type)
        return self.prepare(
            file_path,
            requirements,
            platform_type,
            enforce_constraints=enforce_constraints,
            trace_id=trace_id,
            media_type=media_type,
        )


__all__ = ["MediaPrepEngine"]
