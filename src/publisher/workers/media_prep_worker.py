"""Media prep sub-job handler."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from ..domain.events import EventName, StepName
from ..domain.models import EventLevel, MediaPrepJob, PrepResult, ProjectConfig, SpanStatus
from ..infrastructure.queue import QueuedJob
from ..logging import bind_job_context
from ..media.prep import MediaPrepEngine
from ..media.requirements import RequirementsRegistry
from ..media.types import detect_media_type
from ..services.projects import ProjectService
from ..tracing import Tracer
from .base import BaseWorker


class MediaPrepWorker(BaseWorker):
    """Run :class:`MediaPrepEngine` for one platform inside a ``prep`` span.

    The span hangs under the platform span whose id travels in the job
    payload. Project level requirement overrides and the per-platform
    ``enforce_constraints`` flag are read from the platform settings.
    """

    def __init__(
        self,
        *,
        tracer: Tracer,
        engine: MediaPrepEngine,
        projects: ProjectService | None = None,
        enforce_constraints: bool = False,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        super().__init__(tracer=tracer, sleep=sleep)
        self.engine = engine
        self.projects = projects
        self.enforce_constraints = enforce_constraints

    async def handle(self, queued: QueuedJob) -> dict[str, Any]:
        result = await self.run(MediaPrepJob.from_payload(queued.payload))
        return result.to_payload()

    async def run(self, job: MediaPrepJob) -> PrepResult:
        trace = self.tracer.from_existing(job.project_id, job.request_id, job.trace_id)
        span = trace.span(
            StepName.PREP.value,
            parent_span_id=job.parent_span_id,
            platform=job.platform,
            attributes={"file_path": job.file_path},
        )
        with bind_job_context(trace_id=job.trace_id, platform=job.platform):
            try:
                settings = await self._platform_settings(job)
                registry = self._registry_for(job.platform, settings)
                enforce = bool(settings.get("enforce_constraints", settings.get("enforceConstraints", self.enforce_constraints)))
                media_type = detect_media_type(job.file_path)
                requirements = registry.resolve(job.platform, media_type, job.upload_type)
                result = await self._run_sync(
                    self.engine.prepare,
                    job.file_path,
                    requirements,
                    job.platform,
                    enforce_constraints=enforce,
                    trace_id=job.trace_id,
                    media_type=media_type,
                )
            except Exception as exc:
                span.event(EventLevel.ERROR, EventName.PREP_FAILED, {"error": str(exc)})
                span.end(SpanStatus.FAILED, error=exc)
                self._logger.error(
                    "media_prep.failed",
                    trace_id=job.trace_id,
                    platform=job.platform,
                    error=str(exc),
                )
                await self._flush_traces()
                raise

            if result.converted:
                span.end(
                    SpanStatus.SUCCESS,
                    attributes={"converted": True, "output_path": result.file_path, "target": result.target},
                )
            else:
                span.event(EventLevel.INFO, EventName.PREP_SKIPPED, {"issues": len(result.issues)})
                span.end(SpanStatus.SKIPPED, attributes={"converted": False})
            await self._flush_traces()
            return result

    async def _platform_settings(self, job: MediaPrepJob) -> Mapping[str, Any]:
        if self.projects is None:
            return {}
        config: ProjectConfig | None = await self._run_sync(self.projects.get_project_config, job.project_id)
        platform = config.platform(job.platform) if config is not None else None
        return platform.settings if platform is not None else {}

    def _registry_for(self, platform: str, settings: Mapping[str, Any]) -> RequirementsRegistry:
        overrides = settings.get("requirements")
        if isinstance(overrides, Mapping) and overrides:
            return self.engine.registry.with_overrides(platform, overrides)
        return self.engine.registry


__all__ = ["MediaPrepWorker"]
