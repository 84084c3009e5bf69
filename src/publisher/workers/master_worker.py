"""Master orchestrator: validate every platform, then fan out publish jobs."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..domain.events import EventName
from ..domain.models import (
    EventLevel,
    MasterJob,
    PlatformConfig,
    ProjectConfig,
    PublishJob,
    SpanKind,
    SpanStatus,
    TraceStatus,
)
from ..exceptions import (
    AppError,
    ConfigurationError,
    CredentialValidationError,
    DownloadError,
    VendorAuthError,
    error_detail,
)
from ..infrastructure.queue import JobOptions, JobQueue, QueuedJob, publish_queue_name
from ..logging import bind_job_context
from ..providers.base import PlatformClient
from ..repositories.trace_repository import TraceRepository
from ..services.downloader import MediaDownloader
from ..services.projects import ProjectService, is_empty_secret
from ..tracing import Span, Trace, Tracer
from .base import BaseWorker

MASTER_SPAN_NAME = "master-orchestration"


@dataclass(slots=True)
class MasterOutcome:
    trace_id: str
    success: bool
    file_path: str | None = None
    platforms: list[str] = field(default_factory=list)
    job_ids: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None
    duplicate: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "success": self.success,
            "file_path": self.file_path,
            "platforms": list(self.platforms),
            "job_ids": list(self.job_ids),
            "error": self.error,
            "duplicate": self.duplicate,
        }


class MasterWorker(BaseWorker):
    """Consume master jobs.

    Validation of all enabled platforms happens before anything is enqueued,
    so a request is either fanned out to every enabled platform or to none.
    Failures end the master span and the trace ``FAILED`` and are reported
    through the returned :class:`MasterOutcome`; they are not retried.
    """

    def __init__(
        self,
        *,
        tracer: Tracer,
        queue: JobQueue,
        projects: ProjectService,
        clients: Mapping[str, PlatformClient],
        downloader: MediaDownloader,
        repository: TraceRepository | None = None,
        publish_options: JobOptions | None = None,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        super().__init__(tracer=tracer, sleep=sleep)
        self.queue = queue
        self.projects = projects
        self.clients = dict(clients)
        self.downloader = downloader
        self.repository = repository
        self.publish_options = publish_options

    async def handle(self, queued: QueuedJob) -> dict[str, Any]:
        """Queue handler entry point."""

        outcome = await self.run(MasterJob.from_payload(queued.payload))
        return outcome.to_payload()

    async def run(self, job: MasterJob) -> MasterOutcome:
        trace, duplicate = await self._open_trace(job)
        if duplicate:
            self._logger.info(
                "master.request.duplicate",
                trace_id=trace.trace_id,
                idempotency_key=job.idempotency_key,
            )
            return MasterOutcome(trace_id=trace.trace_id, success=True, duplicate=True)

        with bind_job_context(trace_id=trace.trace_id, project_id=job.project_id):
            span = trace.span(MASTER_SPAN_NAME, kind=SpanKind.MASTER)
            span.event(
                EventLevel.INFO,
                EventName.PUBLISH_REQUEST_RECEIVED,
                {"media_url": job.media_url, "request_id": job.request_id},
            )
            try:
                outcome = await self._orchestrate(job, trace, span)
            except AppError as exc:
                outcome = self._fail(trace, span, exc)
            except Exception as exc:
                self._logger.exception("master.unexpected_error", trace_id=trace.trace_id)
                outcome = self._fail(trace, span, exc)
            await self._flush_traces()
            return outcome

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    async def _open_trace(self, job: MasterJob) -> tuple[Trace, bool]:
        if job.idempotency_key and self.repository is not None:
            existing = await self._run_sync(self.repository.find_by_idempotency_key, job.idempotency_key)
            if existing is not None:
                trace = self.tracer.from_existing(
                    existing.project_id,
                    existing.request_id,
                    existing.id,
                    started_at=existing.started_at,
                )
                spans = await self._run_sync(self.repository.list_spans, existing.id)
                fanned_out = any(
                    span.kind is SpanKind.MASTER and span.status is SpanStatus.SUCCESS for span in spans
                )
                if not fanned_out and existing.status is not TraceStatus.RUNNING:
                    # a failed run never enqueued anything; this delivery starts over
                    await self._flush_traces()
                    await self._run_sync(self.repository.reopen_trace, existing.id)
                    self._logger.info(
                        "master.trace.reopened",
                        trace_id=existing.id,
                        previous_status=existing.status.value,
                    )
                return trace, fanned_out
        if job.trace_id:
            return (
                self.tracer.from_existing(job.project_id, job.request_id, job.trace_id),
                False,
            )
        trace = self.tracer.init(
            job.project_id,
            job.request_id,
            input={"media_url": job.media_url, "title": job.title, "description": job.description},
            idempotency_key=job.idempotency_key,
        )
        return trace, False

    async def _orchestrate(self, job: MasterJob, trace: Trace, span: Span) -> MasterOutcome:
        try:
            file_path = await self.downloader.download(job.media_url, trace.trace_id)
        except DownloadError:
            self._logger.warning("master.download.failed", media_url=job.media_url)
            raise
        span.event(EventLevel.INFO, EventName.MEDIA_DOWNLOADED, {"file_path": str(file_path)})

        config = await self._run_sync(self.projects.get_project_config, job.project_id)
        if config is None:
            raise ConfigurationError(f"Unknown project: {job.project_id}")
        enabled = config.enabled_platforms()
        if not enabled:
            raise ConfigurationError(f"Project {job.project_id} has no enabled platforms")

        await self._validate_platforms(config, span)

        entries = [
            (
                publish_queue_name(platform.name),
                PublishJob(
                    trace_id=trace.trace_id,
                    project_id=job.project_id,
                    request_id=job.request_id,
                    platform=platform.name,
                    media_url=job.media_url,
                    file_path=str(file_path),
                    upload_type=platform.upload_type,
                    title=job.title,
                    description=job.description,
                    trace_started_at=trace.started_at.isoformat(),
                ).to_payload(),
            )
            for platform in enabled
        ]
        names = [platform.name for platform in enabled]
        queued = await self.queue.enqueue_many(entries, self.publish_options)

        span.end(
            SpanStatus.SUCCESS,
            attributes={"platforms": names, "file_path": str(file_path)},
        )
        self._logger.info(
            "master.fanout.done",
            trace_id=trace.trace_id,
            platforms=names,
        )
        return MasterOutcome(
            trace_id=trace.trace_id,
            success=True,
            file_path=str(file_path),
            platforms=names,
            job_ids=[item.id for item in queued],
        )

    async def _validate_platforms(self, config: ProjectConfig, span: Span) -> None:
        """Check every platform in listing order; the first failure aborts."""

        for platform in config.platforms:
            span.event(
                EventLevel.INFO,
                EventName.PLATFORM_VALIDATION_STARTED,
                {"platform": platform.name},
            )
            if not platform.enabled:
                span.event(
                    EventLevel.INFO,
                    EventName.PLATFORM_VALIDATION_SKIPPED,
                    {"platform": platform.name},
                )
                continue
            try:
                await self._validate_platform(platform)
            except Exception as exc:
                span.event(
                    EventLevel.ERROR,
                    EventName.PLATFORM_VALIDATION_FAILED,
                    {"platform": platform.name, "error": str(exc)},
                )
                raise
            span.event(
                EventLevel.INFO,
                EventName.PLATFORM_VALIDATION_COMPLETED,
                {"platform": platform.name},
            )

    async def _validate_platform(self, platform: PlatformConfig) -> None:
        if is_empty_secret(platform.secret.data):
            raise CredentialValidationError(f"{platform.name} secret is empty", platform=platform.name)
        client = self.clients.get(platform.name)
        if client is None:
            raise ConfigurationError(f"Unknown platform: {platform.name}")
        try:
            result = await client.verify(platform.secret)
        except (CredentialValidationError, VendorAuthError) as exc:
            raise CredentialValidationError(
                f"{platform.name} secret is invalid: {exc}",
                platform=platform.name,
            ) from exc
        if not result.valid:
            reason = f": {result.message}" if result.message else ""
            raise CredentialValidationError(
                f"{platform.name} secret is invalid{reason}",
                platform=platform.name,
            )

    def _fail(self, trace: Trace, span: Span, exc: BaseException) -> MasterOutcome:
        self._logger.warning(
            "master.failed",
            trace_id=trace.trace_id,
            error=str(exc),
        )
        span.end(SpanStatus.FAILED, error=exc)
        trace.end(TraceStatus.FAILED)
        return MasterOutcome(trace_id=trace.trace_id, success=False, error=error_detail(exc))


__all__ = ["MasterOutcome", "MasterWorker", "MASTER_SPAN_NAME"]
