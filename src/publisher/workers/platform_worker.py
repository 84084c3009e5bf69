"""Per-platform publish worker.

One instance serves one ``publish:<platform>`` queue. Every delivery of a job
opens a fresh ``PLATFORM`` span, so a redelivered job shows up as a new
attempt instead of reopening an ended span.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..domain.events import EventName, StepName
from ..domain.models import (
    EventLevel,
    MediaPrepJob,
    MediaType,
    PlatformConfig,
    PrepResult,
    PublishJob,
    PublishResult,
    SpanKind,
    SpanStatus,
)
from ..exceptions import ConfigurationError, CredentialValidationError, JobTimeoutError, is_unrecoverable
from ..infrastructure.queue import JobQueue, QueuedJob, QueueName, publish_queue_name
from ..logging import bind_job_context
from ..providers.base import PlatformClient, UploadHandle, UploadMetadata, VendorResource
from ..providers.retry import RetryPolicy, call_with_retries
from ..repositories.settlement import TraceSettler
from ..services.projects import ProjectService, is_empty_secret
from ..tracing import Span, Tracer
from .base import BaseWorker


class PlatformWorker(BaseWorker):
    """Prepare media, upload it and publish it on one platform."""

    def __init__(
        self,
        *,
        platform: str,
        tracer: Tracer,
        queue: JobQueue,
        projects: ProjectService,
        client: PlatformClient,
        retry_policy: RetryPolicy | None = None,
        prep_timeout: float = 600.0,
        budget_seconds: float | None = None,
        settler: TraceSettler | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        super().__init__(tracer=tracer, sleep=sleep)
        self.platform = platform
        self.queue = queue
        self.projects = projects
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.prep_timeout = prep_timeout
        self.budget_seconds = budget_seconds if budget_seconds is not None else self.retry_policy.budget_seconds
        self.settler = settler
        self._clock = clock

    @property
    def queue_name(self) -> str:
        return publish_queue_name(self.platform)

    async def handle(self, queued: QueuedJob) -> dict[str, Any]:
        """Queue handler entry point."""

        job = PublishJob.from_payload(queued.payload)
        result = await self.run(
            job,
            attempt_no=max(1, queued.attempts_made),
            max_attempts=queued.options.attempts,
            first_attempt_at=queued.first_attempt_at,
            final_attempt=queued.is_final_attempt,
        )
        return result.to_payload()

    async def run(
        self,
        job: PublishJob,
        *,
        attempt_no: int = 1,
        max_attempts: int | None = None,
        first_attempt_at: float | None = None,
        final_attempt: bool = True,
    ) -> PublishResult:
        if job.platform != self.platform:
            raise ConfigurationError(f"{self.platform} worker received a {job.platform} job")

        trace = self.tracer.from_existing(
            job.project_id,
            job.request_id,
            job.trace_id,
            started_at=job.trace_started_at,
        )
        span = trace.span(
            self.platform,
            kind=SpanKind.PLATFORM,
            platform=self.platform,
            attempt_no=attempt_no,
            max_attempts=max_attempts,
            attributes={"upload_type": job.upload_type, "file_path": job.file_path},
        )
        deadline = None
        if self.budget_seconds is not None:
            deadline = (first_attempt_at if first_attempt_at is not None else self._clock()) + self.budget_seconds

        with bind_job_context(trace_id=job.trace_id, platform=self.platform):
            span.event(EventLevel.INFO, EventName.PLATFORM_STARTED, {"attempt": attempt_no})
            try:
                result = await self._publish(job, span, deadline)
            except JobTimeoutError as exc:
                self._record_failure(span, exc, SpanStatus.TIMEOUT)
                await self._finish(job, span, settle=final_attempt)
                raise
            except Exception as exc:
                self._record_failure(span, exc, SpanStatus.FAILED)
                # the queue will not redeliver an unrecoverable failure
                await self._finish(job, span, settle=final_attempt or is_unrecoverable(exc))
                raise

            span.event(
                EventLevel.INFO,
                EventName.PLATFORM_FINISHED,
                {"resource_id": result.resource_id, "url": result.url},
            )
            span.end(
                SpanStatus.SUCCESS,
                attributes={
                    "resource_id": result.resource_id,
                    "url": result.url,
                    "attempts": result.attempts,
                    "converted": result.converted,
                },
            )
            self._logger.info(
                "platform.publish.done",
                trace_id=job.trace_id,
                platform=self.platform,
                resource_id=result.resource_id,
            )
            await self._finish(job, span, settle=True)
            return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    async def _publish(
        self,
        job: PublishJob,
        span: Span,
        deadline: float | None,
    ) -> PublishResult:
        platform = await self._load_platform(job)
        upload_type = job.upload_type or platform.upload_type

        prep = await self._prepare(job, span, upload_type)
        file_path = Path(prep.file_path)
        metadata = UploadMetadata(
            title=job.title,
            description=job.description,
            upload_type=upload_type,
            media_type=prep.media_type or MediaType.VIDEO,
            media_url=job.media_url,
        )

        span.event(EventLevel.INFO, EventName.UPLOAD_STARTED, {"file_path": str(file_path)})
        try:
            handle, upload_attempts = await call_with_retries(
                lambda: self.client.upload(file_path, metadata, platform.secret),
                self.retry_policy,
                sleep=self._sleep,
                clock=self._clock,
                deadline=deadline,
                on_retry=self._retry_recorder(span, EventName.UPLOAD_RETRY),
                platform=self.platform,
            )
        except Exception as exc:
            span.event(EventLevel.ERROR, EventName.UPLOAD_FAILED, {"error": str(exc)})
            raise
        span.event(
            EventLevel.INFO,
            EventName.UPLOAD_DONE,
            {"upload_id": handle.upload_id, "attempts": upload_attempts},
        )

        resource = await self._publish_upload(handle, platform, span, deadline)
        return PublishResult(
            platform=self.platform,
            resource_id=resource.resource_id,
            url=resource.url,
            attempts=upload_attempts,
            converted=prep.converted,
            file_path=str(file_path),
        )

    async def _load_platform(self, job: PublishJob) -> PlatformConfig:
        config = await self._run_sync(self.projects.get_project_config, job.project_id)
        if config is None:
            raise ConfigurationError(f"Unknown project: {job.project_id}")
        platform = config.platform(self.platform)
        if platform is None:
            raise ConfigurationError(f"Project {job.project_id} has no {self.platform} platform")
        if is_empty_secret(platform.secret.data):
            raise CredentialValidationError(f"{self.platform} secret is empty", platform=self.platform)
        return platform

    async def _prepare(self, job: PublishJob, span: Span, upload_type: str | None) -> PrepResult:
        """Run the prep sub-job and block this slot until it finishes."""

        span.event(EventLevel.INFO, EventName.PREP_STARTED, {"file_path": job.file_path})
        prep_job = MediaPrepJob(
            trace_id=job.trace_id,
            project_id=job.project_id,
            request_id=job.request_id,
            platform=self.platform,
            file_path=job.file_path,
            upload_type=upload_type,
            parent_span_id=span.span_id,
        )
        queued = await self.queue.enqueue(QueueName.MEDIA_PREP.value, prep_job.to_payload())
        try:
            payload = await self.queue.wait_until_finished(queued.id, timeout=self.prep_timeout)
        except Exception as exc:
            span.event(EventLevel.ERROR, EventName.PREP_FAILED, {"error": str(exc), "job_id": queued.id})
            raise
        prep = PrepResult.from_payload(payload)
        span.event(
            EventLevel.INFO,
            EventName.PREP_DONE,
            {"file_path": prep.file_path, "converted": prep.converted},
        )
        return prep

    async def _publish_upload(
        self,
        handle: UploadHandle,
        platform: PlatformConfig,
        span: Span,
        deadline: float | None,
    ) -> VendorResource:
        if self.client.folds_publish:
            return await self.client.publish(handle, platform.secret)

        step = span.child(StepName.PUBLISH.value)
        span.event(EventLevel.INFO, EventName.PUBLISH_STARTED, {"upload_id": handle.upload_id})
        try:
            resource, attempts = await call_with_retries(
                lambda: self.client.publish(handle, platform.secret),
                self.retry_policy,
                sleep=self._sleep,
                clock=self._clock,
                deadline=deadline,
                on_retry=self._retry_recorder(step, EventName.UPLOAD_RETRY),
                platform=self.platform,
            )
        except Exception as exc:
            span.event(EventLevel.ERROR, EventName.PUBLISH_FAILED, {"error": str(exc)})
            step.end(SpanStatus.FAILED, error=exc)
            raise
        step.end(SpanStatus.SUCCESS, attributes={"resource_id": resource.resource_id, "attempts": attempts})
        span.event(
            EventLevel.INFO,
            EventName.PUBLISH_DONE,
            {"resource_id": resource.resource_id, "url": resource.url},
        )
        return resource

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _retry_recorder(span: Span, name: EventName) -> Callable[[int, float, BaseException], None]:
        def _record(attempt: int, delay: float, exc: BaseException) -> None:
            span.event(
                EventLevel.WARN,
                name,
                {"attempt": attempt, "delay": round(delay, 3), "error": str(exc)},
            )

        return _record

    def _record_failure(self, span: Span, exc: BaseException, status: SpanStatus) -> None:
        self._logger.warning(
            "platform.publish.failed",
            platform=self.platform,
            status=status.value,
            error=str(exc),
        )
        span.end_if_running(status, error=exc)

    async def _finish(self, job: PublishJob, span: Span, *, settle: bool) -> None:
        flushed = await self._flush_traces()
        if not settle or self.settler is None:
            return
        status = await self._run_sync(self.settler.request, job.trace_id, span.span_id)
        if status is None and not flushed:
            self._logger.info(
                "trace.settle.pending",
                trace_id=job.trace_id,
                span_id=span.span_id,
            )


__all__ = ["PlatformWorker"]
