"""Entry point that accepts publish requests and hands them to the master queue."""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import urlparse
from uuid import uuid4

from ..domain.events import EventName
from ..domain.models import EventLevel, MasterJob, TraceStatus
from ..exceptions import ConfigurationError
from ..infrastructure.queue import JobQueue, QueueName
from ..tracing import Tracer
from .projects import ProjectService

logger = logging.getLogger(__name__)


class PublishService:
    """Create the trace of a publish request and enqueue its master job."""

    def __init__(self, *, tracer: Tracer, queue: JobQueue, projects: ProjectService | None = None) -> None:
        self.tracer = tracer
        self.queue = queue
        self.projects = projects

    async def submit(
        self,
        project_id: str,
        media_url: str,
        *,
        title: str | None = None,
        description: str | None = None,
        request_id: str | None = None,
        idempotency_key: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> str:
        """Return the trace id of the accepted request."""

        request_id = request_id or uuid4().hex
        trace = self.tracer.init(
            project_id,
            request_id,
            input={"media_url": media_url, "title": title, "description": description},
            context=context,
            idempotency_key=idempotency_key,
        )
        trace.event(EventLevel.INFO, EventName.PUBLISH_REQUEST_RECEIVED, {"media_url": media_url})

        try:
            self._validate(project_id, media_url)
        except ConfigurationError as exc:
            trace.event(EventLevel.ERROR, EventName.PUBLISH_FAILED, {"error": str(exc)})
            trace.end(TraceStatus.FAILED)
            logger.warning("publish.request.rejected", extra={"project_id": project_id, "error": str(exc)})
            raise
        trace.event(EventLevel.INFO, EventName.PUBLISH_REQUEST_VALIDATED)

        job = MasterJob(
            project_id=project_id,
            request_id=request_id,
            media_url=media_url,
            trace_id=trace.trace_id,
            idempotency_key=idempotency_key,
            title=title,
            description=description,
        )
        queued = await self.queue.enqueue(QueueName.MASTER.value, job.to_payload())
        trace.event(EventLevel.INFO, EventName.PUBLISH_REQUEST_QUEUED, {"job_id": queued.id})
        logger.info(
            "publish.request.queued",
            extra={"trace_id": trace.trace_id, "project_id": project_id, "job_id": queued.id},
        )
        return trace.trace_id

    def _validate(self, project_id: str, media_url: str) -> None:
        if not media_url:
            raise ConfigurationError("media_url is required")
        scheme = urlparse(media_url).scheme
        if scheme not in ("", "file", "http", "https"):
            raise ConfigurationError(f"Unsupported media URL scheme: {scheme}")
        if self.projects is not None and self.projects.get_project_config(project_id) is None:
            raise ConfigurationError(f"Unknown project: {project_id}")


__all__ = ["PublishService"]
