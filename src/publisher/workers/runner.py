"""Worker pool wiring queues, handlers and shared resources."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..config import AppConfig
from ..infrastructure.queue import InMemoryJobQueue, JobHandler, JobOptions, QueueName
from ..media import MediaInspector, MediaPrepEngine, MediaTranscoder
from ..providers.base import PlatformClient
from ..providers.factory import create_clients
from ..providers.retry import RetryPolicy
from ..repositories.settlement import TraceSettler
from ..repositories.trace_repository import TraceRepository
from ..services.downloader import MediaDownloader
from ..tracing import StagedIngestor, Tracer
from ..tracing.sinks import build_sink
from .master_worker import MasterWorker
from .media_prep_worker import MediaPrepWorker
from .platform_worker import PlatformWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QueueBinding:
    queue: str
    handler: JobHandler
    concurrency: int = 1


@dataclass(slots=True)
class WorkerPool:
    """Consume every bound queue until ``shutdown_event`` is set."""

    queue: InMemoryJobQueue
    tracer: Tracer
    ingestor: StagedIngestor
    bindings: list[QueueBinding] = field(default_factory=list)
    clients: dict[str, PlatformClient] = field(default_factory=dict)

    def bind(self, queue: str, handler: JobHandler, *, concurrency: int = 1) -> None:
        self.bindings.append(QueueBinding(queue=queue, handler=handler, concurrency=max(1, concurrency)))

    async def run(self, shutdown_event: asyncio.Event) -> None:
        tasks = [
            asyncio.create_task(
                self.queue.consume(
                    binding.queue,
                    binding.handler,
                    concurrency=binding.concurrency,
                    shutdown_event=shutdown_event,
                ),
                name=f"consume-{binding.queue}",
            )
            for binding in self.bindings
        ]
        logger.info(
            "worker_pool.started",
            extra={"queues": {binding.queue: binding.concurrency for binding in self.bindings}},
        )
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.aclose()

    async def aclose(self) -> None:
        await self.queue.aclose()
        if self.clients:
            await asyncio.gather(*(client.aclose() for client in self.clients.values()))
        await asyncio.to_thread(self.ingestor.close)
        logger.info("worker_pool.stopped")


def build_worker_pool(config: AppConfig, *, queue: InMemoryJobQueue | None = None) -> WorkerPool:
    """Assemble tracer, vendor clients and workers from ``config``."""

    settings = config.settings
    ingestor = StagedIngestor(
        build_sink(settings, session_factory=config.session_factory),
        batch_max=settings.trace_batch_max,
        batch_ms=settings.trace_batch_ms,
        max_inflight=settings.trace_max_inflight,
    )
    tracer = Tracer(ingestor)
    repository = TraceRepository(config.session_factory) if settings.trace_sink == "database" else None
    settler: TraceSettler | None = None
    if repository is not None:
        settler = TraceSettler(repository)
        ingestor.add_listener(settler.on_stage_written)

    job_options = JobOptions(
        attempts=settings.queue_attempts,
        backoff_ms=settings.queue_backoff_ms,
        remove_on_complete=settings.queue_remove_on_complete,
        remove_on_fail=settings.queue_remove_on_fail,
    )
    queue = queue or InMemoryJobQueue(default_options=job_options, max_pending=settings.queue_max_pending)
    clients = create_clients(settings)
    retry_policy = RetryPolicy(
        max_attempts=settings.vendor_retry_attempts,
        base_delay=settings.vendor_retry_base_delay_seconds,
        max_delay=settings.vendor_retry_max_delay_seconds,
        jitter=settings.vendor_retry_jitter,
        budget_seconds=settings.job_retry_budget_seconds,
    )

    engine = MediaPrepEngine(
        MediaInspector(
            ffprobe_binary=settings.ffprobe_binary,
            timeout_seconds=settings.probe_timeout_seconds,
        ),
        MediaTranscoder(
            ffmpeg_binary=settings.ffmpeg_binary,
            timeout_seconds=settings.transcode_timeout_seconds,
        ),
        config.work_root,
    )

    pool = WorkerPool(queue=queue, tracer=tracer, ingestor=ingestor, clients=clients)
    master = MasterWorker(
        tracer=tracer,
        queue=queue,
        projects=config.projects,
        clients=clients,
        downloader=MediaDownloader(config.work_root, timeout_seconds=settings.download_timeout_seconds),
        repository=repository,
        publish_options=job_options,
    )
    pool.bind(QueueName.MASTER.value, master.handle, concurrency=settings.master_concurrency)

    prep = MediaPrepWorker(
        tracer=tracer,
        engine=engine,
        projects=config.projects,
        enforce_constraints=settings.enforce_constraints,
    )
    pool.bind(QueueName.MEDIA_PREP.value, prep.handle, concurrency=settings.media_prep_concurrency)

    for name, client in clients.items():
        worker = PlatformWorker(
            platform=name,
            tracer=tracer,
            queue=queue,
            projects=config.projects,
            client=client,
            retry_policy=retry_policy,
            prep_timeout=settings.prep_wait_timeout_seconds,
            budget_seconds=settings.job_retry_budget_seconds,
            settler=settler,
        )
        pool.bind(worker.queue_name, worker.handle, concurrency=settings.publish_concurrency)
    return pool


__all__ = ["QueueBinding", "WorkerPool", "build_worker_pool"]
