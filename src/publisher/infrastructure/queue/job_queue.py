"""Job queue contract and the in-process asyncio adapter.

Workers depend on the :class:`JobQueue` protocol only: named queues,
at-least-once delivery, bounded retries with exponential back-off and a
bounded history of finished jobs. Failures classified by
:func:`~src.publisher.exceptions.is_unrecoverable` are never redelivered.
:class:`InMemoryJobQueue` implements the
contract inside one event loop for development and tests; it is not
durable.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from ...exceptions import JobTimeoutError, QueueBusyError, QueueError, error_detail, is_unrecoverable

logger = logging.getLogger(__name__)


class QueueName(str, Enum):
    MASTER = "master"
    MEDIA_PREP = "media-prep"


def publish_queue_name(platform: str) -> str:
    """Name of the per-platform publish queue."""

    return f"publish:{platform}"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class JobOptions:
    attempts: int = 3
    backoff_ms: int = 1_000
    backoff_type: str = "exponential"
    remove_on_complete: int = 1_000
    remove_on_fail: int = 1_000

    def backoff_seconds(self, attempts_made: int) -> float:
        if self.backoff_type == "fixed":
            return self.backoff_ms / 1000
        return self.backoff_ms * (2 ** max(0, attempts_made - 1)) / 1000


@dataclass(slots=True)
class QueuedJob:
    id: str
    queue: str
    payload: dict[str, Any]
    options: JobOptions
    attempts_made: int = 0
    status: JobStatus = JobStatus.WAITING
    result: Any = None
    error: dict[str, Any] | None = None
    first_attempt_at: float | None = None
    exception: BaseException | None = field(default=None, repr=False)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.options.attempts


JobHandler = Callable[[QueuedJob], Awaitable[Any]]


class JobQueue(Protocol):
    """Contract the workers rely on."""

    async def enqueue(
        self,
        queue: str,
        payload: Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> QueuedJob: ...

    async def enqueue_many(
        self,
        entries: Iterable[tuple[str, Mapping[str, Any]]],
        options: JobOptions | None = None,
    ) -> list[QueuedJob]: ...

    async def wait_until_finished(self, job_id: str, timeout: float | None = None) -> Any: ...

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        shutdown_event: asyncio.Event | None = None,
    ) -> None: ...


class InMemoryJobQueue:
    """asyncio queue with redelivery on handler failure."""

    def __init__(
        self,
        *,
        default_options: JobOptions | None = None,
        max_pending: int | None = None,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_options = default_options or JobOptions()
        self.max_pending = max_pending
        self.poll_interval = poll_interval
        self._clock = clock
        self._queues: dict[str, asyncio.Queue[QueuedJob]] = {}
        self._jobs: dict[str, QueuedJob] = {}
        self._completed: deque[str] = deque()
        self._failed: deque[str] = deque()
        self._ids = itertools.count(1)
        self._timers: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def _queue(self, name: str) -> asyncio.Queue[QueuedJob]:
        queue = self._queues.get(name)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[name] = queue
        return queue

    def _ensure_capacity(self, name: str, incoming: int) -> None:
        if self.max_pending is None:
            return
        waiting = self.pending_count(name)
        if waiting + incoming > self.max_pending:
            raise QueueBusyError(f"queue '{name}' is full ({waiting} waiting)")

    def _build(self, name: str, payload: Mapping[str, Any], options: JobOptions | None) -> QueuedJob:
        return QueuedJob(
            id=f"{name}:{next(self._ids)}",
            queue=name,
            payload=dict(payload),
            options=options or self.default_options,
        )

    async def enqueue(
        self,
        queue: str,
        payload: Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> QueuedJob:
        self._ensure_capacity(queue, 1)
        job = self._build(queue, payload, options)
        self._jobs[job.id] = job
        self._queue(queue).put_nowait(job)
        logger.debug("queue.job.enqueued", extra={"queue": queue, "job_id": job.id})
        return job

    async def enqueue_many(
        self,
        entries: Iterable[tuple[str, Mapping[str, Any]]],
        options: JobOptions | None = None,
    ) -> list[QueuedJob]:
        """Enqueue every ``(queue, payload)`` entry or none of them."""

        items = list(entries)
        incoming = Counter(name for name, _ in items)
        for name, count in incoming.items():
            self._ensure_capacity(name, count)
        jobs = [self._build(name, payload, options) for name, payload in items]
        for job in jobs:
            self._jobs[job.id] = job
            self._queue(job.queue).put_nowait(job)
        logger.debug("queue.job.enqueued_many", extra={"queues": dict(incoming), "count": len(jobs)})
        return jobs

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def get_job(self, job_id: str) -> QueuedJob | None:
        return self._jobs.get(job_id)

    def jobs(self, queue: str | None = None) -> list[QueuedJob]:
        return [job for job in self._jobs.values() if queue is None or job.queue == queue]

    def pending_count(self, queue: str) -> int:
        return sum(
            1
            for job in self._jobs.values()
            if job.queue == queue and job.status in (JobStatus.WAITING, JobStatus.DELAYED)
        )

    async def wait_until_finished(self, job_id: str, timeout: float | None = None) -> Any:
        """Return the job result or re-raise its final failure."""

        job = self._jobs.get(job_id)
        if job is None:
            raise QueueError(f"job '{job_id}' is unknown or was removed")
        try:
            await asyncio.wait_for(job.done.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise JobTimeoutError(f"job '{job_id}' did not finish within {timeout}s") from exc
        if job.status is JobStatus.FAILED:
            if job.exception is not None:
                raise job.exception
            raise QueueError(f"job '{job_id}' failed: {(job.error or {}).get('message')}")
        return job.result

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Process ``queue`` with ``concurrency`` slots until shutdown."""

        stop = shutdown_event or asyncio.Event()
        slots = [
            asyncio.create_task(self._slot(queue, handler, stop), name=f"{queue}-{index}")
            for index in range(max(1, concurrency))
        ]
        try:
            await asyncio.gather(*slots)
        finally:
            for slot in slots:
                slot.cancel()

    async def _slot(self, name: str, handler: JobHandler, stop: asyncio.Event) -> None:
        source = self._queue(name)
        while not stop.is_set():
            try:
                job = await asyncio.wait_for(source.get(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
            await self.process(job, handler)

    async def process(self, job: QueuedJob, handler: JobHandler) -> None:
        """Run ``handler`` for one delivery of ``job``."""

        job.attempts_made += 1
        if job.first_attempt_at is None:
            job.first_attempt_at = self._clock()
        job.status = JobStatus.ACTIVE
        try:
            result = await handler(job)
        except asyncio.CancelledError:
            job.status = JobStatus.WAITING
            self._queue(job.queue).put_nowait(job)
            raise
        except Exception as exc:
            job.error = error_detail(exc)
            unrecoverable = is_unrecoverable(exc)
            if not job.is_final_attempt and not unrecoverable:
                delay = job.options.backoff_seconds(job.attempts_made)
                job.status = JobStatus.DELAYED
                logger.warning(
                    "queue.job.retry",
                    extra={"job_id": job.id, "attempt": job.attempts_made, "delay": delay, "error": str(exc)},
                )
                self._schedule(job, delay)
                return
            job.status = JobStatus.FAILED
            job.exception = exc
            logger.error(
                "queue.job.failed",
                extra={
                    "job_id": job.id,
                    "attempts": job.attempts_made,
                    "unrecoverable": unrecoverable,
                    "error": str(exc),
                },
            )
            self._finish(job, self._failed, job.options.remove_on_fail)
            return

        job.status = JobStatus.COMPLETED
        job.result = result
        logger.debug("queue.job.completed", extra={"job_id": job.id, "attempts": job.attempts_made})
        self._finish(job, self._completed, job.options.remove_on_complete)

    def _schedule(self, job: QueuedJob, delay: float) -> None:
        async def _later() -> None:
            await asyncio.sleep(delay)
            job.status = JobStatus.WAITING
            self._queue(job.queue).put_nowait(job)

        task = asyncio.create_task(_later())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    def _finish(self, job: QueuedJob, history: deque[str], keep: int) -> None:
        job.done.set()
        history.append(job.id)
        while len(history) > keep:
            expired = history.popleft()
            self._jobs.pop(expired, None)

    async def aclose(self) -> None:
        for task in list(self._timers):
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)


__all__ = [
    "InMemoryJobQueue",
    "JobHandler",
    "JobOptions",
    "JobQueue",
    "JobStatus",
    "QueueName",
    "QueuedJob",
    "publish_queue_name",
]
