"""Batched, stage-ordered persistence of trace records.

Records are routed to persistence stages that form an explicit dependency
graph::

    trace -> root_span -> child_span -> span_end -> event

Flushing a stage first flushes every stage it depends on, in topological
order, so a span is never written before its trace and a child span never
before its parent. Each flush pass only writes records enqueued before the
pass started (the *horizon*); a parent is always enqueued before its
children, therefore it is always inside the horizon of any pass that writes
the child.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from graphlib import TopologicalSorter
from typing import Any, Callable, Deque, Iterable, Mapping, Protocol, Sequence

from ..exceptions import IngestionError
from .records import (
    SpanEndRecord,
    SpanEventRecord,
    SpanStartRecord,
    TraceEndRecord,
    TraceEventRecord,
    TraceRecord,
    TraceStartRecord,
)

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    TRACE = "trace"
    ROOT_SPAN = "root_span"
    CHILD_SPAN = "child_span"
    SPAN_END = "span_end"
    EVENT = "event"


STAGE_DEPENDENCIES: Mapping[Stage, tuple[Stage, ...]] = {
    Stage.TRACE: (),
    Stage.ROOT_SPAN: (Stage.TRACE,),
    Stage.CHILD_SPAN: (Stage.TRACE, Stage.ROOT_SPAN),
    Stage.SPAN_END: (Stage.ROOT_SPAN, Stage.CHILD_SPAN),
    Stage.EVENT: (Stage.TRACE, Stage.ROOT_SPAN, Stage.CHILD_SPAN, Stage.SPAN_END),
}


def topological_order(graph: Mapping[Stage, Iterable[Stage]] = STAGE_DEPENDENCIES) -> list[Stage]:
    """Return stages so that every stage follows all of its dependencies."""

    return list(TopologicalSorter({stage: tuple(deps) for stage, deps in graph.items()}).static_order())


def dependency_closure(
    stage: Stage,
    graph: Mapping[Stage, Iterable[Stage]] = STAGE_DEPENDENCIES,
) -> list[Stage]:
    """Return ``stage`` and its transitive dependencies in flush order."""

    needed: set[Stage] = set()
    pending = [stage]
    while pending:
        current = pending.pop()
        if current in needed:
            continue
        needed.add(current)
        pending.extend(graph.get(current, ()))
    return [item for item in topological_order(graph) if item in needed]


def stage_for(record: TraceRecord) -> Stage:
    """Map a record to the persistence stage that writes it."""

    if isinstance(record, (TraceStartRecord, TraceEndRecord)):
        return Stage.TRACE
    if isinstance(record, SpanStartRecord):
        return Stage.ROOT_SPAN if record.parent_span_id is None else Stage.CHILD_SPAN
    if isinstance(record, SpanEndRecord):
        return Stage.SPAN_END
    if isinstance(record, (SpanEventRecord, TraceEventRecord)):
        return Stage.EVENT
    raise TypeError(f"Unsupported trace record: {type(record).__name__}")


class StageSink(Protocol):
    """Destination of stage batches (database, HTTP endpoint, log)."""

    def write(self, stage: Stage, batch: Sequence[TraceRecord]) -> None:
        ...


class Timer(Protocol):
    def start(self) -> None:
        ...

    def cancel(self) -> None:
        ...


TimerFactory = Callable[[float, Callable[[], None]], Timer]
StageListener = Callable[[Stage, Sequence[TraceRecord]], None]


def _thread_timer(delay: float, callback: Callable[[], None]) -> Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


@dataclass(slots=True)
class _Pending:
    seq: int
    record: TraceRecord


class StagedIngestor:
    """Thread-safe batching front of a :class:`StageSink`."""

    def __init__(
        self,
        sink: StageSink,
        *,
        batch_max: int = 100,
        batch_ms: int = 1_000,
        max_inflight: int = 3,
        defer_ms: int = 100,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self._sink = sink
        self._batch_max = max(1, batch_max)
        self._batch_delay = max(0.0, batch_ms / 1000)
        self._defer_delay = max(0.0, defer_ms / 1000)
        self._timer_factory = timer_factory or _thread_timer
        self._order = topological_order()
        self._queues: dict[Stage, Deque[_Pending]] = {stage: deque() for stage in self._order}
        self._stage_locks: dict[Stage, threading.Lock] = {stage: threading.Lock() for stage in self._order}
        self._state_lock = threading.Lock()
        self._inflight = threading.BoundedSemaphore(max(1, max_inflight))
        self._seq = 0
        self._timer: Timer | None = None
        self._closed = False
        self._listeners: list[StageListener] = []
        self.last_error: BaseException | None = None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def enqueue(self, record: TraceRecord) -> None:
        """Queue ``record``; never blocks on the sink."""

        stage = stage_for(record)
        with self._state_lock:
            if self._closed:
                raise IngestionError("ingestor is closed")
            self._seq += 1
            self._queues[stage].append(_Pending(self._seq, record))
            size = self._pending_locked()
        if size >= self._batch_max:
            self._arm(0.0, replace_existing=True)
        else:
            self._arm(self._batch_delay)

    def add_listener(self, listener: StageListener) -> None:
        """Call ``listener(stage, records)`` after every batch the sink accepted."""

        self._listeners.append(listener)

    def pending(self) -> dict[Stage, int]:
        with self._state_lock:
            return {stage: len(queue) for stage, queue in self._queues.items()}

    def pending_total(self) -> int:
        with self._state_lock:
            return self._pending_locked()

    def _pending_locked(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    # ------------------------------------------------------------------
    # Timer management
    # ------------------------------------------------------------------
    def _arm(self, delay: float, *, replace_existing: bool = False) -> None:
        with self._state_lock:
            if self._timer is not None:
                if not replace_existing:
                    return
                self._timer.cancel()
            timer = self._timer_factory(delay, self._on_timer)
            self._timer = timer
        timer.start()

    def _disarm(self) -> None:
        with self._state_lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _on_timer(self) -> None:
        with self._state_lock:
            self._timer = None
        self.flush()

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------
    def flush(self, stage: Stage | None = None) -> bool:
        """Write pending records of ``stage`` (default: all stages).

        Returns ``True`` when every targeted stage was drained up to the
        pass horizon, ``False`` when the pass was deferred or a batch failed.
        """

        self._disarm()
        with self._state_lock:
            horizon = self._seq
        stages = dependency_closure(stage) if stage is not None else list(self._order)

        completed = True
        written: list[tuple[Stage, list[TraceRecord]]] = []
        for current in stages:
            outcome = self._drain(current, horizon, written)
            if outcome is not True:
                completed = False
                break
        self._notify(written)

        remaining = self.pending_total()
        if remaining:
            delay = self._batch_delay if completed else self._defer_delay
            if remaining >= self._batch_max and completed:
                delay = 0.0
            if not self._closed:
                self._arm(delay)
        return completed

    def _drain(self, stage: Stage, horizon: int, written: list[tuple[Stage, list[TraceRecord]]]) -> bool:
        lock = self._stage_locks[stage]
        with lock:
            while True:
                batch = self._take(stage, horizon)
                if not batch:
                    return True
                if not self._inflight.acquire(blocking=False):
                    self._requeue(stage, batch)
                    logger.debug(
                        "ingestor.flush.deferred",
                        extra={"stage": stage.value, "records": len(batch)},
                    )
                    return False
                records = [item.record for item in batch]
                try:
                    self._sink.write(stage, records)
                except Exception as exc:
                    self._requeue(stage, batch)
                    self.last_error = exc
                    logger.warning(
                        "ingestor.flush.error stage=%s records=%s error=%s",
                        stage.value,
                        len(batch),
                        exc,
                        extra={"stage": stage.value, "records": len(batch)},
                    )
                    return False
                finally:
                    self._inflight.release()
                written.append((stage, records))
                logger.debug(
                    "ingestor.flush.written",
                    extra={"stage": stage.value, "records": len(batch)},
                )

    def _notify(self, written: list[tuple[Stage, list[TraceRecord]]]) -> None:
        # runs outside the stage locks; listeners may query the store
        for stage, records in written:
            for listener in list(self._listeners):
                try:
                    listener(stage, records)
                except Exception:
                    logger.exception("ingestor.listener.failed", extra={"stage": stage.value})

    def _take(self, stage: Stage, horizon: int) -> list[_Pending]:
        with self._state_lock:
            queue = self._queues[stage]
            batch: list[_Pending] = []
            while queue and len(batch) < self._batch_max and queue[0].seq <= horizon:
                batch.append(queue.popleft())
            return batch

    def _requeue(self, stage: Stage, batch: list[_Pending]) -> None:
        with self._state_lock:
            self._queues[stage].extendleft(reversed(batch))

    def close(self) -> None:
        """Flush everything and stop the timer.

        Raises :class:`IngestionError` when records could not be written.
        """

        self._disarm()
        self.flush()
        with self._state_lock:
            self._closed = True
            remaining = self._pending_locked()
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        if remaining:
            raise IngestionError(
                f"{remaining} trace records were not persisted"
            ) from self.last_error


def records_as_dicts(batch: Iterable[TraceRecord]) -> list[dict[str, Any]]:
    return [record.to_dict() for record in batch]


__all__ = [
    "Stage",
    "STAGE_DEPENDENCIES",
    "StageListener",
    "StageSink",
    "StagedIngestor",
    "dependency_closure",
    "records_as_dicts",
    "stage_for",
    "topological_order",
]
