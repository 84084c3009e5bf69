"""Deferred trace roll-up.

A platform worker asks for settlement right after ending its span, but the
span end may still sit in the ingestor (deferred flush, store unreachable).
Requests therefore wait until the awaited span end is stored; every
``span_end`` batch the ingestor writes re-checks the traces it touched.
"""

from __future__ import annotations

import logging
import threading
from typing import Sequence

from ..domain.models import TraceStatus
from ..tracing.ingestor import Stage
from ..tracing.records import SpanEndRecord, TraceRecord
from .trace_repository import TraceRepository

logger = logging.getLogger(__name__)


class TraceSettler:
    """Run :meth:`TraceRepository.settle_trace` once awaited span ends are stored."""

    def __init__(self, repository: TraceRepository) -> None:
        self._repository = repository
        self._awaiting: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def request(self, trace_id: str, span_id: str) -> TraceStatus | None:
        """Settle ``trace_id`` now, or as soon as the end of ``span_id`` is stored."""

        with self._lock:
            self._awaiting.setdefault(trace_id, set()).add(span_id)
        return self._attempt(trace_id)

    def on_stage_written(self, stage: Stage, records: Sequence[TraceRecord]) -> None:
        """Ingestor listener."""

        if stage is not Stage.SPAN_END:
            return
        with self._lock:
            touched = {
                record.trace_id
                for record in records
                if isinstance(record, SpanEndRecord) and record.trace_id in self._awaiting
            }
        for trace_id in sorted(touched):
            self._attempt(trace_id)

    def awaiting(self) -> dict[str, set[str]]:
        with self._lock:
            return {trace_id: set(spans) for trace_id, spans in self._awaiting.items()}

    def _attempt(self, trace_id: str) -> TraceStatus | None:
        stored = {span.span_id: span for span in self._repository.list_spans(trace_id)}
        with self._lock:
            waiting = self._awaiting.get(trace_id)
            if not waiting:
                return None
            if any(span_id not in stored or stored[span_id].is_running for span_id in waiting):
                logger.debug(
                    "trace.settle.waiting",
                    extra={"trace_id": trace_id, "spans": sorted(waiting)},
                )
                return None
            del self._awaiting[trace_id]

        status = self._repository.settle_trace(trace_id)
        if status is not None:
            logger.info("trace.settled", extra={"trace_id": trace_id, "status": status.value})
        return status


__all__ = ["TraceSettler"]
