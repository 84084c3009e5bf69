"""Trace and span handles passed explicitly through the pipeline.

``Tracer`` owns the record consumer (normally a :class:`StagedIngestor`) and a
clock. Workers receive the tracer, call :meth:`Tracer.init` or
:meth:`Tracer.from_existing` and pass the resulting :class:`Trace` down the
call chain instead of relying on a process-wide singleton.
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import replace
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, Callable, Iterable, Mapping

from ..domain.models import EventLevel, SpanKind, SpanStatus, TraceStatus
from ..exceptions import error_detail
from .records import (
    RecordConsumer,
    SpanEndRecord,
    SpanEventRecord,
    SpanStartRecord,
    TraceEndRecord,
    TraceEventRecord,
    TraceStartRecord,
)
from .state import SpanState, TraceState, end_span, end_trace

_ID_ALPHABET = string.digits + string.ascii_lowercase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_ID_ALPHABET[remainder])
    return "".join(reversed(digits))


def new_id() -> str:
    """Return a time-sortable identifier (millisecond prefix + random tail)."""

    prefix = _base36(int(time.time() * 1000)).rjust(9, "0")
    tail = "".join(secrets.choice(_ID_ALPHABET) for _ in range(16))
    return f"{prefix}{tail}"


def _error_payload(error: BaseException | Mapping[str, Any] | str | None) -> dict[str, Any] | None:
    if error is None:
        return None
    if isinstance(error, BaseException):
        return error_detail(error)
    if isinstance(error, str):
        return {"message": error}
    return dict(error)


class Tracer:
    """Factory for :class:`Trace` handles bound to one record consumer."""

    def __init__(
        self,
        consumer: RecordConsumer,
        *,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._consumer = consumer
        self._clock = clock or _utcnow
        self._id_factory = id_factory

    @property
    def consumer(self) -> RecordConsumer:
        return self._consumer

    def now(self) -> datetime:
        return self._clock()

    def new_id(self) -> str:
        return self._id_factory()

    def emit(self, record: Any) -> None:
        self._consumer.enqueue(record)

    def init(
        self,
        project_id: str,
        request_id: str,
        *,
        input: Any = None,
        context: Mapping[str, Any] | None = None,
        tags: Iterable[str] = (),
        idempotency_key: str | None = None,
        trace_id: str | None = None,
    ) -> "Trace":
        """Start a new trace and emit its ``trace_start`` record."""

        state = TraceState(
            trace_id=trace_id or self.new_id(),
            project_id=project_id,
            request_id=request_id,
            started_at=self.now(),
            idempotency_key=idempotency_key,
        )
        self.emit(
            TraceStartRecord(
                trace_id=state.trace_id,
                project_id=project_id,
                request_id=request_id,
                started_at=state.started_at,
                input=input,
                context=dict(context) if context else None,
                tags=tuple(tags),
                idempotency_key=idempotency_key,
            )
        )
        return Trace(self, state)

    def from_existing(
        self,
        project_id: str,
        request_id: str,
        trace_id: str,
        *,
        started_at: datetime | str | None = None,
    ) -> "Trace":
        """Resume a trace created elsewhere without emitting a start record."""

        if isinstance(started_at, str):
            started_at = datetime.fromisoformat(started_at)
        state = TraceState(
            trace_id=trace_id,
            project_id=project_id,
            request_id=request_id,
            started_at=started_at or self.now(),
        )
        return Trace(self, state)

    def flush(self) -> bool:
        return self._consumer.flush()


class Trace:
    """One publish request with its span arena."""

    def __init__(self, tracer: Tracer, state: TraceState) -> None:
        self._tracer = tracer
        self._state = state
        self._spans: dict[str, SpanState] = {}
        self._event_seq = 0

    @property
    def trace_id(self) -> str:
        return self._state.trace_id

    @property
    def project_id(self) -> str:
        return self._state.project_id

    @property
    def request_id(self) -> str:
        return self._state.request_id

    @property
    def started_at(self) -> datetime:
        return self._state.started_at

    @property
    def status(self) -> TraceStatus:
        return self._state.status

    @property
    def state(self) -> TraceState:
        return self._state

    @property
    def spans(self) -> Mapping[str, SpanState]:
        return dict(self._spans)

    @property
    def tracer(self) -> Tracer:
        return self._tracer

    def get_span(self, span_id: str) -> SpanState:
        return self._spans[span_id]

    def span(
        self,
        name: str,
        *,
        kind: SpanKind = SpanKind.STEP,
        parent_span_id: str | None = None,
        platform: str | None = None,
        attempt_no: int = 1,
        max_attempts: int | None = None,
        attributes: Mapping[str, Any] | None = None,
        started_at: datetime | None = None,
    ) -> "Span":
        state = SpanState(
            span_id=self._tracer.new_id(),
            trace_id=self.trace_id,
            name=name,
            kind=kind,
            started_at=started_at or self._tracer.now(),
            parent_span_id=parent_span_id,
            platform=platform,
            attempt_no=attempt_no,
            max_attempts=max_attempts,
            attributes=dict(attributes or {}),
        )
        self._spans[state.span_id] = state
        self._tracer.emit(
            SpanStartRecord(
                trace_id=state.trace_id,
                span_id=state.span_id,
                name=name,
                span_kind=kind,
                started_at=state.started_at,
                parent_span_id=parent_span_id,
                platform=platform,
                attempt_no=attempt_no,
                max_attempts=max_attempts,
                attributes=dict(state.attributes),
            )
        )
        return Span(self, state.span_id)

    def event(
        self,
        level: EventLevel | str,
        name: str,
        data: Mapping[str, Any] | None = None,
        *,
        ts: datetime | None = None,
    ) -> None:
        """Record a trace-level event not bound to any span."""

        self._event_seq += 1
        self._tracer.emit(
            TraceEventRecord(
                trace_id=self.trace_id,
                ts=ts or self._tracer.now(),
                level=EventLevel(level),
                name=str(getattr(name, "value", name)),
                seq=self._event_seq,
                data=dict(data) if data else None,
            )
        )

    def end(
        self,
        status: TraceStatus = TraceStatus.SUCCESS,
        *,
        ended_at: datetime | None = None,
        close_children: bool = True,
    ) -> bool:
        """Terminate the trace; returns ``False`` when it had already ended."""

        if not self._state.is_running:
            return False
        ended_at = ended_at or self._tracer.now()
        new_state, closed = end_trace(
            self._state,
            self._spans,
            status,
            ended_at=ended_at,
            close_children=close_children,
        )
        for span_id, span_state in closed.items():
            self._commit_span(span_state)
        self._state = new_state
        self._tracer.emit(
            TraceEndRecord(
                trace_id=self.trace_id,
                project_id=self.project_id,
                request_id=self.request_id,
                status=status,
                started_at=new_state.started_at,
                ended_at=ended_at,
                duration_ms=new_state.duration_ms or 0,
            )
        )
        return True

    # ------------------------------------------------------------------
    # Span bookkeeping
    # ------------------------------------------------------------------
    def _end_span(
        self,
        span_id: str,
        status: SpanStatus,
        *,
        ended_at: datetime | None,
        error: Mapping[str, Any] | None,
        attributes: Mapping[str, Any] | None,
    ) -> bool:
        current = self._spans[span_id]
        if not current.is_running:
            return False
        updated = end_span(
            current,
            status,
            ended_at=ended_at or self._tracer.now(),
            error=error,
            attributes=attributes,
        )
        self._commit_span(updated)
        return True

    def _commit_span(self, state: SpanState) -> None:
        self._spans[state.span_id] = state
        self._tracer.emit(
            SpanEndRecord(
                trace_id=state.trace_id,
                span_id=state.span_id,
                status=state.status,
                ended_at=state.ended_at or self._tracer.now(),
                duration_ms=state.duration_ms or 0,
                error=state.error,
                attributes=dict(state.attributes),
            )
        )

    def _set_attribute(self, span_id: str, key: str, value: Any) -> None:
        current = self._spans[span_id]
        attributes = dict(current.attributes)
        attributes[key] = value
        self._spans[span_id] = replace(current, attributes=attributes)


class Span:
    """Handle to a span stored in its trace's arena."""

    def __init__(self, trace: Trace, span_id: str) -> None:
        self._trace = trace
        self._span_id = span_id
        self._event_seq = 0

    @property
    def span_id(self) -> str:
        return self._span_id

    @property
    def trace(self) -> Trace:
        return self._trace

    @property
    def state(self) -> SpanState:
        return self._trace.get_span(self._span_id)

    @property
    def status(self) -> SpanStatus:
        return self.state.status

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    def set_attribute(self, key: str, value: Any) -> None:
        self._trace._set_attribute(self._span_id, key, value)

    def event(
        self,
        level: EventLevel | str,
        name: str,
        data: Mapping[str, Any] | None = None,
        *,
        ts: datetime | None = None,
    ) -> None:
        self._event_seq += 1
        tracer = self._trace.tracer
        tracer.emit(
            SpanEventRecord(
                trace_id=self._trace.trace_id,
                span_id=self._span_id,
                ts=ts or tracer.now(),
                level=EventLevel(level),
                name=str(getattr(name, "value", name)),
                seq=self._event_seq,
                data=dict(data) if data else None,
            )
        )

    def child(self, name: str, **kwargs: Any) -> "Span":
        """Open a nested span (``STEP`` unless told otherwise)."""

        kwargs.setdefault("platform", self.state.platform)
        return self._trace.span(name, parent_span_id=self._span_id, **kwargs)

    def end(
        self,
        status: SpanStatus = SpanStatus.SUCCESS,
        *,
        error: BaseException | Mapping[str, Any] | str | None = None,
        ended_at: datetime | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> bool:
        """End the span; a second call is a no-op and returns ``False``."""

        return self._trace._end_span(
            self._span_id,
            status,
            ended_at=ended_at,
            error=_error_payload(error),
            attributes=attributes,
        )

    def end_if_running(self, status: SpanStatus, **kwargs: Any) -> bool:
        if not self.is_running:
            return False
        return self.end(status, **kwargs)

    def __enter__(self) -> "Span":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None:
            self.end_if_running(SpanStatus.SUCCESS)
        else:
            self.end_if_running(SpanStatus.FAILED, error=exc)


__all__ = ["Tracer", "Trace", "Span", "new_id"]
