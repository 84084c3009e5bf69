"""Immutable trace/span state values and their transition functions.

A :class:`Trace` keeps its spans in an arena (``dict`` keyed by span id) of
:class:`SpanState` values. Every status change produces a new value through
one of the functions below, which keeps the state machine testable without
an ingestor or a clock.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Mapping

from ..domain.models import SpanKind, SpanStatus, TraceStatus


@dataclass(frozen=True, slots=True)
class SpanState:
    span_id: str
    trace_id: str
    name: str
    kind: SpanKind
    started_at: datetime
    parent_span_id: str | None = None
    platform: str | None = None
    attempt_no: int = 1
    max_attempts: int | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    status: SpanStatus = SpanStatus.RUNNING
    ended_at: datetime | None = None
    duration_ms: int | None = None
    error: Mapping[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self.status is SpanStatus.RUNNING


@dataclass(frozen=True, slots=True)
class TraceState:
    trace_id: str
    project_id: str
    request_id: str
    started_at: datetime
    status: TraceStatus = TraceStatus.RUNNING
    ended_at: datetime | None = None
    duration_ms: int | None = None
    idempotency_key: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status is TraceStatus.RUNNING


def duration_ms(started_at: datetime, ended_at: datetime) -> int:
    """Return the non-negative span between two timestamps in milliseconds."""

    return max(0, int((ended_at - started_at).total_seconds() * 1000))


def child_status_for(trace_status: TraceStatus) -> SpanStatus:
    """Status given to spans still running when their trace ends."""

    if trace_status is TraceStatus.TIMEOUT:
        return SpanStatus.TIMEOUT
    if trace_status is TraceStatus.CANCELLED:
        return SpanStatus.CANCELLED
    return SpanStatus.CANCELLED


def end_span(
    state: SpanState,
    status: SpanStatus,
    *,
    ended_at: datetime,
    error: Mapping[str, Any] | None = None,
    attributes: Mapping[str, Any] | None = None,
) -> SpanState:
    """Move ``state`` into a terminal ``status``.

    Terminal states are final: ending an already ended span returns it
    unchanged.
    """

    if status is SpanStatus.RUNNING:
        raise ValueError("RUNNING is not a terminal span status")
    if not state.is_running:
        return state
    merged = dict(state.attributes)
    if attributes:
        merged.update(attributes)
    return replace(
        state,
        status=status,
        ended_at=ended_at,
        duration_ms=duration_ms(state.started_at, ended_at),
        error=dict(error) if error else None,
        attributes=merged,
    )


def end_trace(
    trace: TraceState,
    spans: Mapping[str, SpanState],
    status: TraceStatus,
    *,
    ended_at: datetime,
    close_children: bool = True,
) -> tuple[TraceState, dict[str, SpanState]]:
    """End ``trace`` and force-end its running spans with the same timestamp.

    Returns the new trace value and the spans whose state changed. When the
    trace is not running nothing changes.
    """

    if status is TraceStatus.RUNNING:
        raise ValueError("RUNNING is not a terminal trace status")
    if not trace.is_running:
        return trace, {}

    closed: dict[str, SpanState] = {}
    if close_children:
        child_status = child_status_for(status)
        for span_id, span in spans.items():
            if span.is_running:
                closed[span_id] = end_span(span, child_status, ended_at=ended_at)

    ended = replace(
        trace,
        status=status,
        ended_at=ended_at,
        duration_ms=duration_ms(trace.started_at, ended_at),
    )
    return ended, closed


def rollup_status(statuses: Iterable[SpanStatus]) -> TraceStatus:
    """Combine terminal platform span statuses into a trace status."""

    collected = list(statuses)
    if not collected:
        return TraceStatus.FAILED
    if any(status is SpanStatus.TIMEOUT for status in collected) and not any(
        status is SpanStatus.SUCCESS for status in collected
    ):
        return TraceStatus.TIMEOUT
    succeeded = sum(1 for status in collected if status in (SpanStatus.SUCCESS, SpanStatus.SKIPPED))
    if succeeded == len(collected):
        return TraceStatus.SUCCESS
    if succeeded == 0:
        return TraceStatus.FAILED
    return TraceStatus.PARTIAL


def latest_attempts(spans: Iterable[SpanState], *, kind: SpanKind = SpanKind.PLATFORM) -> dict[str, SpanState]:
    """Return the most recent span of ``kind`` per platform."""

    latest: dict[str, SpanState] = {}
    for span in spans:
        if span.kind is not kind or span.platform is None:
            continue
        current = latest.get(span.platform)
        if current is None or span.started_at >= current.started_at:
            latest[span.platform] = span
    return latest


__all__ = [
    "SpanState",
    "TraceState",
    "child_status_for",
    "duration_ms",
    "end_span",
    "end_trace",
    "latest_attempts",
    "rollup_status",
]
