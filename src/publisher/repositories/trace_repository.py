"""Persistence of trace, span and event records."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.db_models import EventModel, SpanModel, TraceModel
from ..domain.models import SpanKind, SpanStatus, TraceStatus
from ..exceptions import NotFoundError, handle_sqlalchemy_errors
from ..tracing.ingestor import Stage
from ..tracing.records import (
    SpanEndRecord,
    SpanEventRecord,
    SpanStartRecord,
    TraceEndRecord,
    TraceEventRecord,
    TraceRecord,
    TraceStartRecord,
)
from ..tracing.state import (
    SpanState,
    child_status_for,
    duration_ms,
    latest_attempts,
    rollup_status,
)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class TraceView:
    """Snapshot of a stored trace."""

    id: str
    project_id: str
    request_id: str
    idempotency_key: str | None
    status: TraceStatus
    started_at: datetime
    ended_at: datetime | None
    duration_ms: int | None
    input: Any


@dataclass(slots=True)
class EventView:
    trace_id: str
    span_id: str | None
    ts: datetime
    level: str
    name: str
    seq: int
    data: dict[str, Any] | None


def _span_state(model: SpanModel) -> SpanState:
    return SpanState(
        span_id=model.id,
        trace_id=model.trace_id,
        name=model.name,
        kind=SpanKind(model.kind),
        started_at=_utc(model.started_at),  # type: ignore[arg-type]
        parent_span_id=model.parent_span_id,
        platform=model.platform,
        attempt_no=model.attempt_no,
        max_attempts=model.max_attempts,
        attributes=dict(model.attributes or {}),
        status=SpanStatus(model.status),
        ended_at=_utc(model.ended_at),
        duration_ms=model.duration_ms,
        error=model.error,
    )


def _trace_view(model: TraceModel) -> TraceView:
    return TraceView(
        id=model.id,
        project_id=model.project_id,
        request_id=model.request_id,
        idempotency_key=model.idempotency_key,
        status=TraceStatus(model.status),
        started_at=_utc(model.started_at),  # type: ignore[arg-type]
        ended_at=_utc(model.ended_at),
        duration_ms=model.duration_ms,
        input=model.input,
    )


class TraceRepository:
    """Manage traces, spans and events in the relational store."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Stage writers (one transaction per batch)
    # ------------------------------------------------------------------
    def write_stage(self, stage: Stage, batch: Sequence[TraceRecord]) -> None:
        writers = {
            Stage.TRACE: self._upsert_traces,
            Stage.ROOT_SPAN: self._insert_spans,
            Stage.CHILD_SPAN: self._insert_spans,
            Stage.SPAN_END: self._apply_span_ends,
            Stage.EVENT: self._insert_events,
        }
        writer = writers[stage]
        with handle_sqlalchemy_errors(entity=stage.value):
            with self._session_factory() as session:
                writer(session, batch)
                session.commit()

    def upsert_traces(self, records: Sequence[TraceRecord]) -> None:
        self.write_stage(Stage.TRACE, records)

    def insert_spans(self, records: Sequence[TraceRecord]) -> None:
        self.write_stage(Stage.CHILD_SPAN, records)

    def apply_span_ends(self, records: Sequence[TraceRecord]) -> None:
        self.write_stage(Stage.SPAN_END, records)

    def insert_events(self, records: Sequence[TraceRecord]) -> None:
        self.write_stage(Stage.EVENT, records)

    @staticmethod
    def _upsert_traces(session: Session, records: Sequence[TraceRecord]) -> None:
        for record in records:
            if isinstance(record, TraceStartRecord):
                model = session.get(TraceModel, record.trace_id)
                if model is None:
                    model = TraceModel(
                        id=record.trace_id,
                        project_id=record.project_id,
                        request_id=record.request_id,
                        status=TraceStatus.RUNNING.value,
                        started_at=record.started_at,
                    )
                    session.add(model)
                model.idempotency_key = record.idempotency_key
                model.input = record.input
                model.context = dict(record.context) if record.context else None
                model.tags = list(record.tags)
            elif isinstance(record, TraceEndRecord):
                model = session.get(TraceModel, record.trace_id)
                if model is None:
                    model = TraceModel(
                        id=record.trace_id,
                        project_id=record.project_id,
                        request_id=record.request_id,
                        started_at=record.started_at,
                    )
                    session.add(model)
                elif model.status != TraceStatus.RUNNING.value:
                    continue
                model.status = record.status.value
                model.ended_at = record.ended_at
                model.duration_ms = record.duration_ms
            else:
                raise TypeError(f"{type(record).__name__} is not a trace record")
            session.flush()

    @staticmethod
    def _insert_spans(session: Session, records: Sequence[TraceRecord]) -> None:
        for record in records:
            if not isinstance(record, SpanStartRecord):
                raise TypeError(f"{type(record).__name__} is not a span start record")
            if session.get(SpanModel, record.span_id) is not None:
                continue
            session.add(
                SpanModel(
                    id=record.span_id,
                    trace_id=record.trace_id,
                    parent_span_id=record.parent_span_id,
                    kind=record.span_kind.value,
                    name=record.name,
                    platform=record.platform,
                    status=SpanStatus.RUNNING.value,
                    attempt_no=record.attempt_no,
                    max_attempts=record.max_attempts,
                    attributes=dict(record.attributes),
                    started_at=record.started_at,
                )
            )
            session.flush()

    @staticmethod
    def _apply_span_ends(session: Session, records: Sequence[TraceRecord]) -> None:
        for record in records:
            if not isinstance(record, SpanEndRecord):
                raise TypeError(f"{type(record).__name__} is not a span end record")
            model = session.get(SpanModel, record.span_id)
            if model is None:
                raise NotFoundError(f"span '{record.span_id}' not found")
            if model.status != SpanStatus.RUNNING.value:
                continue
            model.status = record.status.value
            model.ended_at = record.ended_at
            model.duration_ms = record.duration_ms
            model.error = dict(record.error) if record.error else None
            model.attributes = dict(record.attributes)

    @staticmethod
    def _insert_events(session: Session, records: Sequence[TraceRecord]) -> None:
        for record in records:
            if isinstance(record, SpanEventRecord):
                span_id: str | None = record.span_id
            elif isinstance(record, TraceEventRecord):
                span_id = None
            else:
                raise TypeError(f"{type(record).__name__} is not an event record")
            session.add(
                EventModel(
                    trace_id=record.trace_id,
                    span_id=span_id,
                    ts=record.ts,
                    level=record.level.value,
                    name=record.name,
                    seq=record.seq,
                    data=dict(record.data) if record.data else None,
                )
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_trace(self, trace_id: str) -> TraceView | None:
        with self._session_factory() as session:
            model = session.get(TraceModel, trace_id)
            return _trace_view(model) if model is not None else None

    def find_by_idempotency_key(self, idempotency_key: str) -> TraceView | None:
        with self._session_factory() as session:
            model = session.scalars(
                select(TraceModel).where(TraceModel.idempotency_key == idempotency_key)
            ).first()
            return _trace_view(model) if model is not None else None

    def list_spans(self, trace_id: str) -> list[SpanState]:
        with self._session_factory() as session:
            models = session.scalars(
                select(SpanModel)
                .where(SpanModel.trace_id == trace_id)
                .order_by(SpanModel.started_at, SpanModel.id)
            ).all()
            return [_span_state(model) for model in models]

    def list_events(self, trace_id: str, *, span_id: str | None = None) -> list[EventView]:
        with self._session_factory() as session:
            query = select(EventModel).where(EventModel.trace_id == trace_id)
            if span_id is not None:
                query = query.where(EventModel.span_id == span_id)
            models = session.scalars(query.order_by(EventModel.ts, EventModel.seq, EventModel.id)).all()
            return [
                EventView(
                    trace_id=model.trace_id,
                    span_id=model.span_id,
                    ts=_utc(model.ts),  # type: ignore[arg-type]
                    level=model.level,
                    name=model.name,
                    seq=model.seq,
                    data=model.data,
                )
                for model in models
            ]

    # ------------------------------------------------------------------
    # Roll-up
    # ------------------------------------------------------------------
    def reopen_trace(self, trace_id: str) -> bool:
        """Put an ended trace back to ``RUNNING`` so a new master run can settle it.

        Returns ``False`` when the trace is already running.
        """

        with handle_sqlalchemy_errors(entity="trace"):
            with self._session_factory() as session:
                trace = session.get(TraceModel, trace_id)
                if trace is None:
                    raise NotFoundError(f"trace '{trace_id}' not found")
                if trace.status == TraceStatus.RUNNING.value:
                    return False
                trace.status = TraceStatus.RUNNING.value
                trace.ended_at = None
                trace.duration_ms = None
                session.commit()
                return True

    def settle_trace(self, trace_id: str, *, now: datetime | None = None) -> TraceStatus | None:
        """Close the trace once every fanned-out platform reached a terminal state.

        The expected platforms are read from the ``platforms`` attribute of the
        successful master span. Returns the new trace status, or ``None`` when
        the trace is unknown, already ended or still has running platforms.
        """

        with handle_sqlalchemy_errors(entity="trace"):
            with self._session_factory() as session:
                trace = session.get(TraceModel, trace_id)
                if trace is None or trace.status != TraceStatus.RUNNING.value:
                    return None
                models = session.scalars(select(SpanModel).where(SpanModel.trace_id == trace_id)).all()
                spans = [_span_state(model) for model in models]

                masters = [span for span in spans if span.kind is SpanKind.MASTER]
                if not masters:
                    return None
                master = max(masters, key=lambda span: span.started_at)
                if master.status is not SpanStatus.SUCCESS:
                    return None
                expected = [str(name) for name in master.attributes.get("platforms", [])]
                if not expected:
                    return None

                latest = latest_attempts(spans)
                finished: list[SpanState] = []
                for platform in expected:
                    span = latest.get(platform)
                    if span is None or span.is_running:
                        return None
                    finished.append(span)

                status = rollup_status(span.status for span in finished)
                ended_candidates = [span.ended_at for span in finished if span.ended_at is not None]
                ended_at = max(ended_candidates) if ended_candidates else (now or datetime.now(timezone.utc))

                straggler_status = child_status_for(status)
                for model in models:
                    if model.status == SpanStatus.RUNNING.value:
                        model.status = straggler_status.value
                        model.ended_at = ended_at
                        model.duration_ms = duration_ms(_utc(model.started_at), ended_at)  # type: ignore[arg-type]

                trace.status = status.value
                trace.ended_at = ended_at
                trace.duration_ms = duration_ms(_utc(trace.started_at), ended_at)  # type: ignore[arg-type]
                session.commit()
                return status


__all__ = ["TraceRepository", "TraceView", "EventView"]
