"""Records emitted by traces and spans towards the ingestor."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Mapping, Protocol, Union

from ..domain.models import EventLevel, SpanKind, SpanStatus, TraceStatus


class RecordKind(str, Enum):
    TRACE_START = "trace_start"
    TRACE_END = "trace_end"
    SPAN_START = "span_start"
    SPAN_END = "span_end"
    SPAN_EVENT = "span_event"
    TRACE_EVENT = "trace_event"


def _serialise(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): _serialise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialise(item) for item in value]
    return value


class _RecordMixin:
    kind: ClassVar[RecordKind]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"_t": self.kind.value}
        for item in fields(self):  # type: ignore[arg-type]
            payload[item.name] = _serialise(getattr(self, item.name))
        return payload


@dataclass(frozen=True, slots=True)
class TraceStartRecord(_RecordMixin):
    kind: ClassVar[RecordKind] = RecordKind.TRACE_START

    trace_id: str
    project_id: str
    request_id: str
    started_at: datetime
    input: Any = None
    context: Mapping[str, Any] | None = None
    tags: tuple[str, ...] = ()
    idempotency_key: str | None = None


@dataclass(frozen=True, slots=True)
class TraceEndRecord(_RecordMixin):
    kind: ClassVar[RecordKind] = RecordKind.TRACE_END

    trace_id: str
    project_id: str
    request_id: str
    status: TraceStatus
    started_at: datetime
    ended_at: datetime
    duration_ms: int


@dataclass(frozen=True, slots=True)
class SpanStartRecord(_RecordMixin):
    kind: ClassVar[RecordKind] = RecordKind.SPAN_START

    trace_id: str
    span_id: str
    name: str
    span_kind: SpanKind
    started_at: datetime
    parent_span_id: str | None = None
    platform: str | None = None
    attempt_no: int = 1
    max_attempts: int | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SpanEndRecord(_RecordMixin):
    kind: ClassVar[RecordKind] = RecordKind.SPAN_END

    trace_id: str
    span_id: str
    status: SpanStatus
    ended_at: datetime
    duration_ms: int
    error: Mapping[str, Any] | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SpanEventRecord(_RecordMixin):
    kind: ClassVar[RecordKind] = RecordKind.SPAN_EVENT

    trace_id: str
    span_id: str
    ts: datetime
    level: EventLevel
    name: str
    seq: int
    data: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class TraceEventRecord(_RecordMixin):
    kind: ClassVar[RecordKind] = RecordKind.TRACE_EVENT

    trace_id: str
    ts: datetime
    level: EventLevel
    name: str
    seq: int
    data: Mapping[str, Any] | None = None


TraceRecord = Union[
    TraceStartRecord,
    TraceEndRecord,
    SpanStartRecord,
    SpanEndRecord,
    SpanEventRecord,
    TraceEventRecord,
]


class RecordConsumer(Protocol):
    """Anything able to accept records emitted by a trace."""

    def enqueue(self, record: TraceRecord) -> None:
        ...

    def flush(self) -> bool:
        ...


__all__ = [
    "RecordKind",
    "RecordConsumer",
    "TraceRecord",
    "TraceStartRecord",
    "TraceEndRecord",
    "SpanStartRecord",
    "SpanEndRecord",
    "SpanEventRecord",
    "TraceEventRecord",
]
