"""SQLAlchemy ORM models for traces, spans and events."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base declarative class."""


class TraceModel(Base):
    __tablename__ = "traces"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="RUNNING")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    input: Mapped[Any] = mapped_column(JSON, nullable=True)
    context: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    tags: Mapped[list[str] | None] = mapped_column(JSON)

    spans: Mapped[list[SpanModel]] = relationship(
        back_populates="trace",
        cascade="all, delete-orphan",
    )
    events: Mapped[list[EventModel]] = relationship(
        back_populates="trace",
        cascade="all, delete-orphan",
    )


class SpanModel(Base):
    __tablename__ = "spans"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    trace_id: Mapped[str] = mapped_column(String(32), ForeignKey("traces.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_span_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("spans.id", ondelete="CASCADE"), index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    platform: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="RUNNING")
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_attempts: Mapped[int | None] = mapped_column(Integer)
    attributes: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    trace: Mapped[TraceModel] = relationship(back_populates="spans")
    parent: Mapped[SpanModel | None] = relationship(remote_side="SpanModel.id", back_populates="children")
    children: Mapped[list[SpanModel]] = relationship(back_populates="parent")
    events: Mapped[list[EventModel]] = relationship(back_populates="span")


class EventModel(Base):
    __tablename__ = "events"
    __table_args__ = (Index("ix_events_trace_ts", "trace_id", "ts", "seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trace_id: Mapped[str] = mapped_column(String(32), ForeignKey("traces.id", ondelete="CASCADE"), nullable=False)
    span_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("spans.id", ondelete="CASCADE"), index=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    level: Mapped[str] = mapped_column(String(8), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    trace: Mapped[TraceModel] = relationship(back_populates="events")
    span: Mapped[SpanModel | None] = relationship(back_populates="events")
