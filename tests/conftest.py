from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.publisher.db.db_init import build_engine, init_db
from src.publisher.repositories.trace_repository import TraceRepository
from src.publisher.tracing import StagedIngestor, Tracer
from src.publisher.tracing.sinks import RepositorySink

from tests.mocks.tracing import ManualTimerFactory, RecordingSink, StepClock


@pytest.fixture
def session_factory():
    engine = build_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def trace_repository(session_factory) -> TraceRepository:
    return TraceRepository(session_factory)


@pytest.fixture
def timers() -> ManualTimerFactory:
    return ManualTimerFactory()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def db_tracer(trace_repository, timers, clock):
    """Tracer writing into sqlite through a manually flushed ingestor."""

    ingestor = StagedIngestor(RepositorySink(trace_repository), batch_max=500, timer_factory=timers)
    return Tracer(ingestor, clock=clock)
