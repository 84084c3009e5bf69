from __future__ import annotations

import pytest

from src.publisher.domain.models import SpanKind, SpanStatus, TraceStatus
from src.publisher.repositories.settlement import TraceSettler
from src.publisher.repositories.trace_repository import TraceRepository
from src.publisher.tracing import Stage, StagedIngestor, Tracer
from src.publisher.tracing.sinks import RepositorySink
from src.publisher.workers import MASTER_SPAN_NAME

from tests.mocks.tracing import FlakySink, ManualTimerFactory, StepClock


@pytest.fixture
def flaky_sink(trace_repository: TraceRepository) -> FlakySink:
    return FlakySink(RepositorySink(trace_repository), stage=Stage.SPAN_END)


@pytest.fixture
def settler(trace_repository: TraceRepository) -> TraceSettler:
    return TraceSettler(trace_repository)


@pytest.fixture
def tracer(flaky_sink: FlakySink, settler: TraceSettler, timers: ManualTimerFactory, clock: StepClock) -> Tracer:
    ingestor = StagedIngestor(flaky_sink, batch_max=500, timer_factory=timers)
    ingestor.add_listener(settler.on_stage_written)
    return Tracer(ingestor, clock=clock)


def _fanned_out(tracer: Tracer, platforms: list[str]):
    trace = tracer.init("proj-1", "req-1")
    master = trace.span(MASTER_SPAN_NAME, kind=SpanKind.MASTER)
    master.end(SpanStatus.SUCCESS, attributes={"platforms": platforms})
    assert tracer.flush() is True
    return trace


def _attempt(tracer: Tracer, trace, platform: str, *, attempt_no: int = 1):
    resumed = tracer.from_existing(trace.project_id, trace.request_id, trace.trace_id, started_at=trace.started_at)
    return resumed.span(platform, kind=SpanKind.PLATFORM, platform=platform, attempt_no=attempt_no)


@pytest.mark.unit
def test_settles_immediately_when_span_end_is_stored(
    tracer: Tracer, settler: TraceSettler, trace_repository: TraceRepository
) -> None:
    trace = _fanned_out(tracer, ["youtube"])
    span = _attempt(tracer, trace, "youtube")
    span.end(SpanStatus.SUCCESS)
    assert tracer.flush() is True

    assert settler.request(trace.trace_id, span.span_id) is TraceStatus.SUCCESS
    assert trace_repository.get_trace(trace.trace_id).status is TraceStatus.SUCCESS
    assert settler.awaiting() == {}


@pytest.mark.unit
def test_failed_span_end_write_settles_on_the_retried_flush(
    tracer: Tracer,
    settler: TraceSettler,
    flaky_sink: FlakySink,
    timers: ManualTimerFactory,
    trace_repository: TraceRepository,
) -> None:
    trace = _fanned_out(tracer, ["youtube"])
    span = _attempt(tracer, trace, "youtube")
    span.end(SpanStatus.FAILED, error="quota exceeded")
    flaky_sink.failures = 1

    assert tracer.flush() is False
    assert settler.request(trace.trace_id, span.span_id) is None
    assert trace_repository.get_trace(trace.trace_id).status is TraceStatus.RUNNING
    assert settler.awaiting() == {trace.trace_id: {span.span_id}}

    timers.active[-1].fire()

    assert trace_repository.get_trace(trace.trace_id).status is TraceStatus.FAILED
    assert settler.awaiting() == {}


@pytest.mark.unit
def test_stored_earlier_attempt_does_not_settle_a_pending_retry(
    tracer: Tracer,
    settler: TraceSettler,
    flaky_sink: FlakySink,
    timers: ManualTimerFactory,
    trace_repository: TraceRepository,
) -> None:
    trace = _fanned_out(tracer, ["youtube"])
    first = _attempt(tracer, trace, "youtube")
    first.end(SpanStatus.FAILED, error="backend error")
    assert tracer.flush() is True

    second = _attempt(tracer, trace, "youtube", attempt_no=2)
    second.end(SpanStatus.SUCCESS)
    flaky_sink.failures = 1
    assert tracer.flush() is False

    # the stored spans alone would roll up to FAILED
    assert settler.request(trace.trace_id, second.span_id) is None
    assert trace_repository.get_trace(trace.trace_id).status is TraceStatus.RUNNING

    timers.active[-1].fire()

    assert trace_repository.get_trace(trace.trace_id).status is TraceStatus.SUCCESS


@pytest.mark.unit
def test_pending_settlement_survives_repeated_outages(
    tracer: Tracer, settler: TraceSettler, flaky_sink: FlakySink, trace_repository: TraceRepository
) -> None:
    waiting = _fanned_out(tracer, ["youtube"])
    span = _attempt(tracer, waiting, "youtube")
    span.end(SpanStatus.SUCCESS)
    flaky_sink.failures = 1
    tracer.flush()
    settler.request(waiting.trace_id, span.span_id)

    other = tracer.init("proj-1", "req-2")
    other.span(MASTER_SPAN_NAME, kind=SpanKind.MASTER).end(SpanStatus.FAILED, error="download failed")
    flaky_sink.failures = 1
    assert tracer.flush() is False

    assert settler.awaiting() == {waiting.trace_id: {span.span_id}}
    assert tracer.flush() is True
    assert trace_repository.get_trace(waiting.trace_id).status is TraceStatus.SUCCESS
