from __future__ import annotations

import threading

import pytest

from src.publisher.domain.models import SpanKind, SpanStatus, TraceStatus
from src.publisher.exceptions import IngestionError
from src.publisher.tracing import Stage, StagedIngestor, Tracer
from src.publisher.tracing.ingestor import dependency_closure, topological_order
from src.publisher.tracing.records import SpanEndRecord, SpanEventRecord, SpanStartRecord, TraceStartRecord

from tests.mocks.tracing import ManualTimerFactory, RecordingSink, StepClock


def _ingestor(sink: RecordingSink, timers: ManualTimerFactory, **kwargs) -> StagedIngestor:
    return StagedIngestor(sink, timer_factory=timers, **kwargs)


@pytest.mark.unit
def test_stage_graph_orders_parents_first() -> None:
    order = topological_order()

    assert order == [Stage.TRACE, Stage.ROOT_SPAN, Stage.CHILD_SPAN, Stage.SPAN_END, Stage.EVENT]
    assert dependency_closure(Stage.CHILD_SPAN) == [Stage.TRACE, Stage.ROOT_SPAN, Stage.CHILD_SPAN]


@pytest.mark.unit
def test_flush_writes_stages_in_dependency_order(timers: ManualTimerFactory) -> None:
    sink = RecordingSink()
    ingestor = _ingestor(sink, timers, batch_max=2)
    tracer = Tracer(ingestor, clock=StepClock())

    trace = tracer.init("proj-1", "req-1")
    master = trace.span("master-orchestration", kind=SpanKind.MASTER)
    master.event("INFO", "publish.request.received")
    child = master.child("download")
    child.end(SpanStatus.SUCCESS)
    master.end(SpanStatus.SUCCESS)

    assert ingestor.flush() is True

    seen_traces: set[str] = set()
    seen_spans: set[str] = set()
    for record in sink.records:
        if isinstance(record, TraceStartRecord):
            seen_traces.add(record.trace_id)
        elif isinstance(record, SpanStartRecord):
            assert record.trace_id in seen_traces
            if record.parent_span_id is not None:
                assert record.parent_span_id in seen_spans
            seen_spans.add(record.span_id)
    assert sink.stages.index(Stage.EVENT) > sink.stages.index(Stage.SPAN_END)
    assert all(len(batch) <= 2 for _, batch in sink.batches)
    assert ingestor.pending_total() == 0


@pytest.mark.unit
def test_interleaved_traces_never_write_child_before_parent(timers: ManualTimerFactory) -> None:
    sink = RecordingSink()
    ingestor = _ingestor(sink, timers, batch_max=1)
    tracer = Tracer(ingestor, clock=StepClock())

    first = tracer.init("proj-1", "req-1")
    first_master = first.span("master", kind=SpanKind.MASTER)
    second = tracer.init("proj-1", "req-2")
    first_master.child("download")
    ingestor.flush(Stage.CHILD_SPAN)
    second.span("master", kind=SpanKind.MASTER).child("download")
    ingestor.flush()

    written_spans: set[str] = set()
    written_traces: set[str] = set()
    for record in sink.records:
        if isinstance(record, TraceStartRecord):
            written_traces.add(record.trace_id)
        if isinstance(record, SpanStartRecord):
            assert record.trace_id in written_traces
            assert record.parent_span_id is None or record.parent_span_id in written_spans
            written_spans.add(record.span_id)
    assert len(written_spans) == 4


@pytest.mark.unit
def test_failed_batch_is_requeued_at_front(timers: ManualTimerFactory) -> None:
    sink = RecordingSink(fail_times=1, fail_stage=Stage.ROOT_SPAN)
    ingestor = _ingestor(sink, timers)
    tracer = Tracer(ingestor, clock=StepClock())
    trace = tracer.init("proj-1", "req-1")
    trace.span("instagram", kind=SpanKind.PLATFORM, platform="instagram")
    trace.span("youtube", kind=SpanKind.PLATFORM, platform="youtube")

    assert ingestor.flush() is False
    assert ingestor.pending()[Stage.ROOT_SPAN] == 2
    assert ingestor.pending()[Stage.TRACE] == 0
    assert isinstance(ingestor.last_error, ConnectionError)
    assert timers.active, "a retry flush is scheduled"

    assert ingestor.flush() is True
    spans = [record for record in sink.records if isinstance(record, SpanStartRecord)]
    assert [span.platform for span in spans] == ["instagram", "youtube"]


@pytest.mark.unit
def test_flush_is_deferred_when_inflight_limit_reached(timers: ManualTimerFactory) -> None:
    release = threading.Event()
    entered = threading.Event()

    class BlockingSink(RecordingSink):
        def write(self, stage, batch):
            if stage is Stage.EVENT and not release.is_set():
                entered.set()
                release.wait(timeout=5)
            super().write(stage, batch)

    sink = BlockingSink()
    ingestor = _ingestor(sink, timers, max_inflight=1)
    tracer = Tracer(ingestor, clock=StepClock())
    tracer.init("proj-1", "req-1").event("INFO", "publish.request.received")

    worker = threading.Thread(target=ingestor.flush)
    worker.start()
    assert entered.wait(timeout=5)

    tracer.init("proj-1", "req-2")
    assert ingestor.flush(Stage.TRACE) is False
    assert ingestor.pending()[Stage.TRACE] == 1

    release.set()
    worker.join(timeout=5)
    assert ingestor.flush() is True
    assert ingestor.pending_total() == 0


@pytest.mark.unit
def test_size_threshold_arms_immediate_flush(timers: ManualTimerFactory) -> None:
    sink = RecordingSink()
    ingestor = _ingestor(sink, timers, batch_max=3, batch_ms=1_000)
    tracer = Tracer(ingestor, clock=StepClock())

    trace = tracer.init("proj-1", "req-1")
    assert timers.active[-1].delay == pytest.approx(1.0)
    trace.event("INFO", "publish.request.received")
    trace.event("INFO", "publish.request.validated")

    timer = timers.active[-1]
    assert timer.delay == 0.0
    timer.fire()
    assert ingestor.pending_total() == 0
    assert len(timers.timers) == 2


@pytest.mark.unit
def test_close_raises_when_records_remain(timers: ManualTimerFactory) -> None:
    sink = RecordingSink(fail_times=10)
    ingestor = _ingestor(sink, timers)
    Tracer(ingestor, clock=StepClock()).init("proj-1", "req-1").end(TraceStatus.FAILED)

    with pytest.raises(IngestionError):
        ingestor.close()
    with pytest.raises(IngestionError):
        ingestor.enqueue(TraceStartRecord(trace_id="t", project_id="p", request_id="r", started_at=StepClock()()))


@pytest.mark.unit
def test_listeners_see_written_batches_and_cannot_break_a_flush(timers: ManualTimerFactory) -> None:
    sink = RecordingSink(fail_times=1, fail_stage=Stage.SPAN_END)
    ingestor = _ingestor(sink, timers)
    seen: list[tuple[Stage, int]] = []

    def _broken(stage, records):
        raise RuntimeError("listener bug")

    ingestor.add_listener(_broken)
    ingestor.add_listener(lambda stage, records: seen.append((stage, len(records))))
    tracer = Tracer(ingestor, clock=StepClock())
    trace = tracer.init("proj-1", "req-1")
    trace.span("master", kind=SpanKind.MASTER).end(SpanStatus.SUCCESS)

    assert ingestor.flush() is False
    assert seen == [(Stage.TRACE, 1), (Stage.ROOT_SPAN, 1)]

    assert ingestor.flush() is True
    assert seen[2:] == [(Stage.SPAN_END, 1)]


@pytest.mark.unit
def test_concurrent_producers_and_flushers_keep_parents_first(timers: ManualTimerFactory) -> None:
    sink = RecordingSink()
    ingestor = _ingestor(sink, timers, batch_max=7, max_inflight=2)
    tracer = Tracer(ingestor)
    producers_done = threading.Event()
    errors: list[BaseException] = []

    def _produce(worker: int) -> None:
        try:
            for index in range(15):
                trace = tracer.init("proj-1", f"req-{worker}-{index}")
                master = trace.span("master", kind=SpanKind.MASTER)
                master.event("INFO", "publish.request.received")
                step = master.child("download")
                step.event("INFO", "media.downloaded")
                step.end(SpanStatus.SUCCESS)
                master.end(SpanStatus.SUCCESS)
        except Exception as exc:
            errors.append(exc)

    def _flush_until_done() -> None:
        while not producers_done.is_set():
            ingestor.flush()

    producers = [threading.Thread(target=_produce, args=(worker,)) for worker in range(4)]
    flushers = [threading.Thread(target=_flush_until_done) for _ in range(3)]
    for thread in flushers + producers:
        thread.start()
    for thread in producers:
        thread.join(timeout=10)
    producers_done.set()
    for thread in flushers:
        thread.join(timeout=10)
    assert ingestor.flush() is True
    assert errors == []

    traces: set[str] = set()
    started: set[str] = set()
    ended: set[str] = set()
    events = 0
    for record in sink.records:
        if isinstance(record, TraceStartRecord):
            traces.add(record.trace_id)
        elif isinstance(record, SpanStartRecord):
            assert record.trace_id in traces
            assert record.parent_span_id is None or record.parent_span_id in started
            started.add(record.span_id)
        elif isinstance(record, SpanEndRecord):
            assert record.span_id in started
            ended.add(record.span_id)
        elif isinstance(record, SpanEventRecord):
            assert record.span_id in started
            events += 1
    assert len(traces) == 60
    assert len(started) == len(ended) == 120
    assert events == 120
    assert ingestor.pending_total() == 0
