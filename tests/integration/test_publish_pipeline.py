from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from src.publisher.domain.models import (
    MasterJob,
    PlatformConfig,
    PlatformSecret,
    ProjectConfig,
    SpanKind,
    SpanStatus,
    TraceStatus,
)
from src.publisher.exceptions import ConfigurationError, JobTimeoutError, VendorError
from src.publisher.infrastructure.queue import (
    InMemoryJobQueue,
    JobOptions,
    JobStatus,
    QueueName,
    publish_queue_name,
)
from src.publisher.media import MediaInspector, MediaPrepEngine, MediaTranscoder
from src.publisher.providers.retry import RetryPolicy
from src.publisher.repositories.settlement import TraceSettler
from src.publisher.repositories.trace_repository import TraceRepository
from src.publisher.services import PublishService
from src.publisher.services.downloader import MediaDownloader
from src.publisher.services.projects import InMemoryProjectService
from src.publisher.tracing import StagedIngestor, Stage, Tracer
from src.publisher.tracing.sinks import RepositorySink
from src.publisher.workers import MASTER_SPAN_NAME, MasterWorker, MediaPrepWorker, PlatformWorker

from tests.mocks.media import FakeMediaTools
from tests.mocks.providers import ScriptedPlatformClient
from tests.mocks.tracing import FlakySink, ManualTimerFactory, StepClock

INSTAGRAM_SECRET = PlatformSecret(data={"businessAccountId": "1784", "accessToken": "ig-token"})
YOUTUBE_SECRET = PlatformSecret(data={"clientId": "client", "clientSecret": "shh"}, tokens={"refresh_token": "r"})


@dataclass
class Pipeline:
    tracer: Tracer
    repository: TraceRepository
    settler: TraceSettler
    sink: FlakySink
    timers: ManualTimerFactory
    queue: InMemoryJobQueue
    projects: InMemoryProjectService
    clients: dict[str, ScriptedPlatformClient]
    work_root: Path
    source: Path
    sleeps: list[float] = field(default_factory=list)

    def master(self, *, attempts: int = 1) -> MasterWorker:
        return MasterWorker(
            tracer=self.tracer,
            queue=self.queue,
            projects=self.projects,
            clients=self.clients,
            downloader=MediaDownloader(self.work_root),
            repository=self.repository,
            publish_options=JobOptions(attempts=attempts, backoff_ms=0),
        )

    def platform_worker(self, name: str, **kwargs) -> PlatformWorker:
        return PlatformWorker(
            platform=name,
            tracer=self.tracer,
            queue=self.queue,
            projects=self.projects,
            client=self.clients[name],
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05),
            settler=self.settler,
            sleep=self.sleeps.append,
            **kwargs,
        )

    @asynccontextmanager
    async def prep_consumer(self) -> AsyncIterator[None]:
        tools = FakeMediaTools()
        engine = MediaPrepEngine(
            MediaInspector(runner=tools),
            MediaTranscoder(runner=tools),
            self.work_root,
        )
        worker = MediaPrepWorker(tracer=self.tracer, engine=engine, projects=self.projects)
        stop = asyncio.Event()
        self.queue.poll_interval = 0.01
        task = asyncio.create_task(self.queue.consume(QueueName.MEDIA_PREP.value, worker.handle, shutdown_event=stop))
        try:
            yield
        finally:
            stop.set()
            await task

    async def publish(self, name: str, **kwargs) -> None:
        """Deliver the pending publish job of ``name`` once."""

        (job,) = [job for job in self.queue.jobs(publish_queue_name(name)) if job.status is JobStatus.WAITING]
        await self.queue.process(job, self.platform_worker(name, **kwargs).handle)


def _project(*platforms: PlatformConfig) -> InMemoryProjectService:
    return InMemoryProjectService([ProjectConfig(id="proj-1", name="Brand", platforms=list(platforms))])


@pytest.fixture
def pipeline(
    trace_repository: TraceRepository,
    timers: ManualTimerFactory,
    clock: StepClock,
    tmp_path: Path,
) -> Pipeline:
    source = tmp_path / "inbox" / "launch.mp4"
    source.parent.mkdir()
    source.write_bytes(b"\x00\x00\x00\x18ftypmp42" * 8)
    sink = FlakySink(RepositorySink(trace_repository), stage=Stage.SPAN_END)
    ingestor = StagedIngestor(sink, batch_max=500, timer_factory=timers)
    settler = TraceSettler(trace_repository)
    ingestor.add_listener(settler.on_stage_written)
    return Pipeline(
        tracer=Tracer(ingestor, clock=clock),
        repository=trace_repository,
        settler=settler,
        sink=sink,
        timers=timers,
        queue=InMemoryJobQueue(),
        projects=_project(
            PlatformConfig(name="instagram", upload_type="reels", secret=INSTAGRAM_SECRET),
            PlatformConfig(name="youtube", upload_type="shorts", secret=YOUTUBE_SECRET),
        ),
        clients={
            "instagram": ScriptedPlatformClient("instagram"),
            "youtube": ScriptedPlatformClient("youtube", folds_publish=True),
        },
        work_root=tmp_path / "work",
        source=source,
    )


def _job(pipeline: Pipeline, **kwargs) -> MasterJob:
    return MasterJob(project_id="proj-1", request_id="req-1", media_url=str(pipeline.source), **kwargs)


def _event_names(repository: TraceRepository, trace_id: str) -> list[str]:
    return [event.name for event in repository.list_events(trace_id)]


# ----------------------------------------------------------------------
# Master orchestration
# ----------------------------------------------------------------------
@pytest.mark.integration
@pytest.mark.asyncio
async def test_master_fans_out_to_every_enabled_platform(pipeline: Pipeline) -> None:
    outcome = await pipeline.master().run(_job(pipeline, title="Launch"))

    assert outcome.success is True
    assert outcome.platforms == ["instagram", "youtube"]
    assert Path(outcome.file_path) == pipeline.work_root / outcome.trace_id / f"{outcome.trace_id}.mp4"
    for name in ("instagram", "youtube"):
        (queued,) = pipeline.queue.jobs(publish_queue_name(name))
        assert queued.payload["trace_id"] == outcome.trace_id
        assert queued.payload["file_path"] == outcome.file_path
        assert queued.payload["title"] == "Launch"

    (master,) = pipeline.repository.list_spans(outcome.trace_id)
    assert master.name == MASTER_SPAN_NAME
    assert master.status is SpanStatus.SUCCESS
    assert master.attributes["platforms"] == ["instagram", "youtube"]
    assert _event_names(pipeline.repository, outcome.trace_id) == [
        "publish.request.received",
        "media.downloaded",
        "platform.validation.started",
        "platform.validation.completed",
        "platform.validation.started",
        "platform.validation.completed",
    ]
    assert pipeline.repository.get_trace(outcome.trace_id).status is TraceStatus.RUNNING


@pytest.mark.integration
@pytest.mark.asyncio
async def test_master_enqueues_nothing_when_one_platform_is_invalid(pipeline: Pipeline) -> None:
    pipeline.projects = _project(
        PlatformConfig(name="instagram", secret=PlatformSecret(data={"accessToken": ""})),
        PlatformConfig(name="youtube", secret=YOUTUBE_SECRET),
    )

    outcome = await pipeline.master().run(_job(pipeline))

    assert outcome.success is False
    assert outcome.error["type"] == "CredentialValidationError"
    assert pipeline.queue.jobs() == []
    assert pipeline.clients["youtube"].calls == []
    stored = pipeline.repository.get_trace(outcome.trace_id)
    assert stored.status is TraceStatus.FAILED
    (master,) = pipeline.repository.list_spans(outcome.trace_id)
    assert master.status is SpanStatus.FAILED
    assert master.error["message"] == "instagram secret is empty"
    assert "platform.validation.failed" in _event_names(pipeline.repository, outcome.trace_id)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_master_skips_disabled_platforms(pipeline: Pipeline) -> None:
    pipeline.projects = _project(
        PlatformConfig(name="instagram", enabled=False, secret=PlatformSecret()),
        PlatformConfig(name="youtube", secret=YOUTUBE_SECRET),
    )

    outcome = await pipeline.master().run(_job(pipeline))

    assert outcome.platforms == ["youtube"]
    assert pipeline.queue.jobs(publish_queue_name("instagram")) == []
    assert "platform.validation.skipped" in _event_names(pipeline.repository, outcome.trace_id)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_master_reports_vendor_rejection(pipeline: Pipeline) -> None:
    pipeline.clients["youtube"] = ScriptedPlatformClient(
        "youtube", verify_result=VendorError("token revoked", status_code=400)
    )

    outcome = await pipeline.master().run(_job(pipeline))

    assert outcome.success is False
    assert outcome.error["message"] == "token revoked"
    assert pipeline.queue.jobs() == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_repeated_idempotency_key_is_not_fanned_out_twice(pipeline: Pipeline) -> None:
    first = await pipeline.master().run(_job(pipeline, idempotency_key="post-42"))
    second = await pipeline.master().run(_job(pipeline, idempotency_key="post-42"))

    assert second.duplicate is True
    assert second.trace_id == first.trace_id
    assert len(pipeline.queue.jobs()) == 2


@pytest.mark.integration
@pytest.mark.asyncio
async def test_resubmitting_after_a_failed_master_reopens_the_trace(pipeline: Pipeline) -> None:
    pipeline.projects = _project(
        PlatformConfig(name="youtube", upload_type="shorts", secret=PlatformSecret(data={"clientId": ""})),
    )
    first = await pipeline.master().run(_job(pipeline, idempotency_key="post-43"))
    assert first.success is False
    assert pipeline.repository.get_trace(first.trace_id).status is TraceStatus.FAILED

    pipeline.projects = _project(PlatformConfig(name="youtube", upload_type="shorts", secret=YOUTUBE_SECRET))
    second = await pipeline.master().run(_job(pipeline, idempotency_key="post-43"))

    assert second.success is True
    assert second.duplicate is False
    assert second.trace_id == first.trace_id
    assert pipeline.repository.get_trace(first.trace_id).status is TraceStatus.RUNNING

    async with pipeline.prep_consumer():
        await pipeline.publish("youtube")

    stored = pipeline.repository.get_trace(first.trace_id)
    assert stored.status is TraceStatus.SUCCESS
    assert stored.ended_at is not None
    masters = [span for span in pipeline.repository.list_spans(first.trace_id) if span.kind is SpanKind.MASTER]
    assert [span.status for span in masters] == [SpanStatus.FAILED, SpanStatus.SUCCESS]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_master_failure_on_missing_media(pipeline: Pipeline) -> None:
    outcome = await pipeline.master().run(
        MasterJob(project_id="proj-1", request_id="req-2", media_url=str(pipeline.source.with_name("gone.mp4")))
    )

    assert outcome.success is False
    assert outcome.error["type"] == "DownloadError"
    assert pipeline.repository.get_trace(outcome.trace_id).status is TraceStatus.FAILED


# ----------------------------------------------------------------------
# Platform workers and roll-up
# ----------------------------------------------------------------------
@pytest.mark.integration
@pytest.mark.asyncio
async def test_platform_publish_with_transient_upload_errors(pipeline: Pipeline) -> None:
    pipeline.projects = _project(PlatformConfig(name="youtube", upload_type="shorts", secret=YOUTUBE_SECRET))
    pipeline.clients["youtube"].upload_outcomes = [
        VendorError("backend error", status_code=503),
        VendorError("backend error", status_code=503),
    ]
    outcome = await pipeline.master().run(_job(pipeline))

    async with pipeline.prep_consumer():
        await pipeline.publish("youtube")

    (queued,) = pipeline.queue.jobs(publish_queue_name("youtube"))
    assert queued.status is JobStatus.COMPLETED
    assert queued.result["attempts"] == 3
    assert queued.result["url"] == "https://youtube.test/youtube-res"
    assert queued.result["converted"] is False
    assert len(pipeline.sleeps) == 2
    assert pipeline.sleeps[0] < pipeline.sleeps[1]
    assert pipeline.clients["youtube"].call_names() == ["verify", "upload", "upload", "upload", "publish"]

    spans = {span.name: span for span in pipeline.repository.list_spans(outcome.trace_id)}
    assert spans["youtube"].kind is SpanKind.PLATFORM
    assert spans["youtube"].status is SpanStatus.SUCCESS
    assert spans["prep"].parent_span_id == spans["youtube"].span_id
    assert spans["prep"].status is SpanStatus.SKIPPED
    assert "publish" not in spans

    events = pipeline.repository.list_events(outcome.trace_id, span_id=spans["youtube"].span_id)
    assert [event.name for event in events].count("upload.retry") == 2
    assert [event.seq for event in events] == list(range(1, len(events) + 1))
    assert pipeline.repository.get_trace(outcome.trace_id).status is TraceStatus.SUCCESS


@pytest.mark.integration
@pytest.mark.asyncio
async def test_one_failed_platform_gives_partial_trace(pipeline: Pipeline) -> None:
    pipeline.clients["instagram"].publish_outcomes = [VendorError("media rejected", status_code=400)]
    outcome = await pipeline.master().run(_job(pipeline))

    async with pipeline.prep_consumer():
        await pipeline.publish("youtube")
        assert pipeline.repository.get_trace(outcome.trace_id).status is TraceStatus.RUNNING
        await pipeline.publish("instagram")

    spans = {span.name: span for span in pipeline.repository.list_spans(outcome.trace_id)}
    assert spans["instagram"].status is SpanStatus.FAILED
    assert spans["instagram"].error["code"] == 400
    assert spans["publish"].parent_span_id == spans["instagram"].span_id
    assert spans["publish"].status is SpanStatus.FAILED
    stored = pipeline.repository.get_trace(outcome.trace_id)
    assert stored.status is TraceStatus.PARTIAL
    assert stored.ended_at == spans["instagram"].ended_at


@pytest.mark.integration
@pytest.mark.asyncio
async def test_rejected_upload_settles_without_waiting_for_redelivery(pipeline: Pipeline) -> None:
    pipeline.projects = _project(PlatformConfig(name="youtube", upload_type="shorts", secret=YOUTUBE_SECRET))
    pipeline.clients["youtube"].upload_outcomes = [VendorError("video rejected", status_code=400)]
    outcome = await pipeline.master(attempts=3).run(_job(pipeline))

    async with pipeline.prep_consumer():
        await pipeline.publish("youtube")

    (queued,) = pipeline.queue.jobs(publish_queue_name("youtube"))
    assert queued.status is JobStatus.FAILED
    assert queued.attempts_made == 1
    assert pipeline.clients["youtube"].call_names() == ["verify", "upload"]
    assert pipeline.repository.get_trace(outcome.trace_id).status is TraceStatus.FAILED


@pytest.mark.integration
@pytest.mark.asyncio
async def test_trace_settles_once_a_failed_flush_is_retried(pipeline: Pipeline) -> None:
    pipeline.projects = _project(PlatformConfig(name="youtube", upload_type="shorts", secret=YOUTUBE_SECRET))
    outcome = await pipeline.master().run(_job(pipeline))
    # the prep flush and the final platform flush both lose their span ends
    pipeline.sink.failures = 2

    async with pipeline.prep_consumer():
        await pipeline.publish("youtube")

    (queued,) = pipeline.queue.jobs(publish_queue_name("youtube"))
    assert queued.status is JobStatus.COMPLETED
    assert pipeline.sink.failures == 0
    assert pipeline.repository.get_trace(outcome.trace_id).status is TraceStatus.RUNNING
    assert outcome.trace_id in pipeline.settler.awaiting()

    pipeline.timers.active[-1].fire()

    stored = pipeline.repository.get_trace(outcome.trace_id)
    assert stored.status is TraceStatus.SUCCESS
    assert stored.ended_at is not None
    assert pipeline.settler.awaiting() == {}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_prep_that_never_finishes_times_out(pipeline: Pipeline) -> None:
    pipeline.projects = _project(PlatformConfig(name="youtube", upload_type="shorts", secret=YOUTUBE_SECRET))
    outcome = await pipeline.master().run(_job(pipeline))

    await pipeline.publish("youtube", prep_timeout=0.01)

    (queued,) = pipeline.queue.jobs(publish_queue_name("youtube"))
    assert queued.status is JobStatus.FAILED
    assert isinstance(queued.exception, JobTimeoutError)
    (platform_span,) = [
        span for span in pipeline.repository.list_spans(outcome.trace_id) if span.kind is SpanKind.PLATFORM
    ]
    assert platform_span.status is SpanStatus.TIMEOUT
    assert pipeline.repository.get_trace(outcome.trace_id).status is TraceStatus.TIMEOUT
    assert pipeline.clients["youtube"].call_names() == ["verify"]


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------
@pytest.mark.integration
@pytest.mark.asyncio
async def test_publish_service_queues_master_job(pipeline: Pipeline) -> None:
    service = PublishService(tracer=pipeline.tracer, queue=pipeline.queue, projects=pipeline.projects)

    trace_id = await service.submit("proj-1", str(pipeline.source), title="Launch", request_id="req-7")
    (queued,) = pipeline.queue.jobs(QueueName.MASTER.value)
    outcome = await pipeline.master().handle(queued)

    assert queued.payload["trace_id"] == trace_id
    assert outcome["trace_id"] == trace_id
    assert pipeline.repository.get_trace(trace_id).input["title"] == "Launch"
    assert _event_names(pipeline.repository, trace_id)[:3] == [
        "publish.request.received",
        "publish.request.validated",
        "publish.request.queued",
    ]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_publish_service_rejects_unknown_project(pipeline: Pipeline) -> None:
    service = PublishService(tracer=pipeline.tracer, queue=pipeline.queue, projects=pipeline.projects)

    with pytest.raises(ConfigurationError, match="Unknown project: other"):
        await service.submit("other", str(pipeline.source))

    assert pipeline.queue.jobs() == []
