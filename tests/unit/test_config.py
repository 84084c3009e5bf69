from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from src.publisher.config import load_projects
from src.publisher.core.config import PublisherSettings
from src.publisher.domain.models import PlatformConfig, PlatformSecret, ProjectConfig
from src.publisher.exceptions import ConfigurationError, IngestionError
from src.publisher.services.projects import InMemoryProjectService, StaticSecretStore, is_empty_secret
from src.publisher.tracing.ingestor import Stage
from src.publisher.tracing.records import TraceStartRecord
from src.publisher.tracing.sinks import HttpSink, LoggingSink, RepositorySink, build_sink

from tests.mocks.tracing import StepClock


@pytest.mark.unit
def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PUBLISHER_WORK_ROOT", str(tmp_path))
    monkeypatch.setenv("PUBLISHER_QUEUE_ATTEMPTS", "5")
    monkeypatch.setenv("PUBLISHER_ENFORCE_CONSTRAINTS", "true")
    monkeypatch.setenv("PUBLISHER_TRACE_SINK", "log")

    settings = PublisherSettings()

    assert settings.work_root == tmp_path
    assert settings.queue_attempts == 5
    assert settings.enforce_constraints is True
    assert settings.trace_sink == "log"
    assert settings.job_retry_budget_seconds == 300.0
    assert settings.vendor_retry_attempts == 5


@pytest.mark.unit
def test_load_projects_from_json(tmp_path: Path) -> None:
    path = tmp_path / "projects.json"
    path.write_text(
        json.dumps(
            {
                "projects": [
                    {
                        "id": "proj-1",
                        "name": "Brand",
                        "platforms": [
                            {
                                "name": "youtube",
                                "upload_type": "shorts",
                                "secret": {"data": {"clientId": "c"}, "tokens": {"refresh_token": "r"}},
                                "settings": {"enforceConstraints": True},
                            },
                            {"name": "instagram", "enabled": False},
                        ],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )

    project = load_projects(path).get_project_config("proj-1")

    assert [platform.name for platform in project.enabled_platforms()] == ["youtube"]
    youtube = project.platform("youtube")
    assert youtube.secret.tokens == {"refresh_token": "r"}
    assert youtube.settings == {"enforceConstraints": True}
    assert load_projects(None).get_project_config("proj-1") is None


@pytest.mark.unit
def test_load_projects_reports_bad_files(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="not valid JSON"):
        load_projects(broken)
    with pytest.raises(ConfigurationError, match="not found"):
        load_projects(tmp_path / "missing.json")


@pytest.mark.unit
def test_secret_store_overrides_project_secrets() -> None:
    stored = PlatformSecret(tokens={"access_token": "fresh"})
    secrets = StaticSecretStore()
    secrets.put("proj-1", "instagram", stored)
    projects = InMemoryProjectService(
        [
            ProjectConfig(
                id="proj-1",
                name="Project",
                platforms=[
                    PlatformConfig(name="instagram", secret=PlatformSecret(tokens={"access_token": "stale"})),
                    PlatformConfig(name="youtube", secret=PlatformSecret(data={"client_id": "c"})),
                ],
            )
        ],
        secrets=secrets,
    )

    project = projects.get_project_config("proj-1")

    assert project.platform("instagram").secret is stored
    assert project.platform("youtube").secret.data == {"client_id": "c"}
    assert is_empty_secret({"client_id": "", "client_secret": "  "})
    assert is_empty_secret(PlatformSecret().data)
    assert not is_empty_secret({"client_id": "c"})


@pytest.mark.unit
def test_build_sink_follows_settings(session_factory) -> None:
    assert isinstance(build_sink(PublisherSettings(trace_sink="log")), LoggingSink)
    assert isinstance(build_sink(PublisherSettings(trace_sink="http")), LoggingSink)
    http = build_sink(PublisherSettings(trace_sink="http", trace_ingest_url="https://collector.test/ingest"))
    assert isinstance(http, HttpSink)
    assert http.timeout_seconds == 5.0
    assert isinstance(build_sink(PublisherSettings(), session_factory=session_factory), RepositorySink)
    with pytest.raises(IngestionError):
        build_sink(PublisherSettings(trace_sink="database"))


@pytest.mark.unit
def test_http_sink_posts_stage_batches() -> None:
    received: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(202 if len(received) == 1 else 503)

    sink = HttpSink(url="https://collector.test/ingest", client=httpx.Client(transport=httpx.MockTransport(handler)))
    record = TraceStartRecord(trace_id="t1", project_id="p", request_id="r", started_at=StepClock()())

    sink.write(Stage.TRACE, [record])
    with pytest.raises(IngestionError, match="ingest 503"):
        sink.write(Stage.TRACE, [record])
    sink.close()

    assert received[0]["stage"] == "trace"
    assert received[0]["batch"][0]["_t"] == "trace_start"
    assert received[0]["batch"][0]["started_at"] == "2026-01-01T12:00:00+00:00"
