"""Destinations for stage batches produced by :class:`StagedIngestor`."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

import httpx

from ..exceptions import IngestionError
from .ingestor import Stage, records_as_dicts
from .records import TraceRecord

if TYPE_CHECKING:  # pragma: no cover - typing only
    from sqlalchemy.orm import Session, sessionmaker

    from ..core.config import PublisherSettings
    from ..repositories.trace_repository import TraceRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoggingSink:
    """Development sink: logs each batch as JSON instead of persisting it."""

    log: logging.Logger = field(default_factory=lambda: logger)

    def write(self, stage: Stage, batch: Sequence[TraceRecord]) -> None:
        self.log.info(
            "trace.dev_sink stage=%s batch=%s",
            stage.value,
            json.dumps(records_as_dicts(batch), ensure_ascii=False, default=str),
        )


@dataclass(slots=True)
class HttpSink:
    """POST each stage batch to a trace collector endpoint."""

    url: str
    timeout_seconds: float = 5.0
    client: httpx.Client | None = None

    def write(self, stage: Stage, batch: Sequence[TraceRecord]) -> None:
        payload = {"stage": stage.value, "batch": records_as_dicts(batch)}
        try:
            response = self._client().post(
                self.url,
                content=json.dumps(payload, default=str),
                headers={"content-type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise IngestionError(f"trace ingest request failed: {exc}") from exc
        if response.status_code >= 300:
            raise IngestionError(f"ingest {response.status_code}")

    def _client(self) -> httpx.Client:
        if self.client is None:
            self.client = httpx.Client()
        return self.client

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None


@dataclass(slots=True)
class RepositorySink:
    """Write stage batches straight into the relational store."""

    repository: "TraceRepository"

    def write(self, stage: Stage, batch: Sequence[TraceRecord]) -> None:
        self.repository.write_stage(stage, batch)


def build_sink(
    settings: "PublisherSettings",
    *,
    session_factory: "sessionmaker[Session] | None" = None,
) -> LoggingSink | HttpSink | RepositorySink:
    """Pick the sink configured by ``PUBLISHER_TRACE_SINK``."""

    if settings.trace_sink == "database":
        if session_factory is None:
            raise IngestionError("database trace sink requires a session factory")
        from ..repositories.trace_repository import TraceRepository

        return RepositorySink(TraceRepository(session_factory))
    if settings.trace_sink == "http" and settings.trace_ingest_url:
        return HttpSink(
            url=settings.trace_ingest_url,
            timeout_seconds=settings.trace_post_timeout_ms / 1000,
        )
    return LoggingSink()


__all__ = ["LoggingSink", "HttpSink", "RepositorySink", "build_sink"]
