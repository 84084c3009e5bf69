"""Runtime settings for the publish pipeline.

Values are read from ``PUBLISHER_*`` environment variables. Defaults match
the queue policy (three attempts, exponential back-off from one second) and
the trace ingestor tuning (batches of 100 records or one second, three posts
in flight).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_root() -> Path:
    return Path("./var/work")


class PublisherSettings(BaseSettings):
    """Pydantic settings container for workers and services."""

    model_config = SettingsConfigDict(env_prefix="PUBLISHER_", extra="ignore")

    database_url: str = Field(
        default="sqlite:///publisher.db",
        description="SQLAlchemy URL of the trace/span/event store",
    )
    work_root: Path = Field(
        default_factory=_default_work_root,
        description="Directory holding per-trace downloads and converted media.",
    )
    projects_file: Path | None = Field(
        default=None,
        description="JSON file with project, platform and secret definitions.",
    )
    log_level: str = Field(default="INFO")

    # Trace ingestion -------------------------------------------------------
    trace_sink: Literal["log", "http", "database"] = Field(
        default="database",
        description="Destination of trace batches.",
    )
    trace_ingest_url: str = Field(
        default="",
        description="HTTP endpoint for trace batches; empty logs batches instead.",
    )
    trace_batch_max: int = Field(default=100, ge=1)
    trace_batch_ms: int = Field(default=1_000, ge=1)
    trace_max_inflight: int = Field(default=3, ge=1)
    trace_post_timeout_ms: int = Field(default=5_000, ge=100)

    # Queue policy ----------------------------------------------------------
    queue_attempts: int = Field(default=3, ge=1)
    queue_backoff_ms: int = Field(default=1_000, ge=0)
    queue_remove_on_complete: int = Field(default=1_000, ge=0)
    queue_remove_on_fail: int = Field(default=1_000, ge=0)
    queue_max_pending: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on waiting jobs per queue before enqueue is refused.",
    )
    master_concurrency: int = Field(default=2, ge=1)
    publish_concurrency: int = Field(default=2, ge=1)
    media_prep_concurrency: int = Field(default=2, ge=1)
    prep_wait_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="How long a platform job waits for its media-prep sub-job.",
    )

    # Media tooling ---------------------------------------------------------
    enforce_constraints: bool = Field(
        default=False,
        description="Fail instead of transcoding when media violates requirements.",
    )
    ffprobe_binary: str = Field(default="ffprobe")
    ffmpeg_binary: str = Field(default="ffmpeg")
    probe_timeout_seconds: float = Field(default=30.0, gt=0)
    transcode_timeout_seconds: float = Field(default=900.0, gt=0)
    download_timeout_seconds: float = Field(default=60.0, gt=0)

    # Vendor retries --------------------------------------------------------
    vendor_retry_attempts: int = Field(default=5, ge=1)
    vendor_retry_base_delay_seconds: float = Field(default=1.0, ge=0.0)
    vendor_retry_max_delay_seconds: float = Field(default=30.0, ge=0.0)
    vendor_retry_jitter: float = Field(default=0.25, ge=0.0, le=1.0)
    vendor_request_timeout_seconds: float = Field(default=60.0, gt=0)
    job_retry_budget_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Wall-clock cap on vendor retries across all deliveries of one job.",
    )

    # Vendor endpoints ------------------------------------------------------
    instagram_graph_url: str = Field(default="https://graph.facebook.com")
    instagram_graph_version: str = Field(default="19.0")
    instagram_rupload_url: str = Field(default="https://rupload.facebook.com/ig-api-upload")
    youtube_token_url: str = Field(default="https://oauth2.googleapis.com/token")
    youtube_api_url: str = Field(default="https://www.googleapis.com/youtube/v3")
    youtube_upload_url: str = Field(default="https://www.googleapis.com/upload/youtube/v3/videos")


__all__ = ["PublisherSettings"]
