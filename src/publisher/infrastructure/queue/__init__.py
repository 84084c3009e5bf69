"""Job queue adapters."""

from .job_queue import (
    InMemoryJobQueue,
    JobHandler,
    JobOptions,
    JobQueue,
    JobStatus,
    QueuedJob,
    QueueName,
    publish_queue_name,
)

__all__ = [
    "InMemoryJobQueue",
    "JobHandler",
    "JobOptions",
    "JobQueue",
    "JobStatus",
    "QueuedJob",
    "QueueName",
    "publish_queue_name",
]
