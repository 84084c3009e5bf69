"""Social media publish pipeline.

A publish request is fanned out by the master orchestrator to one job per
enabled platform; platform workers prepare the media, upload it and publish
it while every step is recorded as trace, span and event rows.
"""

from .services.publish import PublishService
from .tracing import Span, StagedIngestor, Trace, Tracer

__all__ = ["PublishService", "Span", "StagedIngestor", "Trace", "Tracer"]
