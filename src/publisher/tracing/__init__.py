"""Trace/span model and its batched persistence."""

from .ingestor import Stage, StagedIngestor
from .tracer import Span, Trace, Tracer

__all__ = ["Span", "Stage", "StagedIngestor", "Trace", "Tracer"]
