"""Queue workers of the publish pipeline."""

from .master_worker import MASTER_SPAN_NAME, MasterOutcome, MasterWorker
from .media_prep_worker import MediaPrepWorker
from .platform_worker import PlatformWorker

__all__ = [
    "MASTER_SPAN_NAME",
    "MasterOutcome",
    "MasterWorker",
    "MediaPrepWorker",
    "PlatformWorker",
]
