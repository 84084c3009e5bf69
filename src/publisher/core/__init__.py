"""Runtime settings of the publish pipeline."""

from .config import PublisherSettings

__all__ = ["PublisherSettings"]
