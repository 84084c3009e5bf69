"""Factory for platform vendor clients."""

from __future__ import annotations

import httpx

from ..core.config import PublisherSettings
from ..domain.models import PlatformType
from ..exceptions import ConfigurationError
from .base import PlatformClient
from .instagram import InstagramClient
from .youtube import YouTubeClient


def create_client(
    name: str,
    settings: PublisherSettings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> PlatformClient:
    """Instantiate the vendor client for platform ``name``."""
    settings = settings or PublisherSettings()
    lower = name.lower()
    if lower == PlatformType.INSTAGRAM.value:
        return InstagramClient(
            graph_url=settings.instagram_graph_url,
            graph_version=settings.instagram_graph_version,
            rupload_url=settings.instagram_rupload_url,
            timeout_seconds=settings.vendor_request_timeout_seconds,
            http_client=http_client,
        )
    if lower == PlatformType.YOUTUBE.value:
        return YouTubeClient(
            token_url=settings.youtube_token_url,
            api_url=settings.youtube_api_url,
            upload_url=settings.youtube_upload_url,
            timeout_seconds=settings.vendor_request_timeout_seconds,
            http_client=http_client,
        )
    raise ConfigurationError(f"Unknown platform: {name}")


def create_clients(
    settings: PublisherSettings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, PlatformClient]:
    return {platform.value: create_client(platform.value, settings, http_client=http_client) for platform in PlatformType}


__all__ = ["create_client", "create_clients"]
