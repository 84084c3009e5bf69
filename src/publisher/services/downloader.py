"""Fetch the source media of a publish request into the trace work dir."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from ..exceptions import DownloadError

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
    "video/x-matroska": "mkv",
}
FALLBACK_EXTENSION = "bin"


def extension_for(content_type: str | None, url: str) -> str:
    """Pick a file extension from the content type, then the URL suffix."""

    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in CONTENT_TYPE_EXTENSIONS:
            return CONTENT_TYPE_EXTENSIONS[mime]
    suffix = Path(unquote(urlparse(url).path)).suffix.lstrip(".").lower()
    if suffix and suffix.isalnum() and len(suffix) <= 5:
        return "jpg" if suffix == "jpeg" else suffix
    return FALLBACK_EXTENSION


class MediaDownloader:
    """Store ``<work_root>/<trace_id>/<trace_id>.<ext>`` for a media URL."""

    def __init__(
        self,
        work_root: str | Path,
        *,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.work_root = Path(work_root)
        self.timeout_seconds = timeout_seconds
        self._client = client

    def trace_dir(self, trace_id: str) -> Path:
        return self.work_root / trace_id

    async def download(self, media_url: str, trace_id: str) -> Path:
        target_dir = self.trace_dir(trace_id)
        target_dir.mkdir(parents=True, exist_ok=True)

        parsed = urlparse(media_url)
        if parsed.scheme in ("", "file"):
            return await self._copy_local(media_url, parsed.path if parsed.scheme else media_url, target_dir, trace_id)
        if parsed.scheme not in ("http", "https"):
            raise DownloadError(f"Unsupported media URL scheme: {parsed.scheme}")

        try:
            if self._client is not None:
                return await self._stream(self._client, media_url, target_dir, trace_id)
            async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                return await self._stream(client, media_url, target_dir, trace_id)
        except httpx.HTTPError as exc:
            raise DownloadError(f"Failed to download {media_url}: {exc}") from exc

    async def _stream(self, client: httpx.AsyncClient, url: str, target_dir: Path, trace_id: str) -> Path:
        async with client.stream("GET", url) as response:
            if response.status_code >= 400:
                raise DownloadError(f"Failed to download {url}: HTTP {response.status_code}")
            ext = extension_for(response.headers.get("content-type"), url)
            destination = target_dir / f"{trace_id}.{ext}"
            partial = destination.with_name(destination.name + ".part")
            size = 0
            try:
                with partial.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
                        size += len(chunk)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
        if size == 0:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"Downloaded media is empty: {url}")
        partial.replace(destination)
        logger.info("media.download.done", extra={"trace_id": trace_id, "path": str(destination), "bytes": size})
        return destination

    async def _copy_local(self, url: str, raw_path: str, target_dir: Path, trace_id: str) -> Path:
        source = Path(unquote(raw_path))
        if not source.is_file():
            raise DownloadError(f"Media file not found: {url}")
        ext = extension_for(None, source.name)
        destination = target_dir / f"{trace_id}.{ext}"
        if source.resolve() != destination.resolve():
            await asyncio.to_thread(shutil.copyfile, source, destination)
        logger.info("media.download.copied", extra={"trace_id": trace_id, "path": str(destination)})
        return destination


__all__ = ["MediaDownloader", "extension_for"]
