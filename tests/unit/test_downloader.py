from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from src.publisher.exceptions import DownloadError
from src.publisher.services.downloader import MediaDownloader, extension_for


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.unit
@pytest.mark.parametrize(
    ("content_type", "url", "expected"),
    [
        ("video/mp4; charset=binary", "https://cdn.test/a", "mp4"),
        (None, "https://cdn.test/photo.JPEG?sig=1", "jpg"),
        ("application/octet-stream", "https://cdn.test/clip.mov", "mov"),
        (None, "https://cdn.test/download", "bin"),
    ],
)
def test_extension_for(content_type: str | None, url: str, expected: str) -> None:
    assert extension_for(content_type, url) == expected


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_download_uses_content_type(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/media/42"
        return httpx.Response(200, headers={"content-type": "video/quicktime"}, content=b"moov" * 64)

    async with _client(handler) as client:
        path = await MediaDownloader(tmp_path, client=client).download("https://cdn.test/media/42", "trace-1")

    assert path == tmp_path / "trace-1" / "trace-1.mov"
    assert path.read_bytes() == b"moov" * 64
    assert not (tmp_path / "trace-1" / "trace-1.mov.part").exists()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_errors_become_download_errors(tmp_path: Path) -> None:
    async with _client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(DownloadError, match="HTTP 404"):
            await MediaDownloader(tmp_path, client=client).download("https://cdn.test/gone.mp4", "trace-2")

    async with _client(lambda request: httpx.Response(200, content=b"")) as client:
        with pytest.raises(DownloadError, match="empty"):
            await MediaDownloader(tmp_path, client=client).download("https://cdn.test/empty.mp4", "trace-3")
    assert list((tmp_path / "trace-3").iterdir()) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transport_failure_is_wrapped(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(DownloadError) as excinfo:
            await MediaDownloader(tmp_path, client=client).download("https://cdn.test/a.mp4", "trace-4")
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


class _DroppedStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b"moov" * 16
        raise httpx.ReadError("connection reset by peer")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_interrupted_stream_leaves_no_partial_file(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "video/mp4"}, stream=_DroppedStream())

    async with _client(handler) as client:
        with pytest.raises(DownloadError, match="connection reset"):
            await MediaDownloader(tmp_path, client=client).download("https://cdn.test/a.mp4", "trace-5")

    assert list((tmp_path / "trace-5").iterdir()) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_local_files_are_copied(tmp_path: Path) -> None:
    source = tmp_path / "inbox" / "clip.mp4"
    source.parent.mkdir()
    source.write_bytes(b"clip")
    downloader = MediaDownloader(tmp_path / "work")

    from_path = await downloader.download(str(source), "trace-5")
    from_url = await downloader.download(source.as_uri(), "trace-6")

    assert from_path.read_bytes() == from_url.read_bytes() == b"clip"
    assert from_url.name == "trace-6.mp4"
    with pytest.raises(DownloadError, match="not found"):
        await downloader.download(str(tmp_path / "missing.mp4"), "trace-7")
    with pytest.raises(DownloadError, match="scheme"):
        await downloader.download("ftp://cdn.test/a.mp4", "trace-8")
