from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from src.publisher.domain.models import MediaType, PlatformSecret, UploadType
from src.publisher.exceptions import CredentialValidationError, VendorAuthError, VendorError
from src.publisher.providers.base import UploadHandle, UploadMetadata
from src.publisher.providers.instagram import InstagramClient

SECRET = PlatformSecret(data={"businessAccountId": "1784", "accessToken": "ig-token"})


class GraphStub:
    """Route Graph and rupload requests to canned responses."""

    def __init__(self, *, statuses: list[str] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses = list(statuses or ["FINISHED"])

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == "rupload.test":
            return httpx.Response(200, json={"success": True})
        if path == "/v19.0/1784/media":
            return httpx.Response(200, json={"id": "container-1"})
        if path == "/v19.0/container-1":
            return httpx.Response(200, json={"status_code": self.statuses.pop(0)})
        if path == "/v19.0/1784/media_publish":
            return httpx.Response(200, json={"id": "media-9"})
        if path == "/v19.0/media-9":
            return httpx.Response(200, json={"permalink": "https://instagram.test/p/abc"})
        if path == "/v19.0/1784":
            return httpx.Response(200, json={"id": "1784", "username": "brand"})
        return httpx.Response(404, json={"error": {"message": f"unexpected {path}"}})


def _client(stub, **kwargs) -> InstagramClient:
    sleeps: list[float] = []

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    client = InstagramClient(
        graph_url="https://graph.test",
        rupload_url="https://rupload.test/ig-api-upload",
        sleep=_sleep,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub)),
        **kwargs,
    )
    client.sleeps = sleeps  # type: ignore[attr-defined]
    return client


@pytest.mark.unit
@pytest.mark.asyncio
async def test_reel_upload_sends_chunks_with_offsets(tmp_path: Path) -> None:
    video = tmp_path / "converted.mp4"
    video.write_bytes(b"0123456789")
    stub = GraphStub()
    client = _client(stub, chunk_size=4)

    handle = await client.upload(video, UploadMetadata(title="Launch", upload_type=UploadType.REELS.value), SECRET)
    await client.aclose()

    assert handle.upload_id == "container-1"
    assert handle.data == {"bytes": 10}
    create = stub.requests[0]
    assert create.url.params["media_type"] == "REELS"
    assert create.url.params["upload_type"] == "resumable"
    assert create.url.params["caption"] == "Launch"
    chunks = [request for request in stub.requests if request.url.host == "rupload.test"]
    assert [request.headers["offset"] for request in chunks] == ["0", "4", "8"]
    assert {request.headers["file_size"] for request in chunks} == {"10"}
    assert chunks[0].headers["Authorization"] == "OAuth ig-token"
    assert chunks[0].url.path == "/ig-api-upload/v19.0/container-1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_carousel_video_is_marked_as_item(tmp_path: Path) -> None:
    video = tmp_path / "clip.mp4"
    video.write_bytes(b"abc")
    stub = GraphStub()
    client = _client(stub)

    await client.upload(video, UploadMetadata(upload_type=UploadType.CAROUSEL.value), SECRET)

    params = stub.requests[0].url.params
    assert params["media_type"] == "VIDEO"
    assert params["is_carousel_item"] == "true"
    assert "caption" not in params


@pytest.mark.unit
@pytest.mark.asyncio
async def test_image_upload_uses_public_url(tmp_path: Path) -> None:
    stub = GraphStub()
    client = _client(stub)
    metadata = UploadMetadata(
        description="caption",
        media_type=MediaType.IMAGE,
        media_url="https://cdn.test/photo.jpg",
    )

    handle = await client.upload(tmp_path / "converted.jpg", metadata, SECRET)

    assert handle.upload_id == "container-1"
    assert stub.requests[0].url.params["image_url"] == "https://cdn.test/photo.jpg"
    with pytest.raises(VendorError, match="public media URL"):
        await client.upload(tmp_path / "converted.jpg", UploadMetadata(media_type=MediaType.IMAGE), SECRET)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_publish_waits_for_container_then_reads_permalink() -> None:
    stub = GraphStub(statuses=["IN_PROGRESS", "IN_PROGRESS", "FINISHED"])
    client = _client(stub, container_poll_interval=5)

    resource = await client.publish(UploadHandle(platform="instagram", upload_id="container-1"), SECRET)

    assert resource.resource_id == "media-9"
    assert resource.url == "https://instagram.test/p/abc"
    assert client.sleeps == [5, 5]
    assert stub.requests[3].url.params["creation_id"] == "container-1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_container_is_not_retriable() -> None:
    client = _client(GraphStub(statuses=["ERROR"]))

    with pytest.raises(VendorError) as excinfo:
        await client.publish(UploadHandle(platform="instagram", upload_id="container-1"), SECRET)

    assert excinfo.value.code == "ERROR"
    assert excinfo.value.retriable is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_credentials_are_checked() -> None:
    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid OAuth access token", "type": "OAuthException"}})

    with pytest.raises(CredentialValidationError):
        await _client(GraphStub()).verify(PlatformSecret(data={"accessToken": "only-token"}))

    with pytest.raises(VendorAuthError, match="OAuthException Invalid OAuth access token"):
        await _client(rejected).verify(SECRET)

    result = await _client(GraphStub()).verify(SECRET)
    assert result.valid is True
    assert result.data == {"account_id": "1784", "username": "brand"}
