"""YouTube Data API client (resumable uploads)."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx

from ..domain.models import PlatformSecret, PlatformType, UploadType
from ..exceptions import CredentialValidationError, VendorAuthError, VendorError
from .base import (
    PlatformClient,
    UploadHandle,
    UploadMetadata,
    VendorResource,
    VerifyResult,
    secret_value,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_ID = "22"
VIDEO_CONTENT_TYPE = "video/*"


def watch_url(video_id: str, upload_type: str | None) -> str:
    if upload_type == UploadType.SHORTS.value:
        return f"https://www.youtube.com/shorts/{video_id}"
    return f"https://www.youtube.com/watch?v={video_id}"


class YouTubeClient(PlatformClient):
    """Refresh OAuth tokens and upload videos; upload already publishes."""

    name = PlatformType.YOUTUBE.value
    folds_publish = True

    def __init__(
        self,
        *,
        token_url: str = "https://oauth2.googleapis.com/token",
        api_url: str = "https://www.googleapis.com/youtube/v3",
        upload_url: str = "https://www.googleapis.com/upload/youtube/v3/videos",
        privacy_status: str = "public",
        timeout_seconds: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, http_client=http_client)
        self.token_url = token_url
        self.api_url = api_url.rstrip("/")
        self.upload_url = upload_url
        self.privacy_status = privacy_status

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    async def access_token(self, secret: PlatformSecret) -> str:
        """Exchange the stored refresh token for a fresh access token."""

        client_id = secret_value(secret, "clientId", "client_id")
        client_secret = secret_value(secret, "clientSecret", "client_secret")
        refresh_token = secret_value(secret, "refresh_token", "refreshToken")
        if not refresh_token:
            token = secret_value(secret, "access_token", "accessToken")
            if token:
                return token
            raise CredentialValidationError(
                "YouTube authorization is incomplete: no tokens stored",
                platform=self.name,
            )
        if not client_id or not client_secret:
            raise CredentialValidationError(
                "YouTube client id and client secret are required",
                platform=self.name,
            )
        response = await self._request(
            "POST",
            self.token_url,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if response.status_code == 400:
            # invalid_grant: refresh token revoked or expired
            raise VendorAuthError(
                "YouTube refresh token was rejected",
                platform=self.name,
                status_code=response.status_code,
            )
        body = self._check(response, "token refresh")
        token = body.get("access_token")
        if not token:
            raise VendorAuthError("YouTube token response has no access_token", platform=self.name)
        return str(token)

    async def verify(self, secret: PlatformSecret) -> VerifyResult:
        token = await self.access_token(secret)
        params: dict[str, Any] = {"part": "id"}
        channel_id = secret_value(secret, "channelId", "channel_id")
        if channel_id:
            params["id"] = channel_id
        else:
            params["mine"] = "true"
        response = await self._request(
            "GET",
            f"{self.api_url}/channels",
            params=params,
            headers={"Authorization": f"Bearer {token}"},
        )
        body = self._check(response, "channels.list")
        items = body.get("items") or []
        if not items:
            return VerifyResult(valid=False, message="No YouTube channel is accessible with these credentials")
        logger.debug("youtube.verify.ok", extra={"channels": len(items)})
        return VerifyResult(valid=True, data={"channel_id": items[0].get("id")})

    # ------------------------------------------------------------------
    # Upload (publishes on completion)
    # ------------------------------------------------------------------
    async def upload(self, file_path: Path, metadata: UploadMetadata, secret: PlatformSecret) -> UploadHandle:
        token = await self.access_token(secret)
        size = file_path.stat().st_size
        title = metadata.title or file_path.stem
        if metadata.upload_type == UploadType.SHORTS.value and "#shorts" not in title.lower():
            title = f"{title} #shorts"
        body = {
            "snippet": {
                "title": title[:100],
                "description": metadata.description or "",
                "categoryId": DEFAULT_CATEGORY_ID,
            },
            "status": {"privacyStatus": self.privacy_status},
        }
        response = await self._request(
            "POST",
            self.upload_url,
            params={"uploadType": "resumable", "part": "snippet,status"},
            json=body,
            headers={
                "Authorization": f"Bearer {token}",
                "X-Upload-Content-Type": VIDEO_CONTENT_TYPE,
                "X-Upload-Content-Length": str(size),
            },
        )
        self._check(response, "upload session")
        session_url = response.headers.get("Location") or response.headers.get("location")
        if not session_url:
            raise VendorError("YouTube did not return an upload session URL", platform=self.name)

        payload = await asyncio.to_thread(file_path.read_bytes)
        response = await self._request(
            "PUT",
            session_url,
            content=payload,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": VIDEO_CONTENT_TYPE,
                "Content-Length": str(size),
            },
        )
        video = self._check(response, "upload")
        video_id = video.get("id")
        if not video_id:
            raise VendorError("YouTube upload response has no video id", platform=self.name)
        url = watch_url(str(video_id), metadata.upload_type)
        logger.info("youtube.upload.done", extra={"video_id": video_id, "bytes": size})
        return UploadHandle(
            platform=self.name,
            upload_id=str(video_id),
            resource_id=str(video_id),
            url=url,
            data={"bytes": size},
        )

    async def publish(self, handle: UploadHandle, secret: PlatformSecret) -> VendorResource:
        return VendorResource(resource_id=handle.resource_id or handle.upload_id, url=handle.url)


__all__ = ["YouTubeClient", "watch_url"]
