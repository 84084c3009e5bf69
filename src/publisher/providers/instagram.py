"""Instagram Graph API client."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from ..domain.models import MediaType, PlatformSecret, PlatformType, UploadType
from ..exceptions import CredentialValidationError, VendorError
from .base import (
    PlatformClient,
    UploadHandle,
    UploadMetadata,
    VendorResource,
    VerifyResult,
    secret_value,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4 * 1024 * 1024


class InstagramClient(PlatformClient):
    """Create media containers, rupload video bytes and publish them."""

    name = PlatformType.INSTAGRAM.value
    folds_publish = False

    def __init__(
        self,
        *,
        graph_url: str = "https://graph.facebook.com",
        graph_version: str = "19.0",
        rupload_url: str = "https://rupload.facebook.com/ig-api-upload",
        chunk_size: int = CHUNK_SIZE,
        container_poll_attempts: int = 30,
        container_poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout_seconds: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, http_client=http_client)
        self.graph_base = f"{graph_url.rstrip('/')}/v{graph_version}"
        self.rupload_base = f"{rupload_url.rstrip('/')}/v{graph_version}"
        self.chunk_size = chunk_size
        self.container_poll_attempts = container_poll_attempts
        self.container_poll_interval = container_poll_interval
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    @staticmethod
    def _account(secret: PlatformSecret) -> tuple[str, str]:
        account_id = secret_value(secret, "businessAccountId", "business_account_id", "instagramUserId")
        token = secret_value(secret, "accessToken", "access_token")
        if not account_id or not token:
            raise CredentialValidationError(
                "Instagram business account id and access token are required",
                platform=PlatformType.INSTAGRAM.value,
            )
        return account_id, token

    async def verify(self, secret: PlatformSecret) -> VerifyResult:
        account_id, token = self._account(secret)
        app_id = secret_value(secret, "appId", "app_id")
        app_secret = secret_value(secret, "appSecret", "app_secret")

        if app_id and app_secret:
            response = await self._request(
                "GET",
                f"{self.graph_base}/debug_token",
                params={"input_token": token, "access_token": f"{app_id}|{app_secret}"},
            )
            body = self._check(response, "debug_token")
            if not (body.get("data") or {}).get("is_valid"):
                return VerifyResult(valid=False, message="Debug token is not valid")

        response = await self._request(
            "GET",
            f"{self.graph_base}/{account_id}",
            params={"fields": "id,username", "access_token": token},
        )
        body = self._check(response, "account lookup")
        if not body.get("id"):
            return VerifyResult(valid=False, message="Business account is not valid")
        logger.debug("instagram.verify.ok", extra={"account_id": body["id"]})
        return VerifyResult(valid=True, data={"account_id": body["id"], "username": body.get("username")})

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------
    async def upload(self, file_path: Path, metadata: UploadMetadata, secret: PlatformSecret) -> UploadHandle:
        account_id, token = self._account(secret)
        caption = metadata.description or metadata.title

        if metadata.media_type is MediaType.IMAGE:
            if not metadata.media_url:
                raise VendorError(
                    "Instagram image posts require a public media URL",
                    platform=self.name,
                    retriable=False,
                )
            params: dict[str, Any] = {"image_url": metadata.media_url, "access_token": token}
            if caption:
                params["caption"] = caption
            container = await self._create_container(account_id, params)
            return UploadHandle(platform=self.name, upload_id=str(container["id"]))

        params = {
            "media_type": "REELS",
            "upload_type": "resumable",
            "access_token": token,
        }
        if metadata.upload_type == UploadType.CAROUSEL.value:
            params["media_type"] = "VIDEO"
            params["is_carousel_item"] = "true"
        if caption:
            params["caption"] = caption
        container = await self._create_container(account_id, params)
        container_id = str(container["id"])
        upload_url = container.get("uri") or f"{self.rupload_base}/{container_id}"

        sent = await self._rupload(upload_url, file_path, token)
        logger.info(
            "instagram.upload.done",
            extra={"container_id": container_id, "bytes": sent},
        )
        return UploadHandle(platform=self.name, upload_id=container_id, data={"bytes": sent})

    async def _create_container(self, account_id: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", f"{self.graph_base}/{account_id}/media", params=params)
        body = self._check(response, "create container")
        if not body.get("id"):
            raise VendorError("Instagram container response has no id", platform=self.name)
        return body

    async def _rupload(self, upload_url: str, file_path: Path, token: str) -> int:
        total = file_path.stat().st_size
        offset = 0
        with file_path.open("rb") as handle:
            while True:
                chunk = await asyncio.to_thread(handle.read, self.chunk_size)
                if not chunk:
                    break
                response = await self._request(
                    "POST",
                    upload_url,
                    content=chunk,
                    headers={
                        "Authorization": f"OAuth {token}",
                        "offset": str(offset),
                        "file_size": str(total),
                    },
                )
                self._check(response, f"chunk @offset {offset}")
                offset += len(chunk)
        if offset != total:
            raise VendorError(
                f"Upload size mismatch. Sent {offset}, expected {total}",
                platform=self.name,
                retriable=False,
            )
        return offset

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------
    async def publish(self, handle: UploadHandle, secret: PlatformSecret) -> VendorResource:
        account_id, token = self._account(secret)
        await self._wait_until_ready(handle.upload_id, token)
        response = await self._request(
            "POST",
            f"{self.graph_base}/{account_id}/media_publish",
            params={"creation_id": handle.upload_id, "access_token": token},
        )
        body = self._check(response, "media_publish")
        media_id = body.get("id")
        if not media_id:
            raise VendorError("Instagram publish response has no media id", platform=self.name)
        permalink = await self._permalink(str(media_id), token)
        return VendorResource(resource_id=str(media_id), url=permalink)

    async def _wait_until_ready(self, container_id: str, token: str) -> None:
        for _ in range(self.container_poll_attempts):
            response = await self._request(
                "GET",
                f"{self.graph_base}/{container_id}",
                params={"fields": "status_code", "access_token": token},
            )
            status = str(self._check(response, "container status").get("status_code") or "")
            if status in ("", "FINISHED", "PUBLISHED"):
                return
            if status in ("ERROR", "EXPIRED"):
                raise VendorError(
                    f"Instagram container {container_id} is {status}",
                    platform=self.name,
                    code=status,
                    retriable=False,
                )
            await self._sleep(self.container_poll_interval)
        raise VendorError(
            f"Instagram container {container_id} was not ready in time",
            platform=self.name,
            code="ETIMEDOUT",
            retriable=True,
        )

    async def _permalink(self, media_id: str, token: str) -> str | None:
        response = await self._request(
            "GET",
            f"{self.graph_base}/{media_id}",
            params={"fields": "permalink", "access_token": token},
        )
        if response.status_code >= 400:
            logger.warning("instagram.permalink.unavailable", extra={"media_id": media_id})
            return None
        return self._check(response, "permalink").get("permalink")


__all__ = ["InstagramClient", "CHUNK_SIZE"]
