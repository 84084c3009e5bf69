"""Abstract vendor client definition."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from ..domain.models import MediaType, PlatformSecret
from ..exceptions import VendorAuthError, VendorError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VerifyResult:
    """Outcome of a credential check against the vendor."""

    valid: bool
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UploadMetadata:
    title: str | None = None
    description: str | None = None
    upload_type: str | None = None
    media_type: MediaType = MediaType.VIDEO
    media_url: str | None = None


@dataclass(slots=True)
class UploadHandle:
    """Vendor side reference returned by :meth:`PlatformClient.upload`."""

    platform: str
    upload_id: str
    resource_id: str | None = None
    url: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class VendorResource:
    resource_id: str
    url: str | None = None


def secret_value(secret: PlatformSecret, *keys: str) -> str | None:
    """Return the first non-empty value among ``keys`` in data, then tokens."""

    for source in (secret.data, secret.tokens):
        for key in keys:
            value = source.get(key)
            if value not in (None, ""):
                return str(value)
    return None


class PlatformClient(ABC):
    """Base interface for platform vendor clients.

    ``folds_publish`` is set by vendors whose upload call already returns a
    published resource; :meth:`publish` then only converts the handle.
    """

    name: str = ""
    folds_publish: bool = False

    def __init__(
        self,
        *,
        timeout_seconds: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._client = http_client

    @abstractmethod
    async def verify(self, secret: PlatformSecret) -> VerifyResult:
        """Check that ``secret`` grants access to the vendor account."""

    @abstractmethod
    async def upload(self, file_path: Path, metadata: UploadMetadata, secret: PlatformSecret) -> UploadHandle:
        """Transfer the prepared file to the vendor."""

    @abstractmethod
    async def publish(self, handle: UploadHandle, secret: PlatformSecret) -> VendorResource:
        """Make an uploaded resource publicly visible."""

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.request(method, url, **kwargs)

    def _check(self, response: httpx.Response, action: str) -> dict[str, Any]:
        """Return the JSON body or raise a typed vendor error."""

        if response.status_code in (401, 403):
            raise VendorAuthError(
                f"{self.name} {action} rejected credentials: {extract_error(response)}",
                platform=self.name,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            detail = extract_error(response)
            logger.error(
                "%s.response.error status=%s detail=%s",
                self.name,
                response.status_code,
                detail,
                extra={"platform": self.name, "action": action, "status_code": response.status_code},
            )
            raise VendorError(
                f"{self.name} {action} failed (status={response.status_code}): {detail}",
                platform=self.name,
                status_code=response.status_code,
                retriable=response.status_code >= 500 or response.status_code == 429,
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise VendorError(
                f"{self.name} {action} returned invalid JSON",
                platform=self.name,
                status_code=response.status_code,
            ) from exc
        return data if isinstance(data, dict) else {"data": data}


def extract_error(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        message = str(error.get("message") or "").strip()
        status = str(error.get("status") or error.get("type") or "").strip()
        return " ".join(part for part in (status, message) if part)
    if isinstance(error, str):
        description = data.get("error_description")
        return f"{error} {description}".strip() if description else error
    return str(data)[:500]


__all__ = [
    "PlatformClient",
    "UploadHandle",
    "UploadMetadata",
    "VendorResource",
    "VerifyResult",
    "extract_error",
    "secret_value",
]
