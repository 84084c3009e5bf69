"""Bounded retries for vendor calls.

A call is retried only for transient failures: HTTP 5xx from the vendor,
well known network error codes and messages that indicate a dropped
connection. Retries stop at ``max_attempts`` or when the per-job deadline
would be crossed, whichever comes first, so queue level redeliveries of the
same job cannot restart the schedule from scratch.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from ..exceptions import VendorError, VendorRetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "EPIPE", "EAI_AGAIN"})
TRANSIENT_MESSAGES = ("socket hang up", "timeout", "connection reset")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25
    budget_seconds: float | None = 300.0

    def backoff_delay(self, attempt: int, *, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry number ``attempt`` (1-based), with +/- jitter."""

        raw = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter <= 0:
            return raw
        factor = 1.0 + self.jitter * (2.0 * rng() - 1.0)
        return max(0.0, raw * factor)


def _error_code(exc: BaseException) -> str | None:
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code.upper()
    err = getattr(exc, "errno", None)
    if isinstance(err, int):
        return errno.errorcode.get(err)
    return None


def is_retriable_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` looks like a transient failure."""

    if isinstance(exc, VendorError):
        if exc.status_code is not None:
            return 500 <= exc.status_code < 600
        if exc.retriable:
            return True
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True

    current: BaseException | None = exc
    while current is not None:
        if _error_code(current) in TRANSIENT_ERROR_CODES:
            return True
        message = str(current).lower()
        if any(pattern in message for pattern in TRANSIENT_MESSAGES):
            return True
        current = current.__cause__
    return False


async def call_with_retries(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    deadline: float | None = None,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
    platform: str | None = None,
) -> tuple[T, int]:
    """Run ``func`` until it succeeds; return ``(result, attempts)``.

    ``deadline`` is a ``clock()`` value past which no further retry starts.
    ``on_retry(attempt, delay, exc)`` is called before each backoff sleep.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(), attempt
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not is_retriable_error(exc):
                raise
            if attempt >= policy.max_attempts:
                raise VendorRetryExhaustedError(
                    f"Gave up after {attempt} attempts: {exc}",
                    attempts=attempt,
                    last_error=exc,
                    platform=platform,
                ) from exc
            delay = policy.backoff_delay(attempt)
            if deadline is not None and clock() + delay > deadline:
                raise VendorRetryExhaustedError(
                    f"Retry budget exhausted after {attempt} attempts: {exc}",
                    attempts=attempt,
                    last_error=exc,
                    platform=platform,
                ) from exc
            logger.warning(
                "vendor.retry attempt=%s delay=%.2f error=%s",
                attempt,
                delay,
                exc,
                extra={"platform": platform, "attempt": attempt, "delay": delay},
            )
            if on_retry is not None:
                on_retry(attempt, delay, exc)
            await sleep(delay)


__all__ = [
    "RetryPolicy",
    "TRANSIENT_ERROR_CODES",
    "TRANSIENT_MESSAGES",
    "call_with_retries",
    "is_retriable_error",
]
