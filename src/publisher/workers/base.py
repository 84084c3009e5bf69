"""Shared plumbing for queue workers."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from ..tracing import Tracer

T = TypeVar("T")


class BaseWorker:
    """Sync/async helpers used by every worker."""

    def __init__(self, *, tracer: Tracer, sleep: Callable[[float], Any] | None = None) -> None:
        self.tracer = tracer
        self._sleep = self._wrap_sleep(sleep)
        self._logger = structlog.get_logger(type(self).__module__)

    @staticmethod
    def _wrap_sleep(
        sleep: Callable[[float], Any] | None,
    ) -> Callable[[float], Awaitable[None]]:
        if sleep is None:
            return asyncio.sleep

        async def _async_sleep(seconds: float) -> None:
            result = sleep(seconds)
            if inspect.isawaitable(result):
                await result  # type: ignore[no-any-return]

        return _async_sleep

    @staticmethod
    async def _run_sync(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Execute ``func`` in a worker thread to avoid blocking the event loop."""

        return await asyncio.to_thread(func, *args, **kwargs)

    async def _flush_traces(self) -> bool:
        """Push buffered trace records; failed batches stay queued in the ingestor."""

        flushed = await self._run_sync(self.tracer.flush)
        if not flushed:
            self._logger.warning("trace.flush.incomplete")
        return flushed


__all__ = ["BaseWorker"]
