from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

from pagenarrator.cancellation import CancellationScope

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RenderError(RuntimeError):
    """Raised when the local raster/text primitive fails for a page."""


class RenderTimeoutError(RenderError):
    """Raised when the raster/text primitive exceeds its time budget."""


class RenderSerializer:
    """Runs blocking render calls one at a time, in arrival order.

    The underlying renderer is not safe for concurrent use, so the lock is
    held until the worker thread has returned, even when the awaiting
    coroutine gave up early because of a timeout or cancellation.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._in_flight = 0
        self._completed = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def completed(self) -> int:
        return self._completed

    async def drain(self) -> None:
        """Wait until no render call, including an abandoned one, holds the renderer."""
        async with self._lock:
            pass

    async def run(
        self,
        func: Callable[..., T],
        *args: Any,
        timeout: Optional[float] = None,
        scope: Optional[CancellationScope] = None,
        label: str = "render",
    ) -> T:
        if scope is not None:
            scope.raise_if_cancelled()
        await self._lock.acquire()
        try:
            if scope is not None:
                scope.raise_if_cancelled()
        except BaseException:
            self._lock.release()
            raise

        self._in_flight += 1
        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        work.add_done_callback(self._finish)
        try:
            done, _ = await asyncio.wait({work}, timeout=timeout)
        except asyncio.CancelledError:
            logger.debug("%s abandoned while the renderer is still busy", label)
            raise
        if work not in done:
            raise RenderTimeoutError(f"Timed out after {timeout:.1f}s during {label}")
        exc = work.exception()
        if exc is not None:
            if isinstance(exc, RenderError):
                raise exc
            raise RenderError(f"{label} failed: {exc}") from exc
        return work.result()

    def _finish(self, work: "asyncio.Future[Any]") -> None:
        self._in_flight -= 1
        self._completed += 1
        if not work.cancelled():
            # Retrieve the exception so abandoned failures are not reported as unhandled.
            work.exception()
        self._lock.release()
