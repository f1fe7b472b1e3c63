from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when work observes that its cancellation scope was invalidated."""


class CancellationScope:
    """Per-document token that invalidates every outstanding operation.

    Tasks spawned through the scope are cancelled when it is; coroutines that
    wait through :meth:`sleep` or :meth:`run` fail fast with
    :class:`OperationCancelled`. Cancelling twice is a no-op.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task] = set()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    def cancel(self) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        logger.debug("Cancellation scope %s invalidated", self.name or id(self))
        if self._event is not None:
            self._event.set()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(f"Scope {self.name or id(self)} was cancelled")

    def spawn(self, coro: Coroutine[Any, Any, T], *, name: Optional[str] = None) -> "asyncio.Task[T]":
        if self._cancelled:
            coro.close()
            raise OperationCancelled(f"Scope {self.name or id(self)} was cancelled")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active_tasks(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def drain(self) -> None:
        """Wait for every spawned task to finish, whatever its outcome."""
        while self._tasks:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)


    async def sleep(self, delay: float) -> None:
        self.raise_if_cancelled()
        event = self._get_event()
        try:
            await asyncio.wait_for(event.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the scope is cancelled first."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._get_event().wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise OperationCancelled(f"Scope {self.name or id(self)} was cancelled")
