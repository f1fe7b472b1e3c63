from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

from pagenarrator.cancellation import CancellationScope, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _QueuedTask:
    task: Callable[[], Awaitable[Any]]
    scope: Optional[CancellationScope]
    future: "asyncio.Future[Any]"
    running: Optional[asyncio.Task] = None


class RateLimitedTaskQueue:
    """FIFO task queue bounded by concurrency and by a minimum dispatch interval.

    ``submit`` resolves with the task's result. Dispatch is re-evaluated after
    every completion and whenever the interval timer fires; queued tasks whose
    scope has been cancelled are rejected with :class:`OperationCancelled`
    without running.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        min_interval: float = 0.3,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        if min_interval < 0:
            raise ValueError("min_interval cannot be negative")
        self.max_concurrent = max_concurrent
        self.min_interval = min_interval
        self._clock = clock
        self._queue: Deque[_QueuedTask] = deque()
        self._active = 0
        self._last_dispatch: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def submit(self, task: Callable[[], Awaitable[T]], scope: Optional[CancellationScope] = None) -> T:
        if scope is not None:
            scope.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        item = _QueuedTask(task=task, scope=scope, future=loop.create_future())
        self._queue.append(item)
        remove_callback = scope.add_callback(self._process) if scope is not None else None
        self._process()
        try:
            return await item.future
        except asyncio.CancelledError:
            if item.running is not None and not item.running.done():
                item.running.cancel()
            raise
        finally:
            if remove_callback is not None:
                remove_callback()

    # Internal helpers -------------------------------------------------
    def _reject_stale(self) -> None:
        if not any(item.future.done() or (item.scope is not None and item.scope.cancelled) for item in self._queue):
            return
        survivors: Deque[_QueuedTask] = deque()
        for item in self._queue:
            if item.future.done():
                continue
            if item.scope is not None and item.scope.cancelled:
                item.future.set_exception(OperationCancelled("Queued task belongs to a cancelled scope"))
                continue
            survivors.append(item)
        self._queue = survivors

    def _on_timer(self) -> None:
        self._timer = None
        self._process()

    def _process(self) -> None:
        while True:
            self._reject_stale()
            if not self._queue or self._active >= self.max_concurrent:
                return
            if self._timer is not None:
                return

            now = self._clock()
            if self._last_dispatch is not None:
                wait = self.min_interval - (now - self._last_dispatch)
                if wait > 0:
                    loop = asyncio.get_running_loop()
                    self._timer = loop.call_later(wait, self._on_timer)
                    return

            item = self._queue.popleft()
            self._active += 1
            self._last_dispatch = now
            item.running = asyncio.get_running_loop().create_task(self._run(item))

    async def _run(self, item: _QueuedTask) -> None:
        try:
            result = await item.task()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
        except Exception as exc:
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active -= 1
            self._process()
