"""
Bounded-parallelism primitive for async work.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    Runs at most `max_concurrent` tasks at once; the rest wait in FIFO order.

    An explicit waiter queue is used instead of asyncio.Semaphore because
    Semaphore does not guarantee FIFO handoff on every supported Python.

    A finishing task hands its slot straight to the oldest waiter, so a newly
    submitted task can never overtake one that is already queued.

    Usage:
        limiter = ConcurrencyLimiter(3, name="ocr")
        text = await limiter.run(lambda: engine_call(region))
    """

    def __init__(self, max_concurrent: int, name: str = "limiter"):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.max_concurrent = max_concurrent
        self.name = name
        self._running = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._waiters)

    async def _acquire(self) -> None:
        if self._running < self.max_concurrent and not self._waiters:
            self._running += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"[{self.name}] queued (running={self._running}, queued={len(self._waiters)})")
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was already handed over; pass it on
                self._release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot over; running count is unchanged
                waiter.set_result(None)
                return
        self._running -= 1

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run a zero-argument async task under the limit.

        Args:
            task: Callable returning an awaitable

        Returns:
            The task's result; its exception propagates unchanged
        """
        await self._acquire()
        try:
            return await task()
        finally:
            self._release()
