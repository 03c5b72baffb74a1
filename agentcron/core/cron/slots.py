"""SlotManager — FIFO counting semaphore bounding concurrent job executions."""

from __future__ import annotations

import asyncio
from collections import deque


class SlotManager:
    """Counting semaphore with an explicit FIFO wait list.

    ``acquire()`` returns at once while fewer than ``max_concurrent`` slots are
    held; otherwise the caller is queued and resumed strictly in arrival order
    when ``release()`` hands a slot over.
    """

    def __init__(self, max_concurrent: int = 3):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max = max_concurrent
        self._held = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def max_concurrent(self) -> int:
        return self._max

    @property
    def held(self) -> int:
        return self._held

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self._held < self._max and not self.waiting:
            self._held += 1
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over just before cancellation; pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if self._held <= 0:
            raise RuntimeError("release() called with no slot held")
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Hand-off: held count stays the same
                fut.set_result(None)
                return
        self._held -= 1

    async def __aenter__(self) -> SlotManager:
        await self.acquire()
        return self

    async def __aexit__(self, *exc) -> None:
        self.release()
