"""DeliveryQueue — send now, persist failures and retry with exponential backoff."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from agentcron.core.cron.types import utcnow

if TYPE_CHECKING:
    from agentcron.memory.store import MemoryStore

Sender = Callable[[str, str], Awaitable[None]]


class DeliverySink(Protocol):
    """Where run results go. Returns True when delivered right away."""

    async def deliver(self, target: str | None, text: str) -> bool: ...


def backoff_seconds(attempt: int) -> int:
    """10s, 30s, 90s, 270s, 810s, then capped at 15 minutes."""
    return min(10 * 3**attempt, 900)


class DeliveryQueue:
    """SQLite-backed delivery with retry.

    ``deliver()`` tries the sender immediately.  Failures are written to the
    delivery_queue table and retried by ``process_queue()`` until
    ``max_attempts`` is reached, surviving restarts.
    """

    def __init__(
        self,
        db: MemoryStore,
        sender: Sender | None = None,
        default_target: str | None = None,
        max_attempts: int = 5,
    ):
        self.db = db
        self.sender = sender
        self.default_target = default_target
        self.max_attempts = max_attempts
        self._task: asyncio.Task | None = None

    def on_send(self, sender: Sender) -> None:
        self.sender = sender

    async def deliver(self, target: str | None, text: str) -> bool:
        if self.sender is None:
            logger.warning("No delivery sender configured, dropping message")
            return False
        target = target or self.default_target
        if not target:
            logger.warning("No delivery target and no default target, dropping message")
            return False

        try:
            await self.sender(target, text)
            return True
        except Exception as e:
            delay = backoff_seconds(0)
            self.db.enqueue_delivery(
                target,
                text,
                next_attempt_at=utcnow() + timedelta(seconds=delay),
                error=str(e),
                max_attempts=self.max_attempts,
            )
            logger.warning(f"Delivery to {target} failed, retry in {delay}s: {e}")
            return False

    async def process_queue(self) -> int:
        """Retry due deliveries once. Returns how many succeeded."""
        if self.sender is None:
            return 0
        delivered = 0
        for row in self.db.get_due_deliveries(utcnow()):
            try:
                await self.sender(row.target, row.text)
            except Exception as e:
                attempts = row.attempts + 1
                if attempts >= row.max_attempts:
                    self.db.remove_delivery(row.id)
                    logger.error(
                        f"Delivery {row.id} to {row.target} failed permanently "
                        f"after {attempts} attempts: {e}"
                    )
                else:
                    delay = backoff_seconds(attempts)
                    self.db.reschedule_delivery(
                        row.id, attempts, utcnow() + timedelta(seconds=delay), str(e)
                    )
                    logger.warning(f"Delivery {row.id} retry failed, next in {delay}s: {e}")
                continue
            self.db.remove_delivery(row.id)
            delivered += 1
            logger.info(f"Delivery {row.id} to {row.target} succeeded on retry")
        return delivered

    async def start(self, interval_s: int = 10) -> None:
        """Flush pending deliveries, then keep retrying every ``interval_s``."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(interval_s))
        logger.info(f"DeliveryQueue started (interval={interval_s}s)")

    async def _loop(self, interval_s: int) -> None:
        while True:
            try:
                await self.process_queue()
            except Exception as e:
                logger.error(f"Delivery queue pass failed: {e}")
            await asyncio.sleep(interval_s)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("DeliveryQueue stopped")

    def pending_count(self) -> int:
        return self.db.count_pending_deliveries()
