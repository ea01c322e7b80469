from __future__ import annotations

import asyncio
import logging

from .base import Delivery
from .events import ChangeEvent

logger = logging.getLogger(__name__)


class InMemoryChangeBus:
    """Embedded bounded queue for single-node deployments and tests.

    Not durable across restarts; otherwise honours the bus contract:
    nack re-queues after a delay, and events past `max_attempts` land in
    `dead_letters`.
    """

    def __init__(self, *, max_attempts: int = 5, maxsize: int = 0):
        self.max_attempts = max_attempts
        self._queue: asyncio.Queue[Delivery] = asyncio.Queue(maxsize=maxsize)
        self._delayed: set[asyncio.Task] = set()
        self.dead_letters: list[Delivery] = []
        self.published = 0

    async def publish(self, event: ChangeEvent) -> None:
        self.published += 1
        await self._queue.put(Delivery(event=event, attempts=0))

    async def receive(self, timeout: float = 1.0) -> Delivery | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def ack(self, delivery: Delivery) -> None:
        self._queue.task_done()

    async def nack(self, delivery: Delivery, *, delay: float = 0.0) -> bool:
        self._queue.task_done()
        retry = Delivery(event=delivery.event, attempts=delivery.attempts + 1)
        if retry.attempts >= self.max_attempts:
            self.dead_letters.append(retry)
            return False
        if delay <= 0:
            await self._queue.put(retry)
        else:
            task = asyncio.create_task(self._requeue_later(retry, delay))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
        return True

    async def _requeue_later(self, delivery: Delivery, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put(delivery)

    def pending(self) -> int:
        return self._queue.qsize() + len(self._delayed)

    async def join(self) -> None:
        """Wait until every published event (including retries) has been acked or dead-lettered."""
        while True:
            await self._queue.join()
            if not self._delayed:
                return
            await asyncio.gather(*list(self._delayed), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._delayed):
            task.cancel()
        self._delayed.clear()
