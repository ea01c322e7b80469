from __future__ import annotations

import logging
import time

import redis.asyncio as redis

from .base import Delivery, decode_envelope, encode_envelope
from .events import ChangeEvent

logger = logging.getLogger(__name__)


class RedisChangeBus:
    """Durable change bus on Redis lists (reliable-queue pattern).

    Keys, all derived from `queue_name`:
      <q>             pending envelopes (LPUSH in, BLMOVE out from the right)
      <q>:processing  envelopes handed to a worker and not yet acked
      <q>:delayed     sorted set of envelopes waiting for a retry, scored by due time
      <q>:dead        envelopes that exhausted `max_attempts`
    """

    def __init__(self, client: redis.Redis, *, queue_name: str = "vectornode:events", max_attempts: int = 5):
        self.r = client
        self.max_attempts = max_attempts
        self.queue = queue_name
        self.processing = f"{queue_name}:processing"
        self.delayed = f"{queue_name}:delayed"
        self.dead = f"{queue_name}:dead"

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisChangeBus":
        return cls(redis.from_url(url), **kwargs)

    async def recover(self) -> int:
        """Return envelopes orphaned in the processing list (worker crash) to the queue.

        Only call while no other consumer of this queue is running.
        """
        moved = 0
        while await self.r.lmove(self.processing, self.queue, "RIGHT", "LEFT") is not None:
            moved += 1
        if moved:
            logger.warning("Recovered %d in-flight events from %s", moved, self.processing)
        return moved

    async def publish(self, event: ChangeEvent) -> None:
        await self.r.lpush(self.queue, encode_envelope(event))

    async def _promote_due(self) -> None:
        now = time.time()
        due = await self.r.zrangebyscore(self.delayed, "-inf", now)
        for raw in due:
            # zrem guards against two consumers promoting the same envelope
            if await self.r.zrem(self.delayed, raw):
                await self.r.lpush(self.queue, raw)

    async def receive(self, timeout: float = 1.0) -> Delivery | None:
        await self._promote_due()
        raw = await self.r.blmove(self.queue, self.processing, timeout, "RIGHT", "LEFT")
        if raw is None:
            return None
        event, attempts = decode_envelope(raw)
        if event is None:
            logger.warning("Dropping undecodable envelope from %s", self.queue)
            await self.r.lrem(self.processing, 1, raw)
            return None
        return Delivery(event=event, attempts=attempts, token=raw)

    async def ack(self, delivery: Delivery) -> None:
        await self.r.lrem(self.processing, 1, delivery.token)

    async def nack(self, delivery: Delivery, *, delay: float = 0.0) -> bool:
        attempts = delivery.attempts + 1
        env = encode_envelope(delivery.event, attempts)
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing, 1, delivery.token)
            if attempts >= self.max_attempts:
                pipe.lpush(self.dead, env)
            else:
                pipe.zadd(self.delayed, {env: time.time() + max(0.0, delay)})
            await pipe.execute()
        return attempts < self.max_attempts

    async def dead_letter_count(self) -> int:
        return int(await self.r.llen(self.dead))

    async def close(self) -> None:
        await self.r.aclose()
