from __future__ import annotations

import asyncio
import logging
from typing import Any

import asyncpg

from ..store.schema import NOTIFY_CHANNEL
from .base import EventPublisher
from .events import ChangeEvent

logger = logging.getLogger(__name__)


class PostgresOutboxRelay:
    """Moves trigger-written `rag_outbox` rows onto the change bus.

    A dedicated connection LISTENs on the notification channel; every
    notification (and every `sweep_interval` seconds regardless) claims
    undispatched rows with FOR UPDATE SKIP LOCKED, publishes them and marks
    them dispatched in the same transaction. A failed publish rolls the
    claim back, so rows are never lost, only re-sent.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        publisher: EventPublisher,
        *,
        dsn: str,
        sweep_interval: float = 5.0,
        batch_size: int = 100,
    ):
        self.pool = pool
        self.publisher = publisher
        self.dsn = dsn
        self.sweep_interval = sweep_interval
        self.batch_size = batch_size
        self._wake = asyncio.Event()
        self._listener: asyncpg.Connection | None = None
        self._task: asyncio.Task | None = None
        self.relayed = 0

    def _on_notify(self, _con: Any, _pid: int, _channel: str, _payload: str) -> None:
        self._wake.set()

    async def start(self) -> None:
        self._listener = await asyncpg.connect(self.dsn)
        await self._listener.add_listener(NOTIFY_CHANNEL, self._on_notify)
        self._wake.set()  # drain anything left from before start
        self._task = asyncio.create_task(self._run(), name="outbox-relay")
        logger.info("Outbox relay listening on %s", NOTIFY_CHANNEL)

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            try:
                await self.dispatch_pending()
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                logger.warning("Outbox dispatch failed, retrying on next sweep: %s", e)
            except Exception:
                logger.exception("Outbox publish failed, retrying on next sweep")

    async def dispatch_pending(self) -> int:
        """Relay every undispatched row; returns how many were marked dispatched."""
        total = 0
        while True:
            async with self.pool.acquire() as con:
                async with con.transaction():
                    rows = await con.fetch(
                        """
                        SELECT id, payload FROM rag_outbox
                        WHERE dispatched_at IS NULL
                        ORDER BY id
                        LIMIT $1
                        FOR UPDATE SKIP LOCKED
                        """,
                        self.batch_size,
                    )
                    if not rows:
                        return total
                    for r in rows:
                        event = ChangeEvent.from_payload(r["payload"])
                        if event is not None:
                            await self.publisher.publish(event)
                    await con.execute(
                        "UPDATE rag_outbox SET dispatched_at = now() WHERE id = ANY($1::bigint[])",
                        [r["id"] for r in rows],
                    )
            total += len(rows)
            self.relayed += len(rows)
            logger.debug("Relayed %d outbox rows", len(rows))
            if len(rows) < self.batch_size:
                return total

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._listener is not None:
            await self._listener.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self._listener.close()
            self._listener = None
        logger.info("Outbox relay stopped (relayed=%d)", self.relayed)
