from __future__ import annotations

import asyncio
import logging
import signal
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from .bus.base import ChangeBus, Delivery
from .bus.events import ChangeEvent, EventType
from .chunking import ChunkingConfig, chunk_text
from .errors import MemoryServiceError, NotFoundError, StoreFailedError
from .llm import LLMClients, LlmExtractor
from .llm.extraction import ExtractedEntity
from .models import ContextRow
from .settings import LOG_FORMAT, Settings, load_settings
from .store.base import Store

logger = logging.getLogger(__name__)


@dataclass
class ContextOutcome:
    entities_created: int = 0
    entities_linked: int = 0
    entities_skipped: int = 0
    relations_upserted: int = 0
    relations_dropped: int = 0


class IngestionWorker:
    """Event handlers for the enrichment pipeline.

    KB_CREATED: chunk -> embed each chunk -> one batched insert_contexts.
    CONTEXT_CREATED: extract -> embed + find_or_link each entity -> upsert relations.

    Both handlers are idempotent under redelivery: chunking is deterministic,
    contexts are unique on (kb_id, chunk_index), entities on name, and relation
    observations on (relation, context).
    """

    def __init__(
        self,
        store: Store,
        llm: LLMClients,
        *,
        chunking: ChunkingConfig | None = None,
        embed_concurrency: int = 8,
    ):
        self.store = store
        self.llm = llm
        self.chunking = chunking or ChunkingConfig()
        self._embed_sem = asyncio.Semaphore(max(1, embed_concurrency))

    async def _embed(self, text: str) -> list[float]:
        async with self._embed_sem:
            return await self.llm.embedder.embed(text)

    async def handle(self, event: ChangeEvent) -> Any:
        if event.type is EventType.KB_CREATED:
            return await self.handle_kb_created(event.id, event.text)
        if event.type is EventType.CONTEXT_CREATED:
            return await self.handle_context_created(event.id, event.kb_id or "", event.text)
        logger.warning("No handler for event type %s", event.type)
        return None

    async def handle_kb_created(self, kb_id: str, content: str) -> list[str]:
        chunks = chunk_text(content, self.chunking)
        if not chunks:
            logger.warning("KB %s has no chunkable content", kb_id)
            return []

        # Any embedding failure fails the whole event so that a retry
        # re-produces the full contiguous [0, N) range.
        vectors = await asyncio.gather(*(self._embed(c) for c in chunks))
        total = len(chunks)
        rows = [
            ContextRow(
                text=chunk,
                vector=vec,
                chunk_index=i,
                metadata={
                    "source_kb_id": kb_id,
                    "kb_id": kb_id,
                    "chunk_index": i,
                    "total_chunks": total,
                    "chunk_length": len(chunk),
                },
            )
            for i, (chunk, vec) in enumerate(zip(chunks, vectors))
        ]
        try:
            ids = await self.store.insert_contexts(kb_id, rows)
        except NotFoundError:
            logger.warning("KB %s no longer exists; skipping chunking", kb_id)
            return []
        logger.info("KB %s chunked into %d contexts", kb_id, total)
        return ids

    async def _link_entity(self, ent: ExtractedEntity, context_id: str, kb_id: str) -> tuple[str, bool]:
        vec = await self._embed(f"{ent.name} {ent.description}".strip())
        return await self.store.find_or_link_entity(
            ent.name,
            context_id,
            vector=vec,
            metadata={
                "type": ent.type,
                "description": ent.description,
                "source_kb_id": kb_id,
                "source_context_id": context_id,
                "extraction_method": "llm",
            },
        )

    async def handle_context_created(self, context_id: str, kb_id: str, text: str) -> ContextOutcome:
        outcome = ContextOutcome()
        result = await LlmExtractor(self.llm.chat).extract(text)
        if result.is_empty:
            logger.info("Context %s: nothing extracted", context_id)
            return outcome

        unique: dict[str, ExtractedEntity] = {}
        for ent in result.entities:
            unique.setdefault(ent.name, ent)
        entities = list(unique.values())

        linked = await asyncio.gather(
            *(self._link_entity(e, context_id, kb_id) for e in entities), return_exceptions=True
        )
        ids: dict[str, str] = {}
        for ent, res in zip(entities, linked):
            if isinstance(res, StoreFailedError):
                # store outage: let the bus retry the whole event
                raise res
            if isinstance(res, MemoryServiceError):
                outcome.entities_skipped += 1
                logger.warning("Context %s: skipping entity %r: %s", context_id, ent.name, res)
                continue
            if isinstance(res, BaseException):
                raise res
            entity_id, created = res
            if created:
                outcome.entities_created += 1
            else:
                outcome.entities_linked += 1
            ids.setdefault(ent.name.lower(), entity_id)

        for rel in result.relations:
            src = ids.get(rel.source_name.lower())
            dst = ids.get(rel.target_name.lower())
            if src is None or dst is None:
                outcome.relations_dropped += 1
                logger.warning(
                    "Context %s: dropping relation %s -[%s]-> %s with unknown endpoint",
                    context_id,
                    rel.source_name,
                    rel.relation_type,
                    rel.target_name,
                )
                continue
            try:
                await self.store.upsert_relation(
                    src,
                    dst,
                    rel.relation_type,
                    context_id=context_id,
                    metadata={"source_context_id": context_id, "source_kb_id": kb_id},
                )
            except StoreFailedError:
                raise
            except MemoryServiceError as e:
                outcome.relations_dropped += 1
                logger.warning("Context %s: skipping relation %s: %s", context_id, rel.relation_type, e)
                continue
            outcome.relations_upserted += 1

        logger.info(
            "Context %s extracted: %d new entities, %d linked, %d relations",
            context_id,
            outcome.entities_created,
            outcome.entities_linked,
            outcome.relations_upserted,
        )
        return outcome


@dataclass
class PoolStats:
    received: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    in_flight: int = 0
    by_type: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "in_flight": self.in_flight,
            "by_type": dict(self.by_type),
        }


def retry_delay(attempts: int, base: float, cap: float = 60.0) -> float:
    """Exponential backoff for the n-th failed attempt (0-based), capped."""
    return min(cap, base * (2**attempts))


class WorkerPool:
    """Consumes the change bus with at most `size` events in flight.

    A failing handler nacks its event with exponential backoff; the bus
    dead-letters it once `max_attempts` is reached. `stop()` stops taking new
    events and drains the in-flight ones to ack or nack.
    """

    def __init__(
        self,
        bus: ChangeBus,
        worker: IngestionWorker,
        *,
        size: int = 4,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        poll_timeout: float = 1.0,
    ):
        if size <= 0:
            raise ValueError("pool size must be positive")
        self.bus = bus
        self.worker = worker
        self.size = size
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.poll_timeout = poll_timeout
        self.stats = PoolStats()
        self._slots = asyncio.Semaphore(size)
        self._tasks: set[asyncio.Task] = set()
        self._consumer: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="worker-pool")
        logger.info("Worker pool started (size=%d)", self.size)

    async def _consume(self) -> None:
        while True:
            await self._slots.acquire()
            try:
                delivery = await self.bus.receive(timeout=self.poll_timeout)
            except asyncio.CancelledError:
                self._slots.release()
                raise
            except Exception:
                self._slots.release()
                logger.exception("Bus receive failed; backing off")
                await asyncio.sleep(self.poll_timeout)
                continue
            if delivery is None:
                self._slots.release()
                continue
            task = asyncio.create_task(self.process(delivery))
            self._tasks.add(task)
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._slots.release()

    async def process(self, delivery: Delivery) -> bool:
        """Handle one delivery and settle it on the bus. Returns True on success."""
        event = delivery.event
        self.stats.received += 1
        self.stats.in_flight += 1
        self.stats.by_type[event.type.value] += 1
        try:
            await self.worker.handle(event)
        except asyncio.CancelledError:
            await asyncio.shield(self.bus.nack(delivery))
            raise
        except Exception as e:
            delay = retry_delay(delivery.attempts, self.backoff_seconds, self.max_backoff_seconds)
            if await self.bus.nack(delivery, delay=delay):
                self.stats.retried += 1
                logger.warning(
                    "%s %s failed (attempt %d), retrying in %.1fs: %s",
                    event.type.value,
                    event.id,
                    delivery.attempts + 1,
                    delay,
                    e,
                )
            else:
                self.stats.dead_lettered += 1
                logger.error(
                    "%s %s dead-lettered after %d attempts: %s",
                    event.type.value,
                    event.id,
                    delivery.attempts + 1,
                    e,
                )
            return False
        else:
            await self.bus.ack(delivery)
            self.stats.succeeded += 1
            return True
        finally:
            self.stats.in_flight -= 1

    async def stop(self, *, drain_timeout: float | None = None) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Worker pool stopped: %s", self.stats.to_dict())


async def run_worker(settings: Settings | None = None, *, recover: bool = False) -> None:
    """Standalone worker process: relay (Postgres store) + pool, until SIGINT/SIGTERM."""
    from .container import Container

    settings = settings or load_settings()
    container = await Container.build(settings)
    if recover:
        recover_bus = getattr(container.bus, "recover", None)
        if recover_bus is not None:
            await recover_bus()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await container.start(run_pool=True)
        await stop.wait()
    finally:
        await container.stop()


def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
