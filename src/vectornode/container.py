from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from .bus.base import ChangeBus
from .bus.memory import InMemoryChangeBus
from .chunking import ChunkingConfig
from .errors import MemoryServiceError
from .ingest import IngestService
from .llm import LLMClients, ProviderConfig, build_llm_clients, unconfigured_llm_clients
from .query import QueryEngine
from .settings import Settings
from .store.base import Store
from .store.memory import InMemoryStore
from .worker import IngestionWorker, WorkerPool

logger = logging.getLogger(__name__)


def provider_config_for(settings: Settings, saved: dict[str, Any] | None = None) -> ProviderConfig:
    """Environment provider config, overlaid with the active saved setup if any."""
    if not saved:
        return ProviderConfig.from_settings(settings)
    cfg = ProviderConfig.from_settings(
        settings,
        provider=saved.get("provider"),
        chat_model=saved.get("model_name"),
        embed_model=saved.get("embed_model_name"),
        api_key=saved.get("api_key"),
    )
    # a saved setup without base_url means "provider default", not the env value
    return cfg.with_overrides(base_url=saved.get("base_url"))


async def build_bus(settings: Settings) -> ChangeBus:
    if settings.bus_backend == "memory":
        return InMemoryChangeBus(max_attempts=settings.worker_max_attempts)
    from .bus.redis_bus import RedisChangeBus

    return RedisChangeBus.from_url(
        settings.redis_url, queue_name=settings.bus_queue_name, max_attempts=settings.worker_max_attempts
    )


class Container:
    """Process root: owns the store, the bus, the LLM clients and the services built on them."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        bus: ChangeBus,
        llm: LLMClients,
        *,
        relay: Any = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.store = store
        self.bus = bus
        self.llm = llm
        self.relay = relay
        self.transport = transport
        self.ingest = IngestService(store, llm)
        self.query = QueryEngine(store, llm, max_limit=settings.query_max_limit)
        self.worker = IngestionWorker(
            store, llm, chunking=ChunkingConfig(chunk_size=settings.chunk_size, overlap=settings.chunk_overlap)
        )
        self.pool = WorkerPool(
            bus,
            self.worker,
            size=settings.worker_pool_size,
            backoff_seconds=settings.worker_backoff_seconds,
        )

    @classmethod
    async def build(
        cls,
        settings: Settings,
        *,
        store: Store | None = None,
        bus: ChangeBus | None = None,
        llm: LLMClients | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "Container":
        bus = bus or await build_bus(settings)
        relay = None
        if store is None:
            if settings.store_backend == "memory":
                store = InMemoryStore(publisher=bus, embedding_dim=settings.embedding_dim)
            else:
                from .bus.relay import PostgresOutboxRelay
                from .store.postgres import PostgresStore

                store = await PostgresStore.connect(
                    settings.database_url,
                    embedding_dim=settings.embedding_dim,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                )
                relay = PostgresOutboxRelay(store.pool, bus, dsn=settings.database_url)
        if llm is None:
            llm = await cls._resolve_llm(settings, store, transport=transport)
        return cls(settings, store, bus, llm, relay=relay, transport=transport)

    @staticmethod
    async def _resolve_llm(
        settings: Settings, store: Store, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> LLMClients:
        saved = await store.active_setup_config()
        try:
            cfg = provider_config_for(settings, saved)
        except MemoryServiceError as e:
            logger.warning("LLM provider not configured (%s); POST /api/setup to configure", e)
            return unconfigured_llm_clients(
                f"LLM provider is not configured: {e}", embedding_dim=settings.embedding_dim
            )
        if saved:
            logger.info("Using saved provider setup %s", cfg.provider.value)
        return build_llm_clients(cfg, transport=transport)

    def set_llm(self, llm: LLMClients) -> LLMClients:
        """Swap the LLM clients used by every service; returns the previous pair."""
        old = self.llm
        self.llm = llm
        self.ingest.llm = llm
        self.query.llm = llm
        self.worker.llm = llm
        return old

    async def start(self, *, run_pool: bool) -> None:
        if self.relay is not None:
            await self.relay.start()
        if run_pool:
            await self.pool.start()

    async def stop(self, *, drain_timeout: float | None = 30.0) -> None:
        await self.pool.stop(drain_timeout=drain_timeout)
        if self.relay is not None:
            await self.relay.stop()
        await self.bus.close()
        await self.store.close()
        await self.llm.aclose()

    def health(self) -> dict[str, Any]:
        cfg = self.llm.config
        return {
            "ok": True,
            "host": os.uname().nodename,
            "store": self.settings.store_backend,
            "bus": self.settings.bus_backend,
            "llm_provider": cfg.provider.value if cfg else None,
            "pool": self.pool.stats.to_dict() if self.pool.running else None,
        }
