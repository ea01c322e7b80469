import asyncio

import pytest
from conftest import ConceptEmbedder, ScriptedChatModel, extraction_json

from vectornode.bus.events import ChangeEvent
from vectornode.chunking import ChunkingConfig
from vectornode.errors import EmbedFailedError, StoreFailedError
from vectornode.llm import LLMClients
from vectornode.models import ContextRow, Role
from vectornode.worker import IngestionWorker, WorkerPool, retry_delay

JOHN_AT_GOOGLE = extraction_json(
    entities=[("John", "PERSON"), ("Google", "ORGANIZATION")],
    relations=[("John", "Google", "WORKS_FOR")],
)


class FailingEmbedder(ConceptEmbedder):
    """Fails for any text containing `needle`."""

    def __init__(self, needle: str = ""):
        super().__init__()
        self.needle = needle

    async def embed(self, text: str) -> list[float]:
        if self.needle in text:
            raise EmbedFailedError(f"cannot embed {text!r}")
        return await super().embed(text)


async def _kb_with_contexts(store, texts):
    kb_id = await store.insert_kb(user_id="u1", role=Role.USER, content=" ".join(texts), vector=[1.0] * 8, metadata={})
    rows = [ContextRow(text=t, vector=[1.0] * 8, chunk_index=i) for i, t in enumerate(texts)]
    return kb_id, await store.insert_contexts(kb_id, rows)


async def _snapshot(store):
    return (
        sorted((c.kb_id, c.chunk_index, c.text) for c in store.contexts.values()),
        sorted(e.name for e in store.entities.values()),
        sorted(store.links),
        sorted((r.source_id, r.target_id, r.relation_type, r.edge_weight) for r in store.relations.values()),
    )


@pytest.mark.asyncio
async def test_kb_handler_writes_contiguous_chunks_with_metadata(store, llm):
    worker = IngestionWorker(store, llm, chunking=ChunkingConfig(chunk_size=1000, overlap=200))
    content = "x" * 2500
    kb_id = await store.insert_kb(user_id="u1", role=Role.USER, content=content, vector=[1.0] * 8, metadata={})

    ids = await worker.handle_kb_created(kb_id, content)

    contexts = await store.contexts_of_kb(kb_id)
    assert [c.id for c in contexts] == ids
    assert [c.chunk_index for c in contexts] == [0, 1, 2]
    meta = contexts[1].metadata
    assert meta["source_kb_id"] == kb_id
    assert meta["total_chunks"] == 3
    assert meta["chunk_index"] == 1
    assert meta["chunk_length"] == len(contexts[1].text)


@pytest.mark.asyncio
async def test_kb_handler_redelivery_adds_nothing(store, worker, bus):
    kb_id = await store.insert_kb(user_id="u1", role=Role.USER, content="Hello world.", vector=[1.0] * 8, metadata={})

    first = await worker.handle_kb_created(kb_id, "Hello world.")
    published = bus.published
    second = await worker.handle_kb_created(kb_id, "Hello world.")

    assert first == second
    assert bus.published == published


@pytest.mark.asyncio
async def test_kb_handler_for_deleted_kb_is_skipped(worker):
    assert await worker.handle_kb_created("gone", "Hello world.") == []


@pytest.mark.asyncio
async def test_kb_handler_fails_whole_event_on_embed_failure(store, chat):
    worker = IngestionWorker(store, LLMClients(config=None, embedder=FailingEmbedder("b"), chat=chat), chunking=ChunkingConfig(chunk_size=200, overlap=0))
    content = ("a" * 199 + " ") + ("b" * 199)
    kb_id = await store.insert_kb(user_id="u1", role=Role.USER, content=content, vector=[1.0] * 8, metadata={})

    with pytest.raises(EmbedFailedError):
        await worker.handle_kb_created(kb_id, content)
    assert await store.contexts_of_kb(kb_id) == []


@pytest.mark.asyncio
async def test_entity_dedup_and_relation_upsert(store, llm, chat, worker):
    chat.reply = JOHN_AT_GOOGLE
    kb_id, (c1, c2) = await _kb_with_contexts(store, ["John works at Google.", "John works at Google."])

    await worker.handle_context_created(c1, kb_id, "John works at Google.")
    outcome = await worker.handle_context_created(c2, kb_id, "John works at Google.")

    assert sorted(e.name for e in store.entities.values()) == ["Google", "John"]
    assert outcome.entities_linked == 2 and outcome.entities_created == 0
    (rel,) = store.relations.values()
    assert (rel.relation_type, rel.edge_weight) == ("WORKS_FOR", 2)
    john = await store.get_entity_by_name("John")
    assert john.type == "PERSON"
    assert {c.id for c in await store.contexts_of_entity(john.id)} == {c1, c2}


@pytest.mark.asyncio
async def test_context_redelivery_keeps_weight(store, chat, worker):
    chat.reply = JOHN_AT_GOOGLE
    kb_id, (c1, c2) = await _kb_with_contexts(store, ["John works at Google.", "John works at Google."])

    for ctx in (c1, c2, c1, c2):
        await worker.handle_context_created(ctx, kb_id, "John works at Google.")

    (rel,) = store.relations.values()
    assert rel.edge_weight == 2


@pytest.mark.asyncio
async def test_relation_endpoints_match_case_insensitively(store, chat, worker):
    chat.reply = extraction_json(
        entities=[("Ada", "PERSON"), ("Analytical Engine", "CONCEPT")],
        relations=[("ada", "analytical engine", "designed"), ("Ada", "Babbage", "KNOWS")],
    )
    kb_id, (c,) = await _kb_with_contexts(store, ["Ada designed programs for the Analytical Engine."])

    outcome = await worker.handle_context_created(c, kb_id, "...")

    assert outcome.relations_upserted == 1
    assert outcome.relations_dropped == 1
    (rel,) = store.relations.values()
    assert rel.relation_type == "DESIGNED"
    assert store.entities[rel.source_id].name == "Ada"


@pytest.mark.asyncio
async def test_entity_embed_failure_skips_only_that_entity(store):
    chat = ScriptedChatModel(
        extraction_json(entities=[("Good", "OTHER"), ("Bad", "OTHER")], relations=[("Good", "Bad", "LIKES")])
    )
    worker = IngestionWorker(store, LLMClients(config=None, embedder=FailingEmbedder("Bad"), chat=chat))
    kb_id, (c,) = await _kb_with_contexts(store, ["Good and Bad."])

    outcome = await worker.handle_context_created(c, kb_id, "Good and Bad.")

    assert outcome.entities_created == 1 and outcome.entities_skipped == 1
    assert outcome.relations_dropped == 1
    assert [e.name for e in store.entities.values()] == ["Good"]


@pytest.mark.asyncio
async def test_store_outage_fails_the_event(store, chat, worker, monkeypatch):
    chat.reply = JOHN_AT_GOOGLE
    kb_id, (c,) = await _kb_with_contexts(store, ["John works at Google."])

    async def down(*args, **kwargs):
        raise StoreFailedError("connection refused")

    monkeypatch.setattr(store, "find_or_link_entity", down)
    with pytest.raises(StoreFailedError):
        await worker.handle_context_created(c, kb_id, "John works at Google.")


@pytest.mark.asyncio
async def test_malformed_extraction_completes_without_entities(store, chat, worker):
    chat.reply = "``` not json ```"
    kb_id, (c,) = await _kb_with_contexts(store, ["Some chunk."])

    outcome = await worker.handle_context_created(c, kb_id, "Some chunk.")

    assert outcome.entities_created == 0
    assert store.entities == {} and store.relations == {}
    assert [ctx.id for ctx, _ in await store.knn_contexts([1.0] * 8, 5)] == [c]


@pytest.mark.asyncio
async def test_pool_runs_the_pipeline_and_replay_is_idempotent(store, bus, chat, worker, pool):
    chat.reply = JOHN_AT_GOOGLE
    await store.insert_kb(user_id="u1", role=Role.USER, content="John works at Google.", vector=[1.0] * 8, metadata={})

    await pool.start()
    await asyncio.wait_for(bus.join(), timeout=5)
    await pool.stop()

    assert pool.stats.succeeded == 2
    assert pool.stats.by_type == {"KB_CREATED": 1, "CONTEXT_CREATED": 1}
    before = await _snapshot(store)
    assert before[3][0][3] == 1

    for kb in list(store.kbs.values()):
        await worker.handle(ChangeEvent.kb_created(kb.id, kb.content))
    for ctx in list(store.contexts.values()):
        await worker.handle(ChangeEvent.context_created(ctx.id, ctx.kb_id, ctx.text))

    assert await _snapshot(store) == before


@pytest.mark.asyncio
async def test_pool_dead_letters_after_max_attempts(store, bus, chat):
    worker = IngestionWorker(store, LLMClients(config=None, embedder=FailingEmbedder(), chat=chat))
    pool = WorkerPool(bus, worker, size=2, backoff_seconds=0.0, poll_timeout=0.05)
    await store.insert_kb(user_id="u1", role=Role.USER, content="Hello world.", vector=[1.0] * 8, metadata={})

    await pool.start()
    await asyncio.wait_for(bus.join(), timeout=5)
    await pool.stop()

    assert pool.stats.received == 3
    assert pool.stats.retried == 2
    assert pool.stats.dead_lettered == 1
    assert len(bus.dead_letters) == 1
    assert store.contexts == {}


@pytest.mark.asyncio
async def test_pool_bounds_in_flight_handlers(bus, store):
    active = 0
    peak = 0

    class SlowWorker:
        async def handle(self, event):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    pool = WorkerPool(bus, SlowWorker(), size=3, backoff_seconds=0.0, poll_timeout=0.05)
    for i in range(10):
        await bus.publish(ChangeEvent.kb_created(f"k{i}", "x"))

    await pool.start()
    await asyncio.wait_for(bus.join(), timeout=5)
    await pool.stop()

    assert pool.stats.succeeded == 10
    assert peak == 3


def test_retry_delay_is_exponential_and_capped():
    assert [retry_delay(n, 1.0) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]
    assert retry_delay(20, 1.0, cap=60.0) == 60.0
    assert retry_delay(3, 0.0) == 0.0


def test_pool_size_must_be_positive(bus, worker):
    with pytest.raises(ValueError):
        WorkerPool(bus, worker, size=0)
