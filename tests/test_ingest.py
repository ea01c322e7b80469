import pytest

from vectornode.bus.events import EventType
from vectornode.errors import EmbedFailedError, InvalidInputError
from vectornode.ingest import IngestService, parse_role
from vectornode.llm import LLMClients
from vectornode.llm.embedder import UnconfiguredEmbedder
from vectornode.models import Role


@pytest.fixture
def service(store, llm):
    return IngestService(store, llm)


@pytest.mark.asyncio
async def test_ingest_stores_kb_and_emits_event(service, store, bus, embedder):
    receipt = await service.ingest(user_id="u1", role="USER", content="Hello world.", metadata={"source": "chat"})

    kb = await store.get_kb(receipt.kb_id)
    assert kb.content == "Hello world."
    assert kb.role is Role.USER
    assert kb.metadata["source"] == "chat"
    assert kb.metadata["content_length"] == len("Hello world.")
    assert kb.metadata["embedding_dimensions"] == embedder.dim
    assert embedder.calls == ["Hello world."]

    delivery = await bus.receive(timeout=0.1)
    assert (delivery.event.type, delivery.event.id) == (EventType.KB_CREATED, receipt.kb_id)


@pytest.mark.asyncio
async def test_receipt_shape(service):
    receipt = await service.ingest(user_id="u1", role="agent", content="Hi")
    body = receipt.to_dict()

    assert body["status"] == "SUCCESS"
    assert body["role"] == "AGENT"
    assert body["embedding_dim"] == 8
    assert body["processing_ms"] >= body["embedding_ms"] >= 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"user_id": " ", "content": "x"},
        {"user_id": "u1", "content": "   "},
        {"user_id": "u1", "content": "x", "role": "ADMIN"},
        {"user_id": "u1", "content": "x", "metadata": ["not", "a", "dict"]},
    ],
)
@pytest.mark.asyncio
async def test_invalid_input_is_rejected_before_embedding(service, embedder, bus, kwargs):
    with pytest.raises(InvalidInputError):
        await service.ingest(**kwargs)
    assert embedder.calls == []
    assert bus.published == 0


@pytest.mark.asyncio
async def test_embed_failure_stores_nothing(store, chat, bus):
    service = IngestService(store, LLMClients(config=None, embedder=UnconfiguredEmbedder(8), chat=chat))

    with pytest.raises(EmbedFailedError):
        await service.ingest(user_id="u1", content="Hello")
    assert store.kbs == {}
    assert bus.published == 0


def test_parse_role():
    assert parse_role(" system ") is Role.SYSTEM
    assert parse_role(Role.AGENT) is Role.AGENT
    with pytest.raises(InvalidInputError):
        parse_role("robot")
