from __future__ import annotations

import json
import math
import re
from collections.abc import Callable

import pytest

from vectornode.bus.memory import InMemoryChangeBus
from vectornode.llm import ChatModel, Embedder, LLMClients
from vectornode.settings import Settings
from vectornode.store.memory import InMemoryStore
from vectornode.worker import IngestionWorker, WorkerPool

# word -> {axis: weight}; unknown words are ignored
CONCEPTS: dict[str, dict[int, float]] = {
    "cat": {0: 1.0, 1: 1.0},
    "cats": {0: 1.0, 1: 1.0},
    "dog": {0: 1.0, 2: 1.0},
    "dogs": {0: 1.0, 2: 1.0},
    "pet": {0: 1.0},
    "pets": {0: 1.0},
    "sleep": {3: 1.0},
    "rest": {3: 1.0},
    "sofa": {4: 1.0},
    "sofas": {4: 1.0},
    "furniture": {4: 1.0},
    "chase": {5: 1.0},
    "balls": {5: 1.0},
    "stock": {6: 1.0},
    "market": {6: 1.0},
    "fell": {6: 1.0},
}
UNKNOWN_AXIS = 7


class ConceptEmbedder(Embedder):
    """Bag-of-concepts embedder: texts sharing concepts get close vectors."""

    def __init__(self, dim: int = 8):
        self.dim = dim
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        v = [0.0] * self.dim
        for word in re.findall(r"[a-z]+", text.lower()):
            for axis, w in CONCEPTS.get(word, {UNKNOWN_AXIS: 0.1}).items():
                v[axis] += w
        norm = math.sqrt(sum(x * x for x in v)) or 1.0
        return [x / norm for x in v]


class ScriptedChatModel(ChatModel):
    """Replies with a fixed string, or with `reply(prompt)` when given a callable."""

    def __init__(self, reply: str | Callable[[str], str] = "{}"):
        self.reply = reply
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if callable(self.reply):
            return self.reply(prompt)
        return self.reply


def extraction_json(entities=(), relations=()) -> str:
    return json.dumps(
        {
            "entities": [{"name": n, "type": t, "description": ""} for n, t in entities],
            "relations": [{"source": s, "target": d, "relation": r} for s, d, r in relations],
            "metadata": {},
        }
    )


@pytest.fixture
def bus() -> InMemoryChangeBus:
    return InMemoryChangeBus(max_attempts=3)


@pytest.fixture
def store(bus) -> InMemoryStore:
    return InMemoryStore(publisher=bus)


@pytest.fixture
def embedder() -> ConceptEmbedder:
    return ConceptEmbedder()


@pytest.fixture
def chat() -> ScriptedChatModel:
    return ScriptedChatModel()


@pytest.fixture
def llm(embedder, chat) -> LLMClients:
    return LLMClients(config=None, embedder=embedder, chat=chat)


@pytest.fixture
def worker(store, llm) -> IngestionWorker:
    return IngestionWorker(store, llm)


@pytest.fixture
def pool(bus, worker) -> WorkerPool:
    return WorkerPool(bus, worker, size=2, backoff_seconds=0.0, poll_timeout=0.05)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_backend="memory",
        bus_backend="memory",
        embedding_provider="OLLAMA",
        embedding_dim=8,
        worker_in_process=True,
        worker_backoff_seconds=0.0,
        service_api_key=None,
    )
