import time

import httpx
import pytest
from conftest import ConceptEmbedder, ScriptedChatModel
from fastapi.testclient import TestClient

from vectornode.container import Container
from vectornode.llm import Embedder, LLMClients
from vectornode.service import create_app
from vectornode.store.memory import InMemoryStore


class FixedEmbedder(Embedder):
    dim = 3

    async def embed(self, text: str) -> list[float]:
        return [0.1, 0.2, 0.3]


def _container(settings, embedder=None, *, transport=None, **overrides):
    settings = settings.model_copy(update=overrides)
    from vectornode.bus.memory import InMemoryChangeBus

    bus = InMemoryChangeBus(max_attempts=settings.worker_max_attempts)
    store = InMemoryStore(publisher=bus, embedding_dim=settings.embedding_dim)
    llm = LLMClients(config=None, embedder=embedder or ConceptEmbedder(), chat=ScriptedChatModel())
    return Container(settings, store, bus, llm, transport=transport)


def _wait_for(fetch, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = fetch()
        if body["results"] or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def test_single_chunk_ingest_end_to_end(settings):
    container = _container(settings, FixedEmbedder(), embedding_dim=3)
    with TestClient(create_app(container)) as client:
        resp = client.post("/api/ingest/document", json={"user_id": "u1", "role": "USER", "content": "Hello world."})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "SUCCESS"
        assert body["processing_ms"] >= 0

        contexts = _wait_for(lambda: client.get(f"/api/query/contexts/kb/{body['kb_id']}").json())
        (ctx,) = contexts["results"]
        assert ctx["content"] == "Hello world."
        assert ctx["kind"] == "CHUNK"
        assert ctx["metadata"]["chunk_index"] == 0
        assert ctx["metadata"]["total_chunks"] == 1

        history = client.get("/api/query/history/user/u1").json()
        assert [r["id"] for r in history["results"]] == [body["kb_id"]]


def test_time_queries_accept_timestamps_without_offset(settings):
    container = _container(settings, FixedEmbedder(), embedding_dim=3)
    with TestClient(create_app(container)) as client:
        kb_id = client.post("/api/ingest/document", json={"user_id": "u1", "content": "Hello world."}).json()["kb_id"]

        since = client.get("/api/query/history/since", params={"since": "2020-01-01T00:00:00"})
        assert since.status_code == 200
        assert [r["id"] for r in since.json()["results"]] == [kb_id]

        params = {"start": "2020-01-01T00:00:00", "end": "2100-01-01T00:00:00"}
        contexts = _wait_for(lambda: client.get("/api/query/contexts/range", params=params).json())
        assert [r["content"] for r in contexts["results"]] == ["Hello world."]

        mixed = client.get("/api/query/contexts/range", params={"start": "2020-01-01T00:00:00", "end": "2100-01-01T00:00:00Z"})
        assert mixed.status_code == 200


def test_semantic_query_endpoint(settings):
    with TestClient(create_app(_container(settings))) as client:
        for text in ("cats sleep on sofas", "dogs chase balls", "the stock market fell"):
            client.post("/api/ingest/document", json={"user_id": "u1", "content": text})

        body = client.post("/api/query/history", json={"query": "pets rest on furniture", "limit": 2}).json()

        assert body["query"] == "pets rest on furniture"
        assert [r["content"] for r in body["results"]] == ["cats sleep on sofas", "dogs chase balls"]
        assert body["processing_time_ms"] >= 0


def test_error_bodies(settings):
    with TestClient(create_app(_container(settings))) as client:
        bad = client.post("/api/ingest/document", json={"user_id": "u1", "content": "  "})
        assert bad.status_code == 400
        assert set(bad.json()) == {"timestamp", "status", "error", "message"}
        assert bad.json()["error"] == "Bad Request"

        missing_field = client.post("/api/query/contexts", json={"limit": 2})
        assert missing_field.status_code == 400

        bad_limit = client.post("/api/query/contexts", json={"query": "cats", "limit": 0})
        assert bad_limit.status_code == 400

        missing = client.get("/api/query/graph/2hop/nope")
        assert missing.status_code == 404
        assert missing.json()["status"] == 404

        bad_range = client.get(
            "/api/query/contexts/range",
            params={"start": "2026-02-01T00:00:00Z", "end": "2026-01-01T00:00:00Z"},
        )
        assert bad_range.status_code == 400


def test_unconfigured_provider_is_502(settings):
    from vectornode.llm.embedder import UnconfiguredEmbedder

    with TestClient(create_app(_container(settings, UnconfiguredEmbedder(8)))) as client:
        resp = client.post("/api/ingest/document", json={"user_id": "u1", "content": "Hello"})
        assert resp.status_code == 502
        assert resp.json()["error"] == "Bad Gateway"


def test_api_key_is_enforced(settings):
    with TestClient(create_app(_container(settings, service_api_key="s3cret"))) as client:
        assert client.get("/health").status_code == 200
        denied = client.post("/api/query/contexts", json={"query": "cats"})
        assert denied.status_code == 401
        assert denied.json()["message"] == "invalid API key"
        ok = client.post("/api/query/contexts", json={"query": "cats"}, headers={"X-API-Key": "s3cret"})
        assert ok.status_code == 200


def test_graph_endpoints(settings):
    container = _container(settings)
    with TestClient(create_app(container)) as client:
        client.post("/api/ingest/document", json={"user_id": "u1", "content": "a b c"})
        kb_id = client.get("/api/query/history/user/u1").json()["results"][0]["id"]
        ctx = _wait_for(lambda: client.get(f"/api/query/contexts/kb/{kb_id}").json())["results"][0]

        ids = {}
        for name in ("A", "B", "C"):
            eid, _ = client.portal.call(
                lambda n=name: container.store.find_or_link_entity(n, ctx["id"], vector=[1.0] * 8, metadata={})
            )
            ids[name] = eid
        client.portal.call(lambda: container.store.upsert_relation(ids["A"], ids["B"], "KNOWS"))
        client.portal.call(lambda: container.store.upsert_relation(ids["B"], ids["C"], "KNOWS"))

        body = client.get(f"/api/query/graph/2hop/{ids['A']}").json()
        assert [(r["content"], r["score"], r["kind"]) for r in body["results"]] == [("C", 1.0, "TWO_HOP_ENTITY")]

        rels = client.get(f"/api/query/graph/source/{ids['A']}").json()
        assert [(r["target_id"], r["edge_weight"]) for r in rels] == [(ids["B"], 1)]
        assert client.get("/api/query/entities/name/B").json()["id"] == ids["B"]
        assert client.get("/api/query/entities/id/C").json() == {"name": "C", "id": ids["C"]}

        merged = client.post("/api/query/entities/merge", params={"source": ids["C"], "target": ids["B"]})
        assert merged.json()["success"] is True
        assert client.get(f"/api/query/entities/{ids['C']}").status_code == 404

        deleted = client.delete("/api/query/history/user/u1").json()
        assert deleted["deleted"] == 1


def _ollama_transport(status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if status != 200:
            return httpx.Response(status, json={"error": "nope"})
        return httpx.Response(200, json={"embeddings": [[0.0] * 7 + [1.0]]})

    return httpx.MockTransport(handler)


def test_setup_verifies_persists_and_swaps_clients(settings):
    container = _container(settings, transport=_ollama_transport())
    with TestClient(create_app(container)) as client:
        resp = client.post("/api/setup", json={"provider": "ollama", "model_name": "llama3", "embed_model_name": "nomic"})
        assert resp.status_code == 200
        assert resp.json()["configured_provider"] == "OLLAMA"
        assert resp.json()["configured_model"] == "llama3"

        status = client.get("/api/setup").json()
        assert status["configured"] is True
        assert status["base_url"] == "http://localhost:11434"
        assert container.ingest.llm is container.llm is container.worker.llm
        saved = client.portal.call(container.store.active_setup_config)
        assert saved["provider"] == "OLLAMA"


@pytest.mark.parametrize("upstream,expected", [(401, 401), (503, 502)])
def test_setup_verification_failure_keeps_previous_clients(settings, upstream, expected):
    container = _container(settings, transport=_ollama_transport(upstream), provider_max_attempts=1)
    before = container.llm
    with TestClient(create_app(container)) as client:
        resp = client.post("/api/setup", json={"provider": "OLLAMA", "model_name": "llama3"})
        assert resp.status_code == expected
        assert container.llm is before
        assert client.portal.call(container.store.active_setup_config) is None
        assert client.get("/api/setup").json() == {"configured": False}


def test_setup_rejects_unknown_provider(settings):
    with TestClient(create_app(_container(settings))) as client:
        resp = client.post("/api/setup", json={"provider": "NOPE", "model_name": "x"})
        assert resp.status_code == 400


def test_health(settings):
    with TestClient(create_app(_container(settings))) as client:
        body = client.get("/health").json()
        assert body["ok"] is True
        assert body["store"] == "memory"
        assert body["pool"]["received"] == 0
