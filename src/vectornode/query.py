from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

from .errors import InvalidInputError, NotFoundError
from .llm import LLMClients
from .models import Context, Edge, Entity, KnowledgeBase, QueryResult, Relation, ResultKind, SearchResult, as_utc
from .store.base import Store
from .util_text import is_blank

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5
LINKED_ENTITY_FACTOR = 0.8


def similarity(distance: float) -> float:
    """Cosine distance -> score in [0, 1]."""
    return min(1.0, max(0.0, 1.0 - float(distance)))


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def context_result(ctx: Context, score: float, kind: ResultKind = ResultKind.CHUNK) -> SearchResult:
    meta = dict(ctx.metadata)
    meta.update(kb_id=ctx.kb_id, chunk_index=ctx.chunk_index, created_at=_iso(ctx.created_at))
    return SearchResult(content=ctx.text, score=score, kind=kind, id=ctx.id, metadata=meta)


def entity_result(ent: Entity, score: float, kind: ResultKind = ResultKind.ENTITY, **extra: Any) -> SearchResult:
    meta = {"entity_type": ent.type, "description": ent.description, **extra}
    return SearchResult(content=ent.name, score=score, kind=kind, id=ent.id, metadata=meta)


def kb_result(kb: KnowledgeBase, score: float) -> SearchResult:
    meta = {"user_id": kb.user_id, "role": kb.role.value, "created_at": _iso(kb.created_at)}
    return SearchResult(content=kb.content, score=score, kind=ResultKind.KNOWLEDGE_BASE, id=kb.id, metadata=meta)


def edge_result(edge: Edge, direction: str) -> SearchResult:
    return SearchResult(
        content=edge.entity_name,
        score=float(edge.edge_weight),
        kind=ResultKind.RELATION,
        id=edge.entity_id,
        metadata={"relation_type": edge.relation_type, "direction": direction},
    )


def dedupe_ranked(results: list[SearchResult]) -> list[SearchResult]:
    """Score DESC, first occurrence of each (kind, id) wins."""
    seen: set[tuple[str, str | None]] = set()
    out = []
    for r in sorted(results, key=lambda r: -r.score):
        key = (r.kind.value, r.id)
        if key in seen:
            continue
        seen.add(key)
        out.append(r)
    return out


class QueryEngine:
    """Semantic, temporal, graph and hybrid retrieval over the store.

    Stateless between calls; every list operation returns a QueryResult whose
    `query` echoes the text or a synthetic label such as "2hop:<id>".
    """

    def __init__(self, store: Store, llm: LLMClients, *, max_limit: int = 100, default_limit: int = DEFAULT_LIMIT):
        self.store = store
        self.llm = llm
        self.max_limit = max_limit
        self.default_limit = default_limit

    # --- helpers ---

    def _limit(self, k: int | None, default: int | None = None) -> int:
        if k is None:
            k = default if default is not None else self.default_limit
        if k <= 0:
            raise InvalidInputError("limit must be positive")
        return min(k, self.max_limit)

    @staticmethod
    def _positive(name: str, value: int) -> int:
        if value is None or value <= 0:
            raise InvalidInputError(f"{name} must be positive")
        return value

    @staticmethod
    def _relevance_filter(results: list[SearchResult], min_relevance: float | None) -> list[SearchResult]:
        if min_relevance is None:
            return results
        if not 0.0 <= min_relevance <= 1.0:
            raise InvalidInputError("min_relevance must be within [0, 1]")
        return [r for r in results if r.score >= min_relevance]

    async def _embed_query(self, text: str) -> list[float]:
        if is_blank(text):
            raise InvalidInputError("query must not be blank")
        return await self.llm.embedder.embed(text)

    @staticmethod
    def _done(label: str, results: list[SearchResult], started: float) -> QueryResult:
        elapsed = (time.perf_counter() - started) * 1000.0
        logger.info("Query %r returned %d results in %.1fms", label, len(results), elapsed)
        return QueryResult(query=label, results=results, processing_time_ms=elapsed)

    async def _require_entity(self, entity_id: str) -> Entity:
        ent = await self.store.get_entity(entity_id)
        if ent is None:
            raise NotFoundError(f"entity {entity_id} not found")
        return ent

    async def _require_context(self, context_id: str) -> Context:
        ctx = await self.store.get_context(context_id)
        if ctx is None:
            raise NotFoundError(f"context {context_id} not found")
        return ctx

    # --- semantic ---

    async def search_contexts(self, query: str, limit: int | None = None, min_relevance: float | None = None) -> QueryResult:
        started = time.perf_counter()
        k = self._limit(limit)
        qvec = await self._embed_query(query)
        hits = await self.store.knn_contexts(qvec, k)
        results = [context_result(ctx, similarity(d)) for ctx, d in hits]
        return self._done(query, self._relevance_filter(results, min_relevance), started)

    async def search_entities(self, query: str, limit: int | None = None, min_relevance: float | None = None) -> QueryResult:
        started = time.perf_counter()
        k = self._limit(limit)
        qvec = await self._embed_query(query)
        hits = await self.store.knn_entities(qvec, k)
        results = [entity_result(ent, similarity(d)) for ent, d in hits]
        return self._done(query, self._relevance_filter(results, min_relevance), started)

    async def search_history(self, query: str, limit: int | None = None, min_relevance: float | None = None) -> QueryResult:
        started = time.perf_counter()
        k = self._limit(limit)
        qvec = await self._embed_query(query)
        hits = await self.store.knn_kbs(qvec, k)
        results = [kb_result(kb, similarity(d)) for kb, d in hits]
        return self._done(query, self._relevance_filter(results, min_relevance), started)

    async def search_recent_contexts(
        self, query: str, days: int, limit: int | None = None, min_relevance: float | None = None
    ) -> QueryResult:
        started = time.perf_counter()
        self._positive("days", days)
        k = self._limit(limit)
        qvec = await self._embed_query(query)
        hits = await self.store.knn_recent_contexts(days, qvec, k)
        results = [context_result(ctx, similarity(d)) for ctx, d in hits]
        return self._done(query, self._relevance_filter(results, min_relevance), started)

    async def hybrid_search(
        self,
        query: str,
        limit: int | None = None,
        min_relevance: float | None = None,
        *,
        dedupe: bool = False,
    ) -> QueryResult:
        """Chunks by similarity, each followed by its linked entities at 0.8x the
        chunk score, then entities by their own similarity.

        Composition order is kept unless `dedupe` is set, in which case the
        list is ranked by score and repeated (kind, id) pairs are dropped.
        """
        started = time.perf_counter()
        k = self._limit(limit)
        qvec = await self._embed_query(query)

        results: list[SearchResult] = []
        for ctx, d in await self.store.knn_contexts(qvec, k):
            s_c = similarity(d)
            results.append(context_result(ctx, s_c))
            for ent in await self.store.entities_of_context(ctx.id):
                results.append(
                    entity_result(ent, s_c * LINKED_ENTITY_FACTOR, ResultKind.LINKED_ENTITY, context_id=ctx.id)
                )
        for ent, d in await self.store.knn_entities(qvec, k):
            results.append(entity_result(ent, similarity(d), ResultKind.SIMILAR_ENTITY))

        if dedupe:
            results = dedupe_ranked(results)
        return self._done(query, self._relevance_filter(results, min_relevance), started)

    # --- temporal ---

    async def recent_contexts(self, days: int, limit: int | None = None) -> QueryResult:
        started = time.perf_counter()
        self._positive("days", days)
        k = self._limit(limit, self.max_limit)
        rows = (await self.store.recent_contexts(days))[:k]
        return self._done(f"recent:{days}d", [context_result(c, 1.0) for c in rows], started)

    async def contexts_by_range(self, t0: datetime, t1: datetime, limit: int | None = None) -> QueryResult:
        started = time.perf_counter()
        t0, t1 = as_utc(t0), as_utc(t1)
        if t0 > t1:
            raise InvalidInputError("range start must not be after range end")
        k = self._limit(limit, self.max_limit)
        rows = (await self.store.contexts_between(t0, t1))[:k]
        return self._done(f"range:{t0.isoformat()}/{t1.isoformat()}", [context_result(c, 1.0) for c in rows], started)

    async def recent_kbs(self, hours: int, limit: int | None = None) -> QueryResult:
        started = time.perf_counter()
        self._positive("hours", hours)
        k = self._limit(limit, self.max_limit)
        rows = (await self.store.recent_kbs(hours))[:k]
        return self._done(f"recent:{hours}h", [kb_result(kb, 1.0) for kb in rows], started)

    async def kbs_since(self, since: datetime, limit: int | None = None) -> QueryResult:
        started = time.perf_counter()
        since = as_utc(since)
        k = self._limit(limit, self.max_limit)
        rows = (await self.store.kbs_since(since))[:k]
        return self._done(f"since:{since.isoformat()}", [kb_result(kb, 1.0) for kb in rows], started)

    async def history_by_user(self, user_id: str, limit: int | None = None) -> QueryResult:
        started = time.perf_counter()
        if is_blank(user_id):
            raise InvalidInputError("user_id must not be blank")
        k = self._limit(limit, self.max_limit)
        rows = (await self.store.kbs_of_user(user_id))[:k]
        return self._done(f"user:{user_id}", [kb_result(kb, 1.0) for kb in rows], started)

    # --- structure ---

    async def siblings(self, context_id: str) -> QueryResult:
        started = time.perf_counter()
        await self._require_context(context_id)
        rows = await self.store.siblings(context_id)
        return self._done(
            f"siblings:{context_id}", [context_result(c, 1.0, ResultKind.SIBLING_CHUNK) for c in rows], started
        )

    async def contexts_of_kb(self, kb_id: str) -> QueryResult:
        started = time.perf_counter()
        if await self.store.get_kb(kb_id) is None:
            raise NotFoundError(f"knowledge base {kb_id} not found")
        rows = await self.store.contexts_of_kb(kb_id)
        return self._done(f"kb:{kb_id}", [context_result(c, 1.0) for c in rows], started)

    async def contexts_of_entity(self, entity_id: str) -> QueryResult:
        started = time.perf_counter()
        await self._require_entity(entity_id)
        rows = await self.store.contexts_of_entity(entity_id)
        return self._done(
            f"entity_contexts:{entity_id}",
            [context_result(c, 1.0, ResultKind.ENTITY_CONTEXT) for c in rows],
            started,
        )

    async def entities_of_context(self, context_id: str) -> QueryResult:
        started = time.perf_counter()
        await self._require_context(context_id)
        rows = await self.store.entities_of_context(context_id)
        return self._done(
            f"context_entities:{context_id}",
            [entity_result(e, 1.0, ResultKind.CONTEXT_ENTITY) for e in rows],
            started,
        )

    # --- graph ---

    async def outgoing(self, entity_id: str) -> QueryResult:
        started = time.perf_counter()
        await self._require_entity(entity_id)
        edges = await self.store.out_edges(entity_id)
        return self._done(f"outgoing:{entity_id}", [edge_result(e, "outgoing") for e in edges], started)

    async def incoming(self, entity_id: str) -> QueryResult:
        started = time.perf_counter()
        await self._require_entity(entity_id)
        edges = await self.store.in_edges(entity_id)
        return self._done(f"incoming:{entity_id}", [edge_result(e, "incoming") for e in edges], started)

    async def two_hop(self, entity_id: str) -> QueryResult:
        started = time.perf_counter()
        await self._require_entity(entity_id)
        refs = await self.store.two_hop(entity_id)
        results = [SearchResult(content=r.name, score=1.0, kind=ResultKind.TWO_HOP_ENTITY, id=r.id) for r in refs]
        return self._done(f"2hop:{entity_id}", results, started)

    async def top_relations(self, limit: int | None = None) -> QueryResult:
        started = time.perf_counter()
        k = self._limit(limit, 10)
        results = [
            SearchResult(
                content=f"{e.source_name} → {e.target_name}",
                score=float(e.edge_weight),
                kind=ResultKind.TOP_RELATION,
                metadata={"relation_type": e.relation_type, "source_id": e.source_id, "target_id": e.target_id},
            )
            for e in await self.store.top_edges(k)
        ]
        return self._done("top_relations", results, started)

    async def relations_by_source(self, entity_id: str) -> list[Relation]:
        await self._require_entity(entity_id)
        return await self.store.relations_by_source(entity_id)

    async def relations_by_target(self, entity_id: str) -> list[Relation]:
        await self._require_entity(entity_id)
        return await self.store.relations_by_target(entity_id)

    async def relations_by_type(self, relation_type: str) -> list[Relation]:
        if is_blank(relation_type):
            raise InvalidInputError("relation_type must not be blank")
        return await self.store.relations_by_type(relation_type.strip().upper())

    # --- entities ---

    async def get_entity(self, entity_id: str) -> Entity:
        return await self._require_entity(entity_id)

    async def entity_by_name(self, name: str, *, ignore_case: bool = False) -> Entity:
        if is_blank(name):
            raise InvalidInputError("name must not be blank")
        ent = await self.store.get_entity_by_name(name, ignore_case=ignore_case)
        if ent is None:
            raise NotFoundError(f"entity {name!r} not found")
        return ent

    async def entity_id_by_name(self, name: str) -> str:
        return (await self.entity_by_name(name)).id

    async def disambiguate(self, name: str, context_text: str) -> Entity:
        if is_blank(name):
            raise InvalidInputError("entity name must not be blank")
        cvec = await self._embed_query(context_text)
        ent = await self.store.disambiguate(name, cvec)
        if ent is None:
            raise NotFoundError(f"entity {name!r} not found")
        return ent

    # --- maintenance ---

    async def merge_entities(self, source_id: str, target_id: str) -> None:
        if is_blank(source_id) or is_blank(target_id):
            raise InvalidInputError("source and target are required")
        await self.store.merge_entity(source_id, target_id)

    async def delete_user_data(self, user_id: str) -> int:
        if is_blank(user_id):
            raise InvalidInputError("user_id must not be blank")
        deleted = await self.store.delete_by_user(user_id)
        logger.warning("Deleted %d knowledge base entries for user %s", deleted, user_id)
        return deleted
