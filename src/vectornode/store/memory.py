from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import numpy as np

from ..bus.base import EventPublisher
from ..bus.events import ChangeEvent
from ..errors import InvalidInputError, NotFoundError
from ..models import (
    Context,
    ContextRow,
    Edge,
    Entity,
    EntityRef,
    KnowledgeBase,
    Relation,
    Role,
    WeightedEdge,
    as_utc,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def cosine_distance(q: np.ndarray, v: np.ndarray) -> float:
    """pgvector `<=>` semantics: 1 - cosine similarity, 1.0 if either side is zero."""
    qn = float(np.linalg.norm(q))
    vn = float(np.linalg.norm(v))
    if qn == 0.0 or vn == 0.0:
        return 1.0
    return float(1.0 - np.dot(q, v) / (qn * vn))


class InMemoryStore:
    """Single-process store with the same contract as the Postgres adapter.

    A single asyncio lock serializes writes, which makes find_or_link_entity
    linearizable on name and upsert_relation linearizable on the triple.
    Events are published after the write is applied ("committed").
    """

    def __init__(
        self,
        *,
        publisher: EventPublisher | None = None,
        embedding_dim: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.publisher = publisher
        self.embedding_dim = embedding_dim
        self.clock = clock
        self._lock = asyncio.Lock()
        self._seq = itertools.count()
        self._order: dict[str, int] = {}

        self.kbs: dict[str, KnowledgeBase] = {}
        self.contexts: dict[str, Context] = {}
        self._ctx_by_index: dict[tuple[str, int], str] = {}
        self.entities: dict[str, Entity] = {}
        self._entity_by_name: dict[str, str] = {}
        self.links: set[tuple[str, str]] = set()  # (entity_id, context_id)
        self.relations: dict[str, Relation] = {}
        self._rel_by_triple: dict[tuple[str, str, str], str] = {}
        self._observations: set[tuple[str, str]] = set()  # (relation_id, context_id)
        self._setup_configs: list[dict[str, Any]] = []

    # --- helpers ---

    def _new_id(self) -> str:
        _id = str(uuid.uuid4())
        self._order[_id] = next(self._seq)
        return _id

    def _check_dim(self, vector: list[float]) -> None:
        if self.embedding_dim and len(vector) != self.embedding_dim:
            raise InvalidInputError(f"vector dimension {len(vector)} != configured {self.embedding_dim}")

    def _newest_first(self, rows: Iterable[T]) -> list[T]:
        return sorted(rows, key=lambda r: (r.created_at, self._order.get(r.id, 0)), reverse=True)

    def _knn(self, rows: Iterable[T], qvec: list[float], k: int) -> list[tuple[T, float]]:
        if k <= 0:
            return []
        q = np.asarray(qvec, dtype=np.float32)
        scored = [
            (r, cosine_distance(q, np.asarray(r.vector, dtype=np.float32)))
            for r in rows
            if r.vector is not None
        ]
        scored.sort(key=lambda x: (x[1], x[0].id))
        return [(copy.deepcopy(r), d) for r, d in scored[:k]]

    async def _emit(self, events: list[ChangeEvent]) -> None:
        if self.publisher is None:
            return
        for ev in events:
            await self.publisher.publish(ev)

    # --- writes ---

    async def insert_kb(
        self, *, user_id: str, role: Role, content: str, vector: list[float], metadata: dict[str, Any]
    ) -> str:
        self._check_dim(vector)
        async with self._lock:
            kb_id = self._new_id()
            self.kbs[kb_id] = KnowledgeBase(
                id=kb_id,
                user_id=user_id,
                role=Role(role),
                content=content,
                vector=list(vector),
                metadata=dict(metadata or {}),
                created_at=self.clock(),
            )
        await self._emit([ChangeEvent.kb_created(kb_id, content)])
        return kb_id

    async def insert_contexts(self, kb_id: str, rows: list[ContextRow]) -> list[str]:
        for row in rows:
            self._check_dim(row.vector)
        events: list[ChangeEvent] = []
        ids: list[str] = []
        async with self._lock:
            if kb_id not in self.kbs:
                raise NotFoundError(f"knowledge base {kb_id} not found")
            for row in rows:
                key = (kb_id, row.chunk_index)
                existing = self._ctx_by_index.get(key)
                if existing is not None:
                    ids.append(existing)
                    continue
                ctx_id = self._new_id()
                self.contexts[ctx_id] = Context(
                    id=ctx_id,
                    kb_id=kb_id,
                    chunk_index=row.chunk_index,
                    text=row.text,
                    vector=list(row.vector),
                    metadata=dict(row.metadata),
                    created_at=self.clock(),
                )
                self._ctx_by_index[key] = ctx_id
                ids.append(ctx_id)
                events.append(ChangeEvent.context_created(ctx_id, kb_id, row.text))
        await self._emit(events)
        return ids

    async def find_or_link_entity(
        self, name: str, context_id: str, *, vector: list[float], metadata: dict[str, Any]
    ) -> tuple[str, bool]:
        async with self._lock:
            if context_id not in self.contexts:
                raise NotFoundError(f"context {context_id} not found")
            entity_id = self._entity_by_name.get(name)
            created = entity_id is None
            if created:
                self._check_dim(vector)
                entity_id = self._new_id()
                self.entities[entity_id] = Entity(
                    id=entity_id,
                    name=name,
                    vector=list(vector),
                    metadata=dict(metadata),
                    created_at=self.clock(),
                )
                self._entity_by_name[name] = entity_id
            self.links.add((entity_id, context_id))
            return entity_id, created

    async def upsert_relation(
        self,
        source_id: str,
        target_id: str,
        relation_type: str,
        *,
        context_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        async with self._lock:
            for eid in (source_id, target_id):
                if eid not in self.entities:
                    raise NotFoundError(f"entity {eid} not found")
            triple = (source_id, target_id, relation_type)
            rel_id = self._rel_by_triple.get(triple)
            if rel_id is None:
                rel_id = self._new_id()
                self.relations[rel_id] = Relation(
                    id=rel_id,
                    source_id=source_id,
                    target_id=target_id,
                    relation_type=relation_type,
                    edge_weight=1,
                    metadata=dict(metadata or {}),
                    created_at=self.clock(),
                )
                self._rel_by_triple[triple] = rel_id
                if context_id is not None:
                    self._observations.add((rel_id, context_id))
                return 1

            rel = self.relations[rel_id]
            if context_id is not None:
                if (rel_id, context_id) in self._observations:
                    return rel.edge_weight
                self._observations.add((rel_id, context_id))
            rel.edge_weight += 1
            return rel.edge_weight

    async def merge_entity(self, source_id: str, target_id: str) -> None:
        async with self._lock:
            if source_id == target_id or source_id not in self.entities:
                return
            if target_id not in self.entities:
                raise NotFoundError(f"entity {target_id} not found")

            for eid, cid in [link for link in self.links if link[0] == source_id]:
                self.links.discard((eid, cid))
                self.links.add((target_id, cid))

            touching = [r for r in self.relations.values() if source_id in (r.source_id, r.target_id)]
            for rel in touching:
                del self._rel_by_triple[(rel.source_id, rel.target_id, rel.relation_type)]
                del self.relations[rel.id]
            for rel in touching:
                new_src = target_id if rel.source_id == source_id else rel.source_id
                new_dst = target_id if rel.target_id == source_id else rel.target_id
                triple = (new_src, new_dst, rel.relation_type)
                kept_id = self._rel_by_triple.get(triple)
                if kept_id is not None:
                    self.relations[kept_id].edge_weight += rel.edge_weight
                    self._order.pop(rel.id, None)
                else:
                    kept_id = rel.id
                    rel.source_id, rel.target_id = new_src, new_dst
                    self.relations[kept_id] = rel
                    self._rel_by_triple[triple] = kept_id
                obs = {c for r, c in self._observations if r == rel.id}
                self._observations = {o for o in self._observations if o[0] != rel.id}
                self._observations |= {(kept_id, c) for c in obs}

            ent = self.entities.pop(source_id)
            self._order.pop(source_id, None)
            self._entity_by_name.pop(ent.name, None)
            logger.info("Merged entity %s into %s", source_id, target_id)

    async def delete_by_user(self, user_id: str) -> int:
        async with self._lock:
            kb_ids = {k for k, kb in self.kbs.items() if kb.user_id == user_id}
            ctx_ids = {c for c, ctx in self.contexts.items() if ctx.kb_id in kb_ids}
            for kb_id in kb_ids:
                del self.kbs[kb_id]
                self._order.pop(kb_id, None)
            for cid in ctx_ids:
                ctx = self.contexts.pop(cid)
                self._order.pop(cid, None)
                self._ctx_by_index.pop((ctx.kb_id, ctx.chunk_index), None)
            self.links = {link for link in self.links if link[1] not in ctx_ids}
            self._observations = {o for o in self._observations if o[1] not in ctx_ids}
            return len(kb_ids)

    # --- point reads ---

    async def get_kb(self, kb_id: str) -> KnowledgeBase | None:
        kb = self.kbs.get(kb_id)
        return copy.deepcopy(kb) if kb else None

    async def get_context(self, context_id: str) -> Context | None:
        ctx = self.contexts.get(context_id)
        return copy.deepcopy(ctx) if ctx else None

    async def get_entity(self, entity_id: str) -> Entity | None:
        ent = self.entities.get(entity_id)
        return copy.deepcopy(ent) if ent else None

    async def get_entity_by_name(self, name: str, *, ignore_case: bool = False) -> Entity | None:
        if not ignore_case:
            eid = self._entity_by_name.get(name)
            return await self.get_entity(eid) if eid else None
        matches = sorted(
            (e for e in self.entities.values() if e.name.lower() == name.lower()),
            key=lambda e: self._order.get(e.id, 0),
        )
        return copy.deepcopy(matches[0]) if matches else None

    # --- ANN ---

    async def knn_contexts(self, qvec: list[float], k: int) -> list[tuple[Context, float]]:
        return self._knn(self.contexts.values(), qvec, k)

    async def knn_entities(self, qvec: list[float], k: int) -> list[tuple[Entity, float]]:
        return self._knn(self.entities.values(), qvec, k)

    async def knn_kbs(self, qvec: list[float], k: int) -> list[tuple[KnowledgeBase, float]]:
        return self._knn(self.kbs.values(), qvec, k)

    async def knn_recent_contexts(self, days: int, qvec: list[float], k: int) -> list[tuple[Context, float]]:
        cutoff = self.clock() - timedelta(days=days)
        return self._knn((c for c in self.contexts.values() if c.created_at >= cutoff), qvec, k)

    # --- time filters ---

    async def recent_contexts(self, days: int) -> list[Context]:
        cutoff = self.clock() - timedelta(days=days)
        return copy.deepcopy(self._newest_first(c for c in self.contexts.values() if c.created_at >= cutoff))

    async def contexts_between(self, t0: datetime, t1: datetime) -> list[Context]:
        t0, t1 = as_utc(t0), as_utc(t1)
        return copy.deepcopy(self._newest_first(c for c in self.contexts.values() if t0 <= c.created_at <= t1))

    async def recent_kbs(self, hours: int) -> list[KnowledgeBase]:
        cutoff = self.clock() - timedelta(hours=hours)
        return copy.deepcopy(self._newest_first(kb for kb in self.kbs.values() if kb.created_at > cutoff))

    async def kbs_since(self, t: datetime) -> list[KnowledgeBase]:
        t = as_utc(t)
        return copy.deepcopy(self._newest_first(kb for kb in self.kbs.values() if kb.created_at > t))

    async def kbs_of_user(self, user_id: str) -> list[KnowledgeBase]:
        return copy.deepcopy(self._newest_first(kb for kb in self.kbs.values() if kb.user_id == user_id))

    # --- structure / graph ---

    async def contexts_of_kb(self, kb_id: str) -> list[Context]:
        rows = sorted((c for c in self.contexts.values() if c.kb_id == kb_id), key=lambda c: c.chunk_index)
        return copy.deepcopy(rows)

    async def siblings(self, context_id: str) -> list[Context]:
        ctx = self.contexts.get(context_id)
        if ctx is None:
            return []
        return [c for c in await self.contexts_of_kb(ctx.kb_id) if c.id != context_id]

    async def contexts_of_entity(self, entity_id: str) -> list[Context]:
        rows = [self.contexts[c] for e, c in self.links if e == entity_id and c in self.contexts]
        rows.sort(key=lambda c: (c.created_at, self._order.get(c.id, 0)))
        return copy.deepcopy(rows)

    async def entities_of_context(self, context_id: str) -> list[Entity]:
        rows = [self.entities[e] for e, c in self.links if c == context_id and e in self.entities]
        rows.sort(key=lambda e: (e.name, e.id))
        return copy.deepcopy(rows)

    async def out_edges(self, entity_id: str) -> list[Edge]:
        edges = [
            Edge(r.relation_type, r.target_id, self.entities[r.target_id].name, r.edge_weight)
            for r in self.relations.values()
            if r.source_id == entity_id
        ]
        edges.sort(key=lambda e: (-e.edge_weight, e.entity_name, e.relation_type))
        return edges

    async def in_edges(self, entity_id: str) -> list[Edge]:
        edges = [
            Edge(r.relation_type, r.source_id, self.entities[r.source_id].name, r.edge_weight)
            for r in self.relations.values()
            if r.target_id == entity_id
        ]
        edges.sort(key=lambda e: (-e.edge_weight, e.entity_name, e.relation_type))
        return edges

    async def two_hop(self, entity_id: str) -> list[EntityRef]:
        first = {r.target_id for r in self.relations.values() if r.source_id == entity_id}
        second = {r.target_id for r in self.relations.values() if r.source_id in first}
        refs = [EntityRef(eid, self.entities[eid].name) for eid in second]
        refs.sort(key=lambda r: (r.name, r.id))
        return refs

    async def top_edges(self, k: int) -> list[WeightedEdge]:
        rels = sorted(self.relations.values(), key=lambda r: (-r.edge_weight, r.source_id, r.target_id))
        return [
            WeightedEdge(
                source_id=r.source_id,
                source_name=self.entities[r.source_id].name,
                relation_type=r.relation_type,
                target_id=r.target_id,
                target_name=self.entities[r.target_id].name,
                edge_weight=r.edge_weight,
            )
            for r in rels[: max(0, k)]
        ]

    def _relations(self, pred: Callable[[Relation], bool]) -> list[Relation]:
        rows = sorted((r for r in self.relations.values() if pred(r)), key=lambda r: (-r.edge_weight, r.id))
        return copy.deepcopy(rows)

    async def relations_by_source(self, entity_id: str) -> list[Relation]:
        return self._relations(lambda r: r.source_id == entity_id)

    async def relations_by_target(self, entity_id: str) -> list[Relation]:
        return self._relations(lambda r: r.target_id == entity_id)

    async def relations_by_type(self, relation_type: str) -> list[Relation]:
        return self._relations(lambda r: r.relation_type == relation_type)

    async def disambiguate(self, name: str, context_vec: list[float]) -> Entity | None:
        hits = self._knn((e for e in self.entities.values() if e.name == name), context_vec, 1)
        return hits[0][0] if hits else None

    # --- provider setup ---

    async def save_setup_config(self, config: dict[str, Any]) -> None:
        async with self._lock:
            for c in self._setup_configs:
                c["is_active"] = False
            self._setup_configs.append({**config, "is_active": True, "created_at": self.clock()})

    async def active_setup_config(self) -> dict[str, Any] | None:
        for c in reversed(self._setup_configs):
            if c["is_active"]:
                return dict(c)
        return None

    async def close(self) -> None:
        return None
