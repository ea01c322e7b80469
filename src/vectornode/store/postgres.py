from __future__ import annotations

import contextlib
import json
import logging
import uuid
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import asyncpg
from pgvector.asyncpg import register_vector

from ..errors import InvalidInputError, NotFoundError, StoreConflictError, StoreFailedError
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
)

logger = logging.getLogger(__name__)

_KB_COLS = "id::text AS id, user_id, role, content, embedding, metadata, created_at"
_CTX_COLS = "c.id::text AS id, c.kb_id::text AS kb_id, c.chunk_index, c.text_chunk, c.embedding, c.metadata, c.created_at"
_ENT_COLS = "e.id::text AS id, e.name, e.embedding, e.metadata, e.created_at"
_REL_COLS = (
    "id::text AS id, source_id::text AS source_id, target_id::text AS target_id, "
    "relation_type, edge_weight, metadata, created_at"
)


def as_uuid(value: str) -> uuid.UUID | None:
    """Parse an opaque id; None for anything that is not a UUID."""
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _vec(v: Any) -> list[float] | None:
    if v is None:
        return None
    return [float(x) for x in v]


def _meta(v: Any) -> dict[str, Any]:
    if v is None:
        return {}
    if isinstance(v, str):
        return json.loads(v)
    return dict(v)


def row_to_kb(r: asyncpg.Record) -> KnowledgeBase:
    return KnowledgeBase(
        id=r["id"],
        user_id=r["user_id"],
        role=Role(r["role"]),
        content=r["content"],
        vector=_vec(r["embedding"]),
        metadata=_meta(r["metadata"]),
        created_at=r["created_at"],
    )


def row_to_context(r: asyncpg.Record) -> Context:
    return Context(
        id=r["id"],
        kb_id=r["kb_id"],
        chunk_index=r["chunk_index"],
        text=r["text_chunk"],
        vector=_vec(r["embedding"]),
        metadata=_meta(r["metadata"]),
        created_at=r["created_at"],
    )


def row_to_entity(r: asyncpg.Record) -> Entity:
    return Entity(
        id=r["id"],
        name=r["name"],
        vector=_vec(r["embedding"]),
        metadata=_meta(r["metadata"]),
        created_at=r["created_at"],
    )


def row_to_relation(r: asyncpg.Record) -> Relation:
    return Relation(
        id=r["id"],
        source_id=r["source_id"],
        target_id=r["target_id"],
        relation_type=r["relation_type"],
        edge_weight=r["edge_weight"],
        metadata=_meta(r["metadata"]),
        created_at=r["created_at"],
    )


def _deleted_count(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresStore:
    """asyncpg + pgvector implementation of the Store protocol.

    Change events are not published from here: insert triggers write them to
    `rag_outbox` inside the inserting transaction and the outbox relay moves
    them onto the bus.
    """

    def __init__(self, pool: asyncpg.Pool, *, embedding_dim: int | None = None):
        self.pool = pool
        self.embedding_dim = embedding_dim

    @classmethod
    async def connect(
        cls, dsn: str, *, embedding_dim: int | None = None, min_size: int = 1, max_size: int = 10
    ) -> "PostgresStore":
        try:
            pool = await asyncpg.create_pool(
                dsn=dsn, min_size=min_size, max_size=max_size, init=cls._setup_connection
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreFailedError(f"cannot connect to store: {e}") from e
        return cls(pool, embedding_dim=embedding_dim)

    @staticmethod
    async def _setup_connection(con: asyncpg.Connection) -> None:
        await register_vector(con)
        await con.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def close(self) -> None:
        await self.pool.close()

    @contextlib.asynccontextmanager
    async def _conn(self, *, tx: bool = False) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self.pool.acquire() as con:
                if tx:
                    async with con.transaction():
                        yield con
                else:
                    yield con
        except asyncpg.ForeignKeyViolationError as e:
            raise NotFoundError(e.detail or str(e)) from e
        except asyncpg.UniqueViolationError as e:
            raise StoreConflictError(e.detail or str(e)) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreFailedError(str(e)) from e

    def _check_dim(self, vector: list[float]) -> None:
        if self.embedding_dim and len(vector) != self.embedding_dim:
            raise InvalidInputError(f"vector dimension {len(vector)} != configured {self.embedding_dim}")

    # --- writes ---

    async def insert_kb(
        self, *, user_id: str, role: Role, content: str, vector: list[float], metadata: dict[str, Any]
    ) -> str:
        self._check_dim(vector)
        q = """
        INSERT INTO knowledge_bases (user_id, role, content, embedding, metadata)
        VALUES ($1, $2, $3, $4, $5)
        RETURNING id::text
        """
        async with self._conn(tx=True) as con:
            return await con.fetchval(q, user_id, Role(role).value, content, vector, metadata or {})

    async def insert_contexts(self, kb_id: str, rows: list[ContextRow]) -> list[str]:
        kb = as_uuid(kb_id)
        if kb is None:
            raise NotFoundError(f"knowledge base {kb_id} not found")
        for row in rows:
            self._check_dim(row.vector)
        ins = """
        INSERT INTO contexts (kb_id, chunk_index, text_chunk, embedding, metadata)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (kb_id, chunk_index) DO NOTHING
        RETURNING id::text
        """
        existing = "SELECT id::text FROM contexts WHERE kb_id = $1 AND chunk_index = $2"
        ids: list[str] = []
        async with self._conn(tx=True) as con:
            for row in rows:
                ctx_id = await con.fetchval(ins, kb, row.chunk_index, row.text, row.vector, row.metadata)
                if ctx_id is None:
                    ctx_id = await con.fetchval(existing, kb, row.chunk_index)
                ids.append(ctx_id)
        return ids

    async def find_or_link_entity(
        self, name: str, context_id: str, *, vector: list[float], metadata: dict[str, Any]
    ) -> tuple[str, bool]:
        ctx = as_uuid(context_id)
        if ctx is None:
            raise NotFoundError(f"context {context_id} not found")
        self._check_dim(vector)
        async with self._conn(tx=True) as con:
            entity_id = await con.fetchval(
                """
                INSERT INTO entities (name, embedding, metadata) VALUES ($1, $2, $3)
                ON CONFLICT (name) DO NOTHING
                RETURNING id::text
                """,
                name,
                vector,
                metadata,
            )
            created = entity_id is not None
            if not created:
                entity_id = await con.fetchval("SELECT id::text FROM entities WHERE name = $1", name)
                if entity_id is None:
                    raise StoreFailedError(f"entity {name!r} vanished during lookup")
            await con.execute(
                "INSERT INTO entity_contexts (entity_id, context_id) VALUES ($1::uuid, $2) ON CONFLICT DO NOTHING",
                entity_id,
                ctx,
            )
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
        src, dst = as_uuid(source_id), as_uuid(target_id)
        if src is None or dst is None:
            raise NotFoundError(f"entity {source_id if src is None else target_id} not found")
        ctx = as_uuid(context_id) if context_id is not None else None

        if ctx is None:
            q = """
            INSERT INTO relations (source_id, target_id, relation_type, metadata)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (source_id, target_id, relation_type)
            DO UPDATE SET edge_weight = relations.edge_weight + 1
            RETURNING edge_weight
            """
            async with self._conn(tx=True) as con:
                return await con.fetchval(q, src, dst, relation_type, metadata or {})

        async with self._conn(tx=True) as con:
            rel_id = await con.fetchval(
                """
                INSERT INTO relations (source_id, target_id, relation_type, metadata)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (source_id, target_id, relation_type) DO NOTHING
                RETURNING id
                """,
                src,
                dst,
                relation_type,
                metadata or {},
            )
            if rel_id is not None:
                await con.execute(
                    "INSERT INTO relation_observations (relation_id, context_id) VALUES ($1, $2)", rel_id, ctx
                )
                return 1

            row = await con.fetchrow(
                """
                SELECT id, edge_weight FROM relations
                WHERE source_id = $1 AND target_id = $2 AND relation_type = $3
                FOR UPDATE
                """,
                src,
                dst,
                relation_type,
            )
            observed = await con.fetchval(
                """
                INSERT INTO relation_observations (relation_id, context_id) VALUES ($1, $2)
                ON CONFLICT DO NOTHING
                RETURNING relation_id
                """,
                row["id"],
                ctx,
            )
            if observed is None:
                return row["edge_weight"]
            return await con.fetchval(
                "UPDATE relations SET edge_weight = edge_weight + 1 WHERE id = $1 RETURNING edge_weight", row["id"]
            )

    async def merge_entity(self, source_id: str, target_id: str) -> None:
        src, dst = as_uuid(source_id), as_uuid(target_id)
        if src is None or src == dst:
            return
        if dst is None:
            raise NotFoundError(f"entity {target_id} not found")
        async with self._conn(tx=True) as con:
            found = {
                r["id"]
                for r in await con.fetch(
                    "SELECT id FROM entities WHERE id = ANY($1::uuid[]) FOR UPDATE", [src, dst]
                )
            }
            if src not in found:
                return
            if dst not in found:
                raise NotFoundError(f"entity {target_id} not found")

            await con.execute(
                """
                INSERT INTO entity_contexts (entity_id, context_id)
                SELECT $2, context_id FROM entity_contexts WHERE entity_id = $1
                ON CONFLICT DO NOTHING
                """,
                src,
                dst,
            )
            await con.execute(
                """
                INSERT INTO relations (source_id, target_id, relation_type, edge_weight, metadata)
                SELECT CASE WHEN source_id = $1 THEN $2 ELSE source_id END,
                       CASE WHEN target_id = $1 THEN $2 ELSE target_id END,
                       relation_type,
                       SUM(edge_weight),
                       (array_agg(metadata ORDER BY created_at))[1]
                FROM relations
                WHERE source_id = $1 OR target_id = $1
                GROUP BY 1, 2, 3
                ON CONFLICT (source_id, target_id, relation_type)
                DO UPDATE SET edge_weight = relations.edge_weight + EXCLUDED.edge_weight
                """,
                src,
                dst,
            )
            await con.execute(
                """
                INSERT INTO relation_observations (relation_id, context_id)
                SELECT n.id, o.context_id
                FROM relation_observations o
                JOIN relations r ON r.id = o.relation_id
                JOIN relations n
                  ON n.source_id = CASE WHEN r.source_id = $1 THEN $2 ELSE r.source_id END
                 AND n.target_id = CASE WHEN r.target_id = $1 THEN $2 ELSE r.target_id END
                 AND n.relation_type = r.relation_type
                WHERE r.source_id = $1 OR r.target_id = $1
                ON CONFLICT DO NOTHING
                """,
                src,
                dst,
            )
            # cascades the old relations, links and observations
            await con.execute("DELETE FROM entities WHERE id = $1", src)
        logger.info("Merged entity %s into %s", source_id, target_id)

    async def delete_by_user(self, user_id: str) -> int:
        async with self._conn(tx=True) as con:
            status = await con.execute("DELETE FROM knowledge_bases WHERE user_id = $1", user_id)
        return _deleted_count(status)

    # --- point reads ---

    async def get_kb(self, kb_id: str) -> KnowledgeBase | None:
        kid = as_uuid(kb_id)
        if kid is None:
            return None
        async with self._conn() as con:
            r = await con.fetchrow(f"SELECT {_KB_COLS} FROM knowledge_bases WHERE id = $1", kid)
        return row_to_kb(r) if r else None

    async def get_context(self, context_id: str) -> Context | None:
        cid = as_uuid(context_id)
        if cid is None:
            return None
        async with self._conn() as con:
            r = await con.fetchrow(f"SELECT {_CTX_COLS} FROM contexts c WHERE c.id = $1", cid)
        return row_to_context(r) if r else None

    async def get_entity(self, entity_id: str) -> Entity | None:
        eid = as_uuid(entity_id)
        if eid is None:
            return None
        async with self._conn() as con:
            r = await con.fetchrow(f"SELECT {_ENT_COLS} FROM entities e WHERE e.id = $1", eid)
        return row_to_entity(r) if r else None

    async def get_entity_by_name(self, name: str, *, ignore_case: bool = False) -> Entity | None:
        if ignore_case:
            q = f"SELECT {_ENT_COLS} FROM entities e WHERE lower(e.name) = lower($1) ORDER BY e.created_at LIMIT 1"
        else:
            q = f"SELECT {_ENT_COLS} FROM entities e WHERE e.name = $1"
        async with self._conn() as con:
            r = await con.fetchrow(q, name)
        return row_to_entity(r) if r else None

    # --- ANN ---

    async def knn_contexts(self, qvec: list[float], k: int) -> list[tuple[Context, float]]:
        q = f"""
        SELECT {_CTX_COLS}, c.embedding <=> $1 AS distance
        FROM contexts c WHERE c.embedding IS NOT NULL
        ORDER BY distance, c.id LIMIT $2
        """
        async with self._conn() as con:
            rows = await con.fetch(q, qvec, max(0, k))
        return [(row_to_context(r), float(r["distance"])) for r in rows]

    async def knn_entities(self, qvec: list[float], k: int) -> list[tuple[Entity, float]]:
        q = f"""
        SELECT {_ENT_COLS}, e.embedding <=> $1 AS distance
        FROM entities e WHERE e.embedding IS NOT NULL
        ORDER BY distance, e.id LIMIT $2
        """
        async with self._conn() as con:
            rows = await con.fetch(q, qvec, max(0, k))
        return [(row_to_entity(r), float(r["distance"])) for r in rows]

    async def knn_kbs(self, qvec: list[float], k: int) -> list[tuple[KnowledgeBase, float]]:
        q = f"""
        SELECT {_KB_COLS}, embedding <=> $1 AS distance
        FROM knowledge_bases WHERE embedding IS NOT NULL
        ORDER BY distance, id LIMIT $2
        """
        async with self._conn() as con:
            rows = await con.fetch(q, qvec, max(0, k))
        return [(row_to_kb(r), float(r["distance"])) for r in rows]

    async def knn_recent_contexts(self, days: int, qvec: list[float], k: int) -> list[tuple[Context, float]]:
        q = f"""
        SELECT {_CTX_COLS}, c.embedding <=> $2 AS distance
        FROM contexts c
        WHERE c.embedding IS NOT NULL AND c.created_at >= now() - make_interval(days => $1)
        ORDER BY distance, c.id LIMIT $3
        """
        async with self._conn() as con:
            rows = await con.fetch(q, days, qvec, max(0, k))
        return [(row_to_context(r), float(r["distance"])) for r in rows]

    # --- time filters ---

    async def recent_contexts(self, days: int) -> list[Context]:
        q = f"""
        SELECT {_CTX_COLS} FROM contexts c
        WHERE c.created_at >= now() - make_interval(days => $1)
        ORDER BY c.created_at DESC, c.id
        """
        async with self._conn() as con:
            return [row_to_context(r) for r in await con.fetch(q, days)]

    async def contexts_between(self, t0: datetime, t1: datetime) -> list[Context]:
        q = f"""
        SELECT {_CTX_COLS} FROM contexts c
        WHERE c.created_at BETWEEN $1 AND $2
        ORDER BY c.created_at DESC, c.id
        """
        async with self._conn() as con:
            return [row_to_context(r) for r in await con.fetch(q, t0, t1)]

    async def recent_kbs(self, hours: int) -> list[KnowledgeBase]:
        q = f"""
        SELECT {_KB_COLS} FROM knowledge_bases
        WHERE created_at > now() - make_interval(hours => $1)
        ORDER BY created_at DESC, id
        """
        async with self._conn() as con:
            return [row_to_kb(r) for r in await con.fetch(q, hours)]

    async def kbs_since(self, t: datetime) -> list[KnowledgeBase]:
        q = f"SELECT {_KB_COLS} FROM knowledge_bases WHERE created_at > $1 ORDER BY created_at DESC, id"
        async with self._conn() as con:
            return [row_to_kb(r) for r in await con.fetch(q, t)]

    async def kbs_of_user(self, user_id: str) -> list[KnowledgeBase]:
        q = f"SELECT {_KB_COLS} FROM knowledge_bases WHERE user_id = $1 ORDER BY created_at DESC, id"
        async with self._conn() as con:
            return [row_to_kb(r) for r in await con.fetch(q, user_id)]

    # --- structure / graph ---

    async def contexts_of_kb(self, kb_id: str) -> list[Context]:
        kid = as_uuid(kb_id)
        if kid is None:
            return []
        q = f"SELECT {_CTX_COLS} FROM contexts c WHERE c.kb_id = $1 ORDER BY c.chunk_index"
        async with self._conn() as con:
            return [row_to_context(r) for r in await con.fetch(q, kid)]

    async def siblings(self, context_id: str) -> list[Context]:
        cid = as_uuid(context_id)
        if cid is None:
            return []
        q = f"""
        SELECT {_CTX_COLS} FROM contexts c
        JOIN contexts anchor ON anchor.kb_id = c.kb_id
        WHERE anchor.id = $1 AND c.id <> anchor.id
        ORDER BY c.chunk_index
        """
        async with self._conn() as con:
            return [row_to_context(r) for r in await con.fetch(q, cid)]

    async def contexts_of_entity(self, entity_id: str) -> list[Context]:
        eid = as_uuid(entity_id)
        if eid is None:
            return []
        q = f"""
        SELECT {_CTX_COLS} FROM contexts c
        JOIN entity_contexts ec ON ec.context_id = c.id
        WHERE ec.entity_id = $1
        ORDER BY c.created_at, c.id
        """
        async with self._conn() as con:
            return [row_to_context(r) for r in await con.fetch(q, eid)]

    async def entities_of_context(self, context_id: str) -> list[Entity]:
        cid = as_uuid(context_id)
        if cid is None:
            return []
        q = f"""
        SELECT {_ENT_COLS} FROM entities e
        JOIN entity_contexts ec ON ec.entity_id = e.id
        WHERE ec.context_id = $1
        ORDER BY e.name, e.id
        """
        async with self._conn() as con:
            return [row_to_entity(r) for r in await con.fetch(q, cid)]

    async def _edges(self, entity_id: str, *, outgoing: bool) -> list[Edge]:
        eid = as_uuid(entity_id)
        if eid is None:
            return []
        near, far = ("source_id", "target_id") if outgoing else ("target_id", "source_id")
        q = f"""
        SELECT r.relation_type, e.id::text AS entity_id, e.name, r.edge_weight
        FROM relations r JOIN entities e ON e.id = r.{far}
        WHERE r.{near} = $1
        ORDER BY r.edge_weight DESC, e.name, r.relation_type
        """
        async with self._conn() as con:
            rows = await con.fetch(q, eid)
        return [Edge(r["relation_type"], r["entity_id"], r["name"], r["edge_weight"]) for r in rows]

    async def out_edges(self, entity_id: str) -> list[Edge]:
        return await self._edges(entity_id, outgoing=True)

    async def in_edges(self, entity_id: str) -> list[Edge]:
        return await self._edges(entity_id, outgoing=False)

    async def two_hop(self, entity_id: str) -> list[EntityRef]:
        eid = as_uuid(entity_id)
        if eid is None:
            return []
        q = """
        SELECT DISTINCT e.id::text AS id, e.name
        FROM relations r1
        JOIN relations r2 ON r2.source_id = r1.target_id
        JOIN entities e ON e.id = r2.target_id
        WHERE r1.source_id = $1
        ORDER BY e.name, id
        """
        async with self._conn() as con:
            return [EntityRef(r["id"], r["name"]) for r in await con.fetch(q, eid)]

    async def top_edges(self, k: int) -> list[WeightedEdge]:
        q = """
        SELECT r.source_id::text AS source_id, s.name AS source_name, r.relation_type,
               r.target_id::text AS target_id, t.name AS target_name, r.edge_weight
        FROM relations r
        JOIN entities s ON s.id = r.source_id
        JOIN entities t ON t.id = r.target_id
        ORDER BY r.edge_weight DESC, r.source_id, r.target_id
        LIMIT $1
        """
        async with self._conn() as con:
            rows = await con.fetch(q, max(0, k))
        return [WeightedEdge(**dict(r)) for r in rows]

    async def relations_by_source(self, entity_id: str) -> list[Relation]:
        eid = as_uuid(entity_id)
        if eid is None:
            return []
        q = f"SELECT {_REL_COLS} FROM relations WHERE source_id = $1 ORDER BY edge_weight DESC, id"
        async with self._conn() as con:
            return [row_to_relation(r) for r in await con.fetch(q, eid)]

    async def relations_by_target(self, entity_id: str) -> list[Relation]:
        eid = as_uuid(entity_id)
        if eid is None:
            return []
        q = f"SELECT {_REL_COLS} FROM relations WHERE target_id = $1 ORDER BY edge_weight DESC, id"
        async with self._conn() as con:
            return [row_to_relation(r) for r in await con.fetch(q, eid)]

    async def relations_by_type(self, relation_type: str) -> list[Relation]:
        q = f"SELECT {_REL_COLS} FROM relations WHERE relation_type = $1 ORDER BY edge_weight DESC, id"
        async with self._conn() as con:
            return [row_to_relation(r) for r in await con.fetch(q, relation_type)]

    async def disambiguate(self, name: str, context_vec: list[float]) -> Entity | None:
        q = f"""
        SELECT {_ENT_COLS} FROM entities e
        WHERE e.name = $1
        ORDER BY e.embedding <=> $2 NULLS LAST, e.id
        LIMIT 1
        """
        async with self._conn() as con:
            r = await con.fetchrow(q, name, context_vec)
        return row_to_entity(r) if r else None

    # --- provider setup ---

    async def save_setup_config(self, config: dict[str, Any]) -> None:
        # one active row (partial unique index); a concurrent save that
        # committed first is deactivated on the second pass
        for attempt in range(2):
            try:
                async with self._conn(tx=True) as con:
                    await con.execute("UPDATE setup_configurations SET is_active = false WHERE is_active")
                    await con.execute(
                        """
                        INSERT INTO setup_configurations
                            (provider, model_name, embed_model_name, api_key, base_url, is_active)
                        VALUES ($1, $2, $3, $4, $5, true)
                        """,
                        config["provider"],
                        config["model_name"],
                        config.get("embed_model_name"),
                        config.get("api_key"),
                        config.get("base_url"),
                    )
                return
            except StoreConflictError:
                if attempt:
                    raise
                logger.info("Concurrent provider setup detected; retrying activation")

    async def active_setup_config(self) -> dict[str, Any] | None:
        q = """
        SELECT provider, model_name, embed_model_name, api_key, base_url, is_active, created_at
        FROM setup_configurations WHERE is_active
        ORDER BY created_at DESC, id DESC LIMIT 1
        """
        async with self._conn() as con:
            r = await con.fetchrow(q)
        return dict(r) if r else None
