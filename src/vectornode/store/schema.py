from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "rag_events"

# pgvector's HNSW index supports at most this many dimensions.
HNSW_MAX_DIM = 2000

_TABLES = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS knowledge_bases (
    id          uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id     text NOT NULL CHECK (user_id <> ''),
    role        text NOT NULL,
    content     text NOT NULL CHECK (content <> ''),
    embedding   vector({dim}),
    metadata    jsonb NOT NULL DEFAULT '{{}}'::jsonb,
    created_at  timestamptz NOT NULL DEFAULT clock_timestamp()
);
CREATE INDEX IF NOT EXISTS knowledge_bases_user_idx ON knowledge_bases (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS knowledge_bases_created_idx ON knowledge_bases (created_at DESC);

CREATE TABLE IF NOT EXISTS contexts (
    id           uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    kb_id        uuid NOT NULL REFERENCES knowledge_bases(id) ON DELETE CASCADE,
    chunk_index  integer NOT NULL CHECK (chunk_index >= 0),
    text_chunk   text NOT NULL CHECK (text_chunk <> ''),
    embedding    vector({dim}),
    metadata     jsonb NOT NULL DEFAULT '{{}}'::jsonb,
    created_at   timestamptz NOT NULL DEFAULT clock_timestamp(),
    UNIQUE (kb_id, chunk_index)
);
CREATE INDEX IF NOT EXISTS contexts_created_idx ON contexts (created_at DESC);

CREATE TABLE IF NOT EXISTS entities (
    id          uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    name        text NOT NULL UNIQUE CHECK (name <> ''),
    embedding   vector({dim}),
    metadata    jsonb NOT NULL DEFAULT '{{}}'::jsonb,
    created_at  timestamptz NOT NULL DEFAULT clock_timestamp()
);
CREATE INDEX IF NOT EXISTS entities_lower_name_idx ON entities (lower(name));

CREATE TABLE IF NOT EXISTS entity_contexts (
    entity_id   uuid NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    context_id  uuid NOT NULL REFERENCES contexts(id) ON DELETE CASCADE,
    PRIMARY KEY (entity_id, context_id)
);
CREATE INDEX IF NOT EXISTS entity_contexts_context_idx ON entity_contexts (context_id);

CREATE TABLE IF NOT EXISTS relations (
    id             uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    source_id      uuid NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    target_id      uuid NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    relation_type  text NOT NULL,
    edge_weight    integer NOT NULL DEFAULT 1 CHECK (edge_weight >= 1),
    metadata       jsonb NOT NULL DEFAULT '{{}}'::jsonb,
    created_at     timestamptz NOT NULL DEFAULT clock_timestamp(),
    UNIQUE (source_id, target_id, relation_type)
);
CREATE INDEX IF NOT EXISTS relations_target_idx ON relations (target_id);
CREATE INDEX IF NOT EXISTS relations_type_idx ON relations (relation_type);
CREATE INDEX IF NOT EXISTS relations_weight_idx ON relations (edge_weight DESC, source_id, target_id);

CREATE TABLE IF NOT EXISTS relation_observations (
    relation_id  uuid NOT NULL REFERENCES relations(id) ON DELETE CASCADE,
    context_id   uuid NOT NULL REFERENCES contexts(id) ON DELETE CASCADE,
    PRIMARY KEY (relation_id, context_id)
);

CREATE TABLE IF NOT EXISTS setup_configurations (
    id                bigserial PRIMARY KEY,
    provider          text NOT NULL,
    model_name        text NOT NULL,
    embed_model_name  text,
    api_key           text,
    base_url          text,
    is_active         boolean NOT NULL DEFAULT true,
    created_at        timestamptz NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS setup_configurations_active_idx ON setup_configurations ((true)) WHERE is_active;

CREATE TABLE IF NOT EXISTS rag_outbox (
    id             bigserial PRIMARY KEY,
    payload        jsonb NOT NULL,
    created_at     timestamptz NOT NULL DEFAULT now(),
    dispatched_at  timestamptz
);
CREATE INDEX IF NOT EXISTS rag_outbox_pending_idx ON rag_outbox (id) WHERE dispatched_at IS NULL;
"""

_TRIGGERS = """
CREATE OR REPLACE FUNCTION rag_emit_kb_created() RETURNS trigger AS $$
DECLARE
    outbox_id bigint;
BEGIN
    INSERT INTO rag_outbox (payload)
    VALUES (jsonb_build_object('type', 'KB_CREATED', 'id', NEW.id::text, 'content', NEW.content))
    RETURNING id INTO outbox_id;
    PERFORM pg_notify('{channel}', outbox_id::text);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION rag_emit_context_created() RETURNS trigger AS $$
DECLARE
    outbox_id bigint;
BEGIN
    INSERT INTO rag_outbox (payload)
    VALUES (jsonb_build_object(
        'type', 'CONTEXT_CREATED', 'id', NEW.id::text,
        'kb_id', NEW.kb_id::text, 'text_chunk', NEW.text_chunk))
    RETURNING id INTO outbox_id;
    PERFORM pg_notify('{channel}', outbox_id::text);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS knowledge_bases_emit ON knowledge_bases;
CREATE TRIGGER knowledge_bases_emit AFTER INSERT ON knowledge_bases
    FOR EACH ROW EXECUTE FUNCTION rag_emit_kb_created();

DROP TRIGGER IF EXISTS contexts_emit ON contexts;
CREATE TRIGGER contexts_emit AFTER INSERT ON contexts
    FOR EACH ROW EXECUTE FUNCTION rag_emit_context_created();
"""

_ANN_INDEXES = """
CREATE INDEX IF NOT EXISTS knowledge_bases_embedding_idx ON knowledge_bases USING hnsw (embedding vector_cosine_ops);
CREATE INDEX IF NOT EXISTS contexts_embedding_idx ON contexts USING hnsw (embedding vector_cosine_ops);
CREATE INDEX IF NOT EXISTS entities_embedding_idx ON entities USING hnsw (embedding vector_cosine_ops);
"""


def schema_sql(dim: int) -> str:
    """Full idempotent DDL for a deployment pinned to `dim`-dimensional vectors."""
    if dim <= 0:
        raise ValueError("embedding dimension must be positive")
    parts = [_TABLES.format(dim=dim), _TRIGGERS.replace("{channel}", NOTIFY_CHANNEL)]
    if dim <= HNSW_MAX_DIM:
        parts.append(_ANN_INDEXES)
    return "\n".join(parts)


async def apply_schema(dsn: str, dim: int) -> None:
    con = await asyncpg.connect(dsn)
    try:
        async with con.transaction():
            await con.execute(schema_sql(dim))
    finally:
        await con.close()
    if dim > HNSW_MAX_DIM:
        logger.warning("Embedding dim %d exceeds HNSW limit; ANN queries fall back to exact scans", dim)
    logger.info("Schema applied (dim=%d)", dim)
