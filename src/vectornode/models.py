from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def as_utc(t: datetime) -> datetime:
    """Naive timestamps are taken as UTC, matching asyncpg for timestamptz."""
    return t.replace(tzinfo=UTC) if t.tzinfo is None else t


class Role(str, Enum):
    USER = "USER"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


class ResultKind(str, Enum):
    CHUNK = "CHUNK"
    ENTITY = "ENTITY"
    KNOWLEDGE_BASE = "KNOWLEDGE_BASE"
    SIBLING_CHUNK = "SIBLING_CHUNK"
    ENTITY_CONTEXT = "ENTITY_CONTEXT"
    CONTEXT_ENTITY = "CONTEXT_ENTITY"
    RELATION = "RELATION"
    TWO_HOP_ENTITY = "TWO_HOP_ENTITY"
    TOP_RELATION = "TOP_RELATION"
    LINKED_ENTITY = "LINKED_ENTITY"
    SIMILAR_ENTITY = "SIMILAR_ENTITY"


@dataclass(slots=True)
class KnowledgeBase:
    """One ingested utterance or document; root of the chunk/entity subtree."""

    id: str
    user_id: str
    role: Role
    content: str
    vector: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(slots=True)
class Context:
    """An embedded chunk of a knowledge base entry."""

    id: str
    kb_id: str
    chunk_index: int
    text: str
    vector: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(slots=True)
class Entity:
    """A deduplicated concept. `name` is unique across the store (case-sensitive)."""

    id: str
    name: str
    vector: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def type(self) -> str:
        return str(self.metadata.get("type") or "OTHER")

    @property
    def description(self) -> str:
        return str(self.metadata.get("description") or "")


@dataclass(slots=True)
class Relation:
    """A directed, typed edge with an observation counter."""

    id: str
    source_id: str
    target_id: str
    relation_type: str
    edge_weight: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Edge:
    """One hop as seen from a fixed entity: the neighbour plus the edge."""

    relation_type: str
    entity_id: str
    entity_name: str
    edge_weight: int


@dataclass(frozen=True, slots=True)
class EntityRef:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class WeightedEdge:
    source_id: str
    source_name: str
    relation_type: str
    target_id: str
    target_name: str
    edge_weight: int


@dataclass(frozen=True, slots=True)
class ContextRow:
    """A context to be inserted; the store assigns id and created_at."""

    text: str
    vector: list[float]
    chunk_index: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SearchResult:
    content: str
    score: float
    kind: ResultKind
    id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d


@dataclass(slots=True)
class QueryResult:
    query: str
    results: list[SearchResult]
    processing_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "results": [r.to_dict() for r in self.results],
            "processing_time_ms": self.processing_time_ms,
        }
