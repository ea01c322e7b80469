from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..models import Entity, Relation


class IngestIn(BaseModel):
    user_id: str
    role: str = "USER"
    content: str
    metadata: dict[str, Any] | None = None


class QueryIn(BaseModel):
    query: str
    limit: int | None = Field(default=None, description="Defaults to 5; clamped to QUERY_MAX_LIMIT")
    min_relevance: float | None = None


class SetupIn(BaseModel):
    provider: str
    api_key: str | None = None
    model_name: str
    embed_model_name: str | None = None
    base_url: str | None = None
    verify: bool = True


class SetupOut(BaseModel):
    success: bool
    message: str
    configured_provider: str
    configured_model: str
    timestamp: datetime


class EntityOut(BaseModel):
    id: str
    name: str
    type: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def of(cls, e: Entity) -> "EntityOut":
        return cls(
            id=e.id, name=e.name, type=e.type, description=e.description, metadata=e.metadata, created_at=e.created_at
        )


class RelationOut(BaseModel):
    id: str
    source_id: str
    target_id: str
    relation_type: str
    edge_weight: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def of(cls, r: Relation) -> "RelationOut":
        return cls(
            id=r.id,
            source_id=r.source_id,
            target_id=r.target_id,
            relation_type=r.relation_type,
            edge_weight=r.edge_weight,
            metadata=r.metadata,
            created_at=r.created_at,
        )
