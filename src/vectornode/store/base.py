from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

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


class Store(Protocol):
    """Typed operations over the KB -> context -> entity <-> relation model.

    Writes are transactional. `insert_kb` and `insert_contexts` emit
    KB_CREATED / CONTEXT_CREATED once per committed new row.
    """

    # --- writes ---

    async def insert_kb(
        self, *, user_id: str, role: Role, content: str, vector: list[float], metadata: dict[str, Any]
    ) -> str: ...

    async def insert_contexts(self, kb_id: str, rows: list[ContextRow]) -> list[str]:
        """Insert chunks of one KB. Rows whose (kb_id, chunk_index) already exist are
        left untouched and emit nothing; their existing ids are returned in place."""
        ...

    async def find_or_link_entity(
        self, name: str, context_id: str, *, vector: list[float], metadata: dict[str, Any]
    ) -> tuple[str, bool]: ...

    async def upsert_relation(
        self,
        source_id: str,
        target_id: str,
        relation_type: str,
        *,
        context_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Create with weight 1 or add 1; returns the resulting edge_weight.

        With `context_id`, repeated observations from the same context count once.
        """
        ...

    async def merge_entity(self, source_id: str, target_id: str) -> None: ...

    async def delete_by_user(self, user_id: str) -> int: ...

    # --- point reads ---

    async def get_kb(self, kb_id: str) -> KnowledgeBase | None: ...

    async def get_context(self, context_id: str) -> Context | None: ...

    async def get_entity(self, entity_id: str) -> Entity | None: ...

    async def get_entity_by_name(self, name: str, *, ignore_case: bool = False) -> Entity | None: ...

    # --- ANN ---

    async def knn_contexts(self, qvec: list[float], k: int) -> list[tuple[Context, float]]: ...

    async def knn_entities(self, qvec: list[float], k: int) -> list[tuple[Entity, float]]: ...

    async def knn_kbs(self, qvec: list[float], k: int) -> list[tuple[KnowledgeBase, float]]: ...

    async def knn_recent_contexts(self, days: int, qvec: list[float], k: int) -> list[tuple[Context, float]]: ...

    # --- time filters (created_at DESC) ---

    async def recent_contexts(self, days: int) -> list[Context]: ...

    async def contexts_between(self, t0: datetime, t1: datetime) -> list[Context]: ...

    async def recent_kbs(self, hours: int) -> list[KnowledgeBase]: ...

    async def kbs_since(self, t: datetime) -> list[KnowledgeBase]: ...

    async def kbs_of_user(self, user_id: str) -> list[KnowledgeBase]: ...

    # --- structure / graph ---

    async def contexts_of_kb(self, kb_id: str) -> list[Context]: ...

    async def siblings(self, context_id: str) -> list[Context]: ...

    async def contexts_of_entity(self, entity_id: str) -> list[Context]: ...

    async def entities_of_context(self, context_id: str) -> list[Entity]: ...

    async def out_edges(self, entity_id: str) -> list[Edge]: ...

    async def in_edges(self, entity_id: str) -> list[Edge]: ...

    async def two_hop(self, entity_id: str) -> list[EntityRef]: ...

    async def top_edges(self, k: int) -> list[WeightedEdge]: ...

    async def relations_by_source(self, entity_id: str) -> list[Relation]: ...

    async def relations_by_target(self, entity_id: str) -> list[Relation]: ...

    async def relations_by_type(self, relation_type: str) -> list[Relation]: ...

    async def disambiguate(self, name: str, context_vec: list[float]) -> Entity | None: ...

    # --- provider setup ---

    async def save_setup_config(self, config: dict[str, Any]) -> None: ...

    async def active_setup_config(self) -> dict[str, Any] | None: ...

    async def close(self) -> None: ...
