from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from .errors import InvalidInputError
from .llm import LLMClients
from .models import Role
from .store.base import Store
from .util_text import is_blank

logger = logging.getLogger(__name__)


def parse_role(value: str | Role) -> Role:
    try:
        return Role(str(value.value if isinstance(value, Role) else value).strip().upper())
    except ValueError:
        raise InvalidInputError(f"role must be one of {', '.join(r.value for r in Role)}") from None


@dataclass(frozen=True)
class IngestReceipt:
    kb_id: str
    user_id: str
    role: Role
    embedding_dim: int
    processing_ms: float
    embedding_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "SUCCESS",
            "kb_id": self.kb_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "embedding_dim": self.embedding_dim,
            "processing_ms": self.processing_ms,
            "embedding_ms": self.embedding_ms,
            "message": "Document stored; chunking and extraction continue in the background",
        }


class IngestService:
    """Synchronous front-door: validate, embed the whole text, insert the KB row.

    The insert emits KB_CREATED; enrichment happens in the worker pool and is
    never awaited here.
    """

    def __init__(self, store: Store, llm: LLMClients):
        self.store = store
        self.llm = llm

    async def ingest(
        self,
        *,
        user_id: str,
        role: str | Role = Role.USER,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> IngestReceipt:
        started = time.perf_counter()
        if is_blank(user_id):
            raise InvalidInputError("user_id must not be blank")
        if is_blank(content):
            raise InvalidInputError("content must not be blank")
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidInputError("metadata must be an object")
        parsed_role = parse_role(role)

        t0 = time.perf_counter()
        vector = await self.llm.embedder.embed(content)
        embedding_ms = (time.perf_counter() - t0) * 1000.0

        meta = dict(metadata or {})
        meta.update(
            content_length=len(content),
            embedding_dimensions=len(vector),
            embedding_time_ms=round(embedding_ms, 3),
        )
        kb_id = await self.store.insert_kb(
            user_id=user_id, role=parsed_role, content=content, vector=vector, metadata=meta
        )
        processing_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "Ingest accepted kb_id=%s user_id=%s chars=%d in %.1fms", kb_id, user_id, len(content), processing_ms
        )
        return IngestReceipt(
            kb_id=kb_id,
            user_id=user_id,
            role=parsed_role,
            embedding_dim=len(vector),
            processing_ms=processing_ms,
            embedding_ms=embedding_ms,
        )
