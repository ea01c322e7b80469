"""Error taxonomy shared by the front-door, the query engine and the pipeline.

Every error carries a ``kind`` so callers and the HTTP layer can branch on it
without caring which concrete class was raised.
"""

from __future__ import annotations


class MemoryServiceError(Exception):
    kind = "INTERNAL"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidInputError(MemoryServiceError, ValueError):
    kind = "INVALID_INPUT"


class EmbedFailedError(MemoryServiceError):
    kind = "EMBED_FAILED"


class ProviderError(MemoryServiceError):
    """Upstream LLM failure that is not an auth problem."""

    kind = "PROVIDER_FAILED"


class AuthFailedError(MemoryServiceError):
    kind = "AUTH_FAILED"


class StoreFailedError(MemoryServiceError):
    kind = "STORE_FAILED"


class StoreConflictError(StoreFailedError):
    # consumed on idempotent paths, never surfaced
    kind = "STORE_CONFLICT"


class NotFoundError(MemoryServiceError, LookupError):
    kind = "NOT_FOUND"
