from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from ..errors import AuthFailedError, EmbedFailedError
from .base import ProviderHttpClient
from .providers import ProviderConfig

logger = logging.getLogger(__name__)


class Embedder:
    dim: int

    async def embed(self, text: str) -> list[float]:
        raise NotImplementedError

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))


@dataclass
class StubEmbedder(Embedder):
    """Deterministic byte-hashing embedder for tests and offline runs."""

    dim: int = 384

    async def embed(self, text: str) -> list[float]:
        v = [0.0] * self.dim
        b = text.encode("utf-8", errors="ignore")
        for i, ch in enumerate(b):
            v[(i + ch) % self.dim] += 1.0
        if not b:
            v[0] = 1.0
        norm = sum(x * x for x in v) ** 0.5
        if norm:
            v = [x / norm for x in v]
        return v


class HttpEmbedder(Embedder):
    """text -> fixed-dimension vector over the configured provider."""

    def __init__(self, cfg: ProviderConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self.dim = cfg.embedding_dim or 0
        self._http = ProviderHttpClient(cfg, transport=transport)

    async def embed(self, text: str) -> list[float]:
        path, body = self.cfg.embed_request(text)
        try:
            payload = await self._http.post_json(path, body)
            vec = self.cfg.parse_embedding(payload)
        except AuthFailedError:
            raise
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning("Embedding call failed provider=%s: %s", self.cfg.provider.value, e)
            raise EmbedFailedError(f"embedding failed: {e}") from e

        if self.dim and len(vec) != self.dim:
            raise EmbedFailedError(f"embedding dimension {len(vec)} != configured {self.dim}")
        if not self.dim:
            self.dim = len(vec)
        return vec

    async def aclose(self) -> None:
        await self._http.aclose()


class UnconfiguredEmbedder(Embedder):
    """Placeholder until a provider is configured through POST /api/setup."""

    def __init__(self, dim: int = 0, reason: str = "LLM provider is not configured"):
        self.dim = dim
        self.reason = reason

    async def embed(self, text: str) -> list[float]:
        raise EmbedFailedError(self.reason)
