from __future__ import annotations

import logging

import httpx

from ..errors import AuthFailedError, ProviderError
from .base import ProviderHttpClient
from .providers import ProviderConfig

logger = logging.getLogger(__name__)


class ChatModel:
    async def complete(self, prompt: str) -> str:
        raise NotImplementedError


class HttpChatModel(ChatModel):
    """prompt -> text over the configured provider."""

    def __init__(self, cfg: ProviderConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self._http = ProviderHttpClient(cfg, transport=transport)

    async def complete(self, prompt: str) -> str:
        path, body = self.cfg.chat_request(prompt)
        try:
            payload = await self._http.post_json(path, body)
            return self.cfg.parse_chat(payload)
        except AuthFailedError:
            raise
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(f"chat completion failed: {e}") from e

    async def aclose(self) -> None:
        await self._http.aclose()


class UnconfiguredChatModel(ChatModel):
    def __init__(self, reason: str = "LLM provider is not configured"):
        self.reason = reason

    async def complete(self, prompt: str) -> str:
        raise ProviderError(self.reason)
