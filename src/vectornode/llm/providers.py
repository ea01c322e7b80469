from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import InvalidInputError
from ..settings import Settings

if TYPE_CHECKING:
    from .chat import ChatModel
    from .embedder import Embedder

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    OPENAI = "OPENAI"
    GEMINI = "GEMINI"
    AZURE = "AZURE"
    OLLAMA = "OLLAMA"
    MISTRAL = "MISTRAL"


DEFAULT_BASE_URLS: dict[Provider, str | None] = {
    Provider.OPENAI: "https://api.openai.com/v1",
    Provider.GEMINI: "https://generativelanguage.googleapis.com/v1beta/openai/",
    Provider.MISTRAL: "https://api.mistral.ai/v1",
    Provider.OLLAMA: "http://localhost:11434",
    Provider.AZURE: None,
}


def parse_provider(value: str | Provider) -> Provider:
    try:
        return Provider(str(value.value if isinstance(value, Provider) else value).strip().upper())
    except ValueError:
        raise InvalidInputError(f"Unsupported provider: {value}") from None


@dataclass(frozen=True)
class ProviderConfig:
    provider: Provider
    chat_model: str
    embed_model: str
    api_key: str | None = None
    base_url: str | None = None
    embedding_dim: int | None = None
    azure_api_version: str = "2024-06-01"
    timeout_seconds: float = 60.0
    max_attempts: int = 4
    retry_wait_seconds: float = 0.5

    def __post_init__(self) -> None:
        if not (self.chat_model or "").strip() or not (self.embed_model or "").strip():
            raise InvalidInputError("model names must not be blank")
        if self.provider is Provider.AZURE and not self.base_url:
            raise InvalidInputError("AZURE requires a base_url (resource endpoint)")
        if self.provider is not Provider.OLLAMA and not self.api_key:
            raise InvalidInputError(f"{self.provider.value} requires an api_key")

    @classmethod
    def from_settings(cls, s: Settings, **overrides: Any) -> "ProviderConfig":
        """Environment configuration, with `overrides` (e.g. a saved setup) taking precedence."""
        fields: dict[str, Any] = dict(
            provider=parse_provider(s.embedding_provider),
            chat_model=s.chat_model_name,
            embed_model=s.embed_model_name,
            api_key=s.embedding_api_key,
            base_url=s.embedding_base_url,
            embedding_dim=s.embedding_dim,
            azure_api_version=s.azure_api_version,
            timeout_seconds=s.provider_timeout_seconds,
            max_attempts=s.provider_max_attempts,
        )
        fields.update({k: v for k, v in overrides.items() if v is not None})
        fields["provider"] = parse_provider(fields["provider"])
        return cls(**fields)

    def with_overrides(self, **changes: Any) -> "ProviderConfig":
        return replace(self, **changes)

    @property
    def resolved_base_url(self) -> str:
        return self.base_url or DEFAULT_BASE_URLS[self.provider] or ""

    def headers(self) -> dict[str, str]:
        if self.provider is Provider.AZURE:
            return {"api-key": self.api_key or ""}
        if self.provider is Provider.OLLAMA:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def params(self) -> dict[str, str]:
        if self.provider is Provider.AZURE:
            return {"api-version": self.azure_api_version}
        return {}

    # --- wire format ---

    def embed_request(self, text: str) -> tuple[str, dict[str, Any]]:
        if self.provider is Provider.OLLAMA:
            return "api/embed", {"model": self.embed_model, "input": text}
        if self.provider is Provider.AZURE:
            return f"openai/deployments/{self.embed_model}/embeddings", {"input": text}
        return "embeddings", {"model": self.embed_model, "input": text}

    def parse_embedding(self, payload: dict[str, Any]) -> list[float]:
        if self.provider is Provider.OLLAMA:
            vec = payload["embeddings"][0]
        else:
            vec = payload["data"][0]["embedding"]
        return [float(x) for x in vec]

    def chat_request(self, prompt: str) -> tuple[str, dict[str, Any]]:
        messages = [{"role": "user", "content": prompt}]
        if self.provider is Provider.OLLAMA:
            return "api/chat", {"model": self.chat_model, "messages": messages, "stream": False}
        if self.provider is Provider.AZURE:
            return f"openai/deployments/{self.chat_model}/chat/completions", {"messages": messages}
        return "chat/completions", {"model": self.chat_model, "messages": messages}

    def parse_chat(self, payload: dict[str, Any]) -> str:
        if self.provider is Provider.OLLAMA:
            return str(payload["message"]["content"] or "")
        return str(payload["choices"][0]["message"]["content"] or "")


@dataclass
class LLMClients:
    """The embedding + chat pair handed to ingest, workers and queries.

    Owned by the process root; swapped as a whole when the provider is reconfigured.
    """

    config: ProviderConfig | None
    embedder: Embedder
    chat: ChatModel

    async def aclose(self) -> None:
        for c in (self.embedder, self.chat):
            close = getattr(c, "aclose", None)
            if close is not None:
                await close()


def build_llm_clients(cfg: ProviderConfig, *, transport=None) -> LLMClients:
    from .chat import HttpChatModel
    from .embedder import HttpEmbedder

    logger.info(
        "Building LLM clients provider=%s chat_model=%s embed_model=%s base_url=%s",
        cfg.provider.value,
        cfg.chat_model,
        cfg.embed_model,
        cfg.resolved_base_url,
    )
    return LLMClients(
        config=cfg,
        embedder=HttpEmbedder(cfg, transport=transport),
        chat=HttpChatModel(cfg, transport=transport),
    )


def unconfigured_llm_clients(reason: str, *, embedding_dim: int = 0) -> LLMClients:
    from .chat import UnconfiguredChatModel
    from .embedder import UnconfiguredEmbedder

    return LLMClients(
        config=None,
        embedder=UnconfiguredEmbedder(embedding_dim, reason),
        chat=UnconfiguredChatModel(reason),
    )
