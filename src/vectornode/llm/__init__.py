"""Provider clients: embeddings (text -> vector) and chat (prompt -> text)."""

from .chat import ChatModel, HttpChatModel
from .embedder import Embedder, HttpEmbedder, StubEmbedder
from .extraction import ExtractedEntity, ExtractedRelation, ExtractionResult, LlmExtractor
from .providers import LLMClients, Provider, ProviderConfig, build_llm_clients, unconfigured_llm_clients

__all__ = [
    "ChatModel",
    "HttpChatModel",
    "Embedder",
    "HttpEmbedder",
    "StubEmbedder",
    "ExtractedEntity",
    "ExtractedRelation",
    "ExtractionResult",
    "LlmExtractor",
    "LLMClients",
    "Provider",
    "ProviderConfig",
    "build_llm_clients",
    "unconfigured_llm_clients",
]
