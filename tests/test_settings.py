import pytest
from pydantic import ValidationError

from vectornode.container import provider_config_for
from vectornode.errors import InvalidInputError
from vectornode.llm import Provider
from vectornode.settings import Settings


def test_reads_plain_environment_names(monkeypatch):
    monkeypatch.setenv("EMBEDDING_PROVIDER", "mistral")
    monkeypatch.setenv("CHUNK_SIZE", "500")
    monkeypatch.setenv("CHUNK_OVERLAP", "50")
    monkeypatch.setenv("STORE_BACKEND", "memory")

    s = Settings()

    assert s.embedding_provider == "MISTRAL"
    assert (s.chunk_size, s.chunk_overlap) == (500, 50)
    assert s.store_backend == "memory"


@pytest.mark.parametrize(
    "fields",
    [
        {"embedding_provider": "COHERE"},
        {"chunk_size": 100, "chunk_overlap": 100},
        {"worker_pool_size": 0},
        {"store_backend": "sqlite"},
    ],
)
def test_invalid_settings(fields):
    with pytest.raises(ValidationError):
        Settings(**fields)


def test_saved_setup_overlays_environment():
    env = Settings(
        embedding_provider="OPENAI",
        embedding_api_key="env-key",
        embedding_base_url="https://proxy.internal/v1",
        chat_model_name="gpt-4o-mini",
    )

    base = provider_config_for(env)
    assert base.provider is Provider.OPENAI
    assert base.resolved_base_url == "https://proxy.internal/v1"

    cfg = provider_config_for(env, {"provider": "ollama", "model_name": "llama3", "base_url": None})
    assert cfg.provider is Provider.OLLAMA
    assert cfg.chat_model == "llama3"
    assert cfg.embed_model == env.embed_model_name
    assert cfg.resolved_base_url == "http://localhost:11434"


def test_missing_api_key_is_invalid():
    with pytest.raises(InvalidInputError):
        provider_config_for(Settings(embedding_provider="GEMINI", embedding_api_key=None))
