from __future__ import annotations

import logging
from datetime import UTC, datetime

from ..container import Container, provider_config_for
from ..llm import build_llm_clients
from .schemas import SetupIn, SetupOut

logger = logging.getLogger(__name__)


async def apply_setup(container: Container, req: SetupIn) -> SetupOut:
    """Validate, optionally probe, persist and activate a provider configuration.

    The probe is one embedding call: rejected credentials raise AuthFailedError,
    upstream failures EmbedFailedError. Nothing is persisted or swapped unless
    the probe passes.
    """
    saved = {
        "provider": req.provider.strip().upper(),
        "model_name": req.model_name,
        "embed_model_name": req.embed_model_name,
        "api_key": req.api_key,
        "base_url": req.base_url,
    }
    cfg = provider_config_for(container.settings, saved)
    clients = build_llm_clients(cfg, transport=container.transport)
    if req.verify:
        try:
            await clients.embedder.embed("connection check")
        except BaseException:
            await clients.aclose()
            raise

    await container.store.save_setup_config(saved)
    old = container.set_llm(clients)
    await old.aclose()
    logger.info("LLM provider configured: %s chat_model=%s", cfg.provider.value, cfg.chat_model)
    return SetupOut(
        success=True,
        message=f"{cfg.provider.value} configured" + (" and verified" if req.verify else ""),
        configured_provider=cfg.provider.value,
        configured_model=cfg.chat_model,
        timestamp=datetime.now(UTC),
    )
