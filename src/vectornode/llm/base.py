from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import AuthFailedError
from ..http import HttpClientFactory, transient_retry
from .providers import ProviderConfig

logger = logging.getLogger(__name__)

_AUTH_STATUS = (401, 403)


class ProviderHttpClient:
    """One shared httpx client per provider, with retry on transient failures.

    Safe for concurrent use by many tasks.
    """

    def __init__(self, cfg: ProviderConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self._client = HttpClientFactory.client(
            cfg.resolved_base_url,
            headers=cfg.headers(),
            read_timeout=cfg.timeout_seconds,
            transport=transport,
        )

    async def _post_once(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        resp = await self._client.post(path, json=body, params=self.cfg.params())
        resp.raise_for_status()
        return resp.json()

    async def post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        call = transient_retry(
            attempts=self.cfg.max_attempts,
            initial=self.cfg.retry_wait_seconds,
            jitter=self.cfg.retry_wait_seconds,
        )(self._post_once)
        try:
            return await call(path, body)
        except httpx.HTTPStatusError as e:
            if e.response.status_code in _AUTH_STATUS:
                raise AuthFailedError(
                    f"{self.cfg.provider.value} rejected credentials (HTTP {e.response.status_code})"
                ) from e
            raise

    async def aclose(self) -> None:
        await self._client.aclose()
