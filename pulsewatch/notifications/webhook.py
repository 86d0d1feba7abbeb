"""Webhook delivery. Plain httpx POST of a JSON payload."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from ..errors import DeliveryError

logger = logging.getLogger(__name__)


class WebhookPoster(Protocol):
    async def post(self, url: str, payload: dict[str, Any]) -> None: ...


class WebhookSender:
    def __init__(self, timeout: float = 10.0) -> None:
        self._client = httpx.AsyncClient(timeout=timeout)

    async def post(self, url: str, payload: dict[str, Any]) -> None:
        try:
            resp = await self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook request failed: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise DeliveryError(
                f"Webhook returned status code {resp.status_code}: {resp.text[:200]}"
            )
        logger.debug("Webhook delivered (%d)", resp.status_code)

    async def close(self) -> None:
        await self._client.aclose()
