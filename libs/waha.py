# libs/waha.py
"""A *very* thin async wrapper around the WAHA (WhatsApp HTTP API) gateway.

Нам нужны ровно два эндпоинта:

* ``POST /api/sendText`` – ответ пользователю. Ошибка → :class:`UpstreamError`.
* ``POST /api/sendSeen`` – «прочитано». Некритично: ошибка только в warning.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from libs.config import Settings
from libs.errors import UpstreamError

__all__ = ["WahaClient"]

logger = logging.getLogger(__name__)


def _describe(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.text
    return str(exc)


class WahaClient:
    """Tiny async client for the subset of WAHA endpoints we use."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        session: str = "default",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-Api-Key"] = api_key
        self._session = session
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "WahaClient":
        return cls(
            base_url=settings.waha_base_url,
            api_key=settings.waha_api_key,
            session=settings.waha_session,
        )

    # ------------------------------------------------------------- low level
    async def _post(self, path: str, payload: dict[str, Any]) -> None:
        resp = await self._client.post(path, json={"session": self._session, **payload})
        resp.raise_for_status()

    # -------------------------------------------------------------- business
    async def send_text(self, chat_id: str, text: str) -> None:
        """Send a text message to *chat_id* (e.g. ``'628123456789@c.us'``)."""
        logger.info('Sending message to %s: "%s"', chat_id, text)
        try:
            await self._post("/api/sendText", {"chatId": chat_id, "text": text})
        except httpx.HTTPError as exc:
            raise UpstreamError(f"WAHA API Error: {_describe(exc)}") from exc

    async def send_seen(self, chat_id: str) -> None:
        """Mark *chat_id* as seen. Never raises on gateway errors."""
        logger.info("Marking chat %s as seen.", chat_id)
        try:
            await self._post("/api/sendSeen", {"chatId": chat_id})
        except httpx.HTTPError as exc:
            logger.warning("WAHA API Error (sendSeen): %s", _describe(exc))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "WahaClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
