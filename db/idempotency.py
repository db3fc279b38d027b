# db/idempotency.py
"""Хранилище идемпотентности вебхуков.

Каждый ``payload.id`` записывается один раз и «живёт» ``ttl_seconds``
(по умолчанию сутки). Просроченные записи для :meth:`exists` не видны и
удаляются при следующей записи того же id или в :meth:`purge_expired`.

Проверка и запись – это обычный read-then-write, не блокировка: две
одновременные доставки одного id могут обе пройти :meth:`exists`. Вторая
запись тогда упадёт на unique-ограничении ``event_id``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import async_sessionmaker

from db.models import WebhookEvent

__all__ = ["WebhookEventStore"]

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        *,
        ttl_seconds: int = 60 * 60 * 24,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def _cutoff(self) -> datetime:
        return self._clock() - self._ttl

    async def exists(self, event_id: str) -> bool:
        stmt = select(WebhookEvent.id).where(
            WebhookEvent.event_id == event_id,
            WebhookEvent.created_at >= self._cutoff(),
        )
        async with self._sessionmaker() as sess:
            return (await sess.execute(stmt)).first() is not None

    async def record(self, event_id: str) -> None:
        async with self._sessionmaker() as sess:
            await sess.execute(
                delete(WebhookEvent).where(
                    WebhookEvent.event_id == event_id,
                    WebhookEvent.created_at < self._cutoff(),
                )
            )
            sess.add(WebhookEvent(event_id=event_id, created_at=self._clock()))
            await sess.commit()
        logger.debug("Recorded webhook event %s", event_id)

    async def purge_expired(self) -> int:
        async with self._sessionmaker() as sess:
            result = await sess.execute(
                delete(WebhookEvent).where(WebhookEvent.created_at < self._cutoff())
            )
            await sess.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d expired webhook event(s)", purged)
        return purged

    async def ping(self) -> None:
        """Лёгкая проверка доступности БД для /health."""
        async with self._sessionmaker() as sess:
            await sess.execute(text("SELECT 1"))
