# tests/test_idempotency.py
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from db.idempotency import WebhookEventStore
from db.models import Base

pytestmark = pytest.mark.asyncio


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest_asyncio.fixture
async def sessionmaker():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_store(sessionmaker, clock) -> WebhookEventStore:
    return WebhookEventStore(sessionmaker, ttl_seconds=86400, clock=clock)


async def test_record_then_exists(event_store):
    assert not await event_store.exists("evt-1")

    await event_store.record("evt-1")

    assert await event_store.exists("evt-1")
    assert not await event_store.exists("evt-2")


async def test_record_expires_after_ttl(event_store, clock):
    await event_store.record("evt-1")

    clock.advance(hours=23, minutes=59)
    assert await event_store.exists("evt-1")

    clock.advance(minutes=2)
    assert not await event_store.exists("evt-1")


async def test_expired_id_can_be_recorded_again(event_store, clock):
    await event_store.record("evt-1")
    clock.advance(days=2)

    await event_store.record("evt-1")

    assert await event_store.exists("evt-1")


async def test_second_insert_within_ttl_hits_unique_constraint(event_store):
    """Concurrent duplicates that both pass exists() are stopped only here."""
    await event_store.record("evt-1")

    with pytest.raises(IntegrityError):
        await event_store.record("evt-1")


async def test_purge_expired(event_store, clock):
    await event_store.record("old-1")
    await event_store.record("old-2")
    clock.advance(days=1, seconds=1)
    await event_store.record("fresh")

    assert await event_store.purge_expired() == 2
    assert await event_store.exists("fresh")
    assert await event_store.purge_expired() == 0


async def test_ping(event_store):
    await event_store.ping()
