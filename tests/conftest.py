# tests/conftest.py
"""Общие фикстуры: сущности Actual, моки клиентов и in-memory хранилище."""
from __future__ import annotations

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from libs.actual import ActualClient
from libs.config import get_settings
from libs.gemini import GeminiAssistant
from libs.models import Account, Category, Payee
from libs.waha import WahaClient
from services.webhook_gateway.orchestrator import WebhookOrchestrator
from services.webhook_gateway.schemas import MessagePayload

TODAY = date(2026, 10, 17)


class InMemoryEventStore:
    """Заглушка WebhookEventStore без TTL.

    ``exists`` отдаёт управление циклу событий, как настоящий запрос к БД, –
    так в тестах воспроизводится гонка проверки и записи.
    """

    def __init__(self) -> None:
        self.events: set[str] = set()
        self.ping = AsyncMock()

    async def exists(self, event_id: str) -> bool:
        found = event_id in self.events
        await asyncio.sleep(0)
        return found

    async def record(self, event_id: str) -> None:
        self.events.add(event_id)


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch: pytest.MonkeyPatch):
    """Денежный формат и прочее – из значений по умолчанию, без .env."""
    monkeypatch.setenv("CURRENCY_SYMBOL", "Rp")
    monkeypatch.setenv("CURRENCY_THOUSANDS_SEP", ".")
    monkeypatch.setenv("CURRENCY_DECIMAL_SEP", ",")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def accounts() -> list[Account]:
    return [
        Account(id="acc-cash", name="Cash"),
        Account(id="acc-gopay", name="Gopay"),
        Account(id="acc-bri", name="BRI"),
        Account(id="acc-old", name="Old Savings", closed=True),
    ]


@pytest.fixture
def categories() -> list[Category]:
    return [
        Category(id="cat-food", name="Food & Drink", group_id="grp-daily"),
        Category(id="cat-transport", name="Transport", group_id="grp-daily"),
        Category(id="cat-groceries", name="Groceries", group_id="grp-daily"),
        Category(id="cat-salary", name="Salary", is_income=True, group_id="grp-income"),
    ]


@pytest.fixture
def payees() -> list[Payee]:
    # У BRI нет внутреннего transfer-payee.
    return [
        Payee(id="pay-cash", name="", transfer_acct="acc-cash"),
        Payee(id="pay-gopay", name="", transfer_acct="acc-gopay"),
        Payee(id="pay-starbucks", name="Starbucks"),
    ]


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def messenger() -> AsyncMock:
    return AsyncMock(spec=WahaClient)


@pytest.fixture
def llm() -> AsyncMock:
    return AsyncMock(spec=GeminiAssistant)


@pytest.fixture
def budget(accounts, categories, payees) -> AsyncMock:
    mock = AsyncMock(spec=ActualClient)
    mock.new_session.return_value = mock  # сессия ветки – тот же мок
    mock.get_accounts.return_value = accounts
    mock.get_categories.return_value = categories
    mock.get_payees.return_value = payees
    mock.add_transactions.return_value = ["txn-1"]
    return mock


@pytest.fixture
def orchestrator(store, messenger, llm, budget) -> WebhookOrchestrator:
    return WebhookOrchestrator(
        store=store,  # type: ignore[arg-type]
        messenger=messenger,
        llm=llm,
        budget=budget,
        today=lambda: TODAY,
    )


def make_payload(body: str, event_id: str = "false_628111@c.us_AAA") -> MessagePayload:
    return MessagePayload.model_validate(
        {"id": event_id, "from": "628111@c.us", "to": "628999@c.us", "body": body}
    )
