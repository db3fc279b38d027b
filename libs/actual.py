# libs/actual.py
"""Async client for Actual Budget through the ``actual-http-api`` REST wrapper.

* Все пути вида ``/v1/budgets/{sync_id}/...``, ответ завёрнут в ``{"data": ...}``.
* Сессия (``httpx.AsyncClient``) открывается в :meth:`ActualClient.init` и
  закрывается в :meth:`ActualClient.shutdown`. Любой вызов данных лениво
  вызывает ``init``.
* :func:`budget_session` – scoped-ресурс на время одной ветки вебхука: каждая
  ветка получает собственное соединение (:meth:`ActualClient.new_session`),
  release выполняется на любом выходе (успех, бизнес-ошибка, исключение).
* Ошибки сети, HTTP и разбора ответа – всегда :class:`~libs.errors.UpstreamError`.

Суммы – целые минорные единицы (сотые).
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from libs.config import Settings
from libs.errors import UpstreamError
from libs.models import Account, BudgetMonth, Category, LedgerTransaction, Payee

__all__ = ["ActualClient", "budget_session"]

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _parse_list(op: str, model_cls: type[M], data: Any) -> list[M]:
    try:
        return [model_cls.model_validate(item) for item in data or []]
    except (ValidationError, TypeError) as exc:
        raise UpstreamError(f"Actual API Error ({op}): {exc}") from exc


class ActualClient:
    """Tiny async client for the subset of actual-http-api endpoints we use."""

    def __init__(
        self,
        *,
        base_url: str,
        sync_id: str,
        api_key: str | None = None,
        encryption_password: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._sync_id = sync_id
        self._api_key = api_key
        self._encryption_password = encryption_password
        self._base_url = base_url.rstrip("/")
        self._prefix = f"/v1/budgets/{sync_id}"
        self._headers: dict[str, str] = {}
        if api_key:
            self._headers["x-api-key"] = api_key
        if encryption_password:
            self._headers["budget-encryption-password"] = encryption_password
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ActualClient":
        return cls(
            base_url=settings.actual_api_url,
            sync_id=settings.actual_sync_id,
            api_key=settings.actual_api_key,
            encryption_password=settings.actual_encryption_password,
        )

    def new_session(self) -> "ActualClient":
        """Клиент с теми же настройками, но со своим (ещё не открытым) соединением."""
        return ActualClient(
            base_url=self._base_url,
            sync_id=self._sync_id,
            api_key=self._api_key,
            encryption_password=self._encryption_password,
            transport=self._transport,
        )

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------ lifecycle
    async def init(self) -> None:
        if self._client is not None:
            return
        logger.info("Initializing connection to Actual Budget server...")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            transport=self._transport,
        )
        logger.info("Successfully connected to Actual Budget server.")

    async def shutdown(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("Connection to Actual Budget server shut down.")

    # ------------------------------------------------------------- low level
    async def _request(self, op: str, method: str, path: str, **kwargs: Any) -> Any:
        await self.init()
        client = self._client
        if client is None:
            raise UpstreamError(f"Actual API Error ({op}): connection is not initialized")
        try:
            resp = await client.request(method, f"{self._prefix}{path}", **kwargs)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(f"Actual API Error ({op}): {exc.response.text}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamError(f"Actual API Error ({op}): {exc}") from exc
        if not isinstance(payload, dict):
            raise UpstreamError(f"Actual API Error ({op}): unexpected response {payload!r}")
        return payload.get("data")

    # -------------------------------------------------------------- business
    async def get_accounts(self) -> list[Account]:
        logger.info("Getting all accounts...")
        data = await self._request("getAccounts", "GET", "/accounts")
        return _parse_list("getAccounts", Account, data)

    async def get_categories(self) -> list[Category]:
        logger.info("Getting all categories...")
        data = await self._request("getCategories", "GET", "/categories")
        return _parse_list("getCategories", Category, data)

    async def get_payees(self) -> list[Payee]:
        logger.info("Getting all payees...")
        data = await self._request("getPayees", "GET", "/payees")
        return _parse_list("getPayees", Payee, data)

    async def get_account_balance(self, account_id: str) -> int:
        logger.info("Getting balance for account: %s", account_id)
        data = await self._request("getAccountBalance", "GET", f"/accounts/{account_id}/balance")
        try:
            return int(data or 0)
        except (TypeError, ValueError) as exc:
            raise UpstreamError(f"Actual API Error (getAccountBalance): {exc}") from exc

    async def get_budget_month(self, month: str) -> BudgetMonth:
        """Бюджет за месяц ``YYYY-MM``."""
        logger.info("Getting budget for month: %s", month)
        data = await self._request("getBudgetMonth", "GET", f"/months/{month}")
        try:
            return BudgetMonth.model_validate(data or {"month": month})
        except ValidationError as exc:
            raise UpstreamError(f"Actual API Error (getBudgetMonth): {exc}") from exc

    async def add_transactions(
        self,
        account_id: str,
        transactions: Sequence[LedgerTransaction],
        *,
        run_transfers: bool = False,
    ) -> list[str]:
        logger.info("Adding %d transaction(s) to account %s", len(transactions), account_id)
        body = {
            "learnCategories": False,
            "runTransfers": run_transfers,
            "transactions": [t.model_dump(exclude_none=True) for t in transactions],
        }
        data = await self._request(
            "addTransactions", "POST", f"/accounts/{account_id}/transactions/batch", json=body
        )
        return list(data) if isinstance(data, list) else []


@asynccontextmanager
async def budget_session(client: ActualClient) -> AsyncIterator[ActualClient]:
    """Open a dedicated budget connection for one branch and always release it.

    Concurrent webhook requests never share the yielded client, so one branch
    closing its connection can not cut off another one mid-request.
    """
    session = client.new_session()
    try:
        await session.init()
        yield session
    finally:
        await session.shutdown()
