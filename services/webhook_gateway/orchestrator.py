# services/webhook_gateway/orchestrator.py
"""Обработка одного вебхука WAHA от начала до ответа пользователю.

Порядок строго линейный:

1. идемпотентность по ``payload.id`` (запись *до* любой обработки);
2. ``sendSeen`` отправителю (ошибка – только warning);
3. классификация намерения в Gemini;
4. ветка по маршруту: вопрос / транзакция / запрос баланса;
5. ``sendText`` с итоговым ответом.

Ошибки сопоставления имён (счёт, категория, transfer-payee) превращаются в
текст ответа. Все прочие ошибки ветки логируются, пользователю уходит общее
извинение, и исключение пробрасывается дальше – запрос считается упавшим.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from db.idempotency import WebhookEventStore
from libs.actual import ActualClient, budget_session
from libs.gemini import GeminiAssistant
from libs.matching import find_transfer_payee, resolve_by_name
from libs.models import (
    Account,
    BalanceQuery,
    BalanceQueryRoute,
    Category,
    IncomingMessage,
    LedgerTransaction,
    Payee,
    QueryType,
    QuestionRoute,
    TransactionDetail,
    TransactionExtraction,
    TransactionRoute,
)
from libs.money import format_money, to_minor_units
from libs.waha import WahaClient

from services.webhook_gateway.metrics import (
    BRANCH_FAILURES,
    INTENTS,
    TRANSACTIONS_POSTED,
    WEBHOOKS,
)
from services.webhook_gateway.schemas import MessagePayload

__all__ = ["WebhookOrchestrator", "WebhookStatus"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSACTION_FAILURE_REPLY = (
    "Sorry, I encountered an error while processing your transaction with Actual Budget."
)
BALANCE_FAILURE_REPLY = "Sorry, I had trouble fetching your balance information."


class WebhookStatus(str, Enum):
    RECEIVED = "received"
    DUPLICATE_IGNORED = "duplicate_ignored"


class ResolutionError(Exception):
    """Имя из LLM не нашлось среди сущностей Actual; ``reply`` уходит пользователю."""

    def __init__(self, reply: str) -> None:
        super().__init__(reply)
        self.reply = reply


def _require(entity: Optional[T], reply: str) -> T:
    if entity is None:
        raise ResolutionError(reply)
    return entity


class WebhookOrchestrator:
    def __init__(
        self,
        *,
        store: WebhookEventStore,
        messenger: WahaClient,
        llm: GeminiAssistant,
        budget: ActualClient,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._messenger = messenger
        self._llm = llm
        self._budget = budget
        self._today = today
        self._handlers: dict[type, Callable[[Any, IncomingMessage], Awaitable[str]]] = {
            QuestionRoute: self._handle_question,
            TransactionRoute: self._handle_transaction,
            BalanceQueryRoute: self._handle_balance_query,
        }

    @property
    def store(self) -> WebhookEventStore:
        return self._store

    async def aclose(self) -> None:
        await self._messenger.aclose()
        await self._budget.shutdown()

    # ------------------------------------------------------------------ entry
    async def handle(self, event: str, payload: Optional[MessagePayload]) -> WebhookStatus:
        if event != "message" or payload is None or not payload.id:
            WEBHOOKS.labels(outcome="ignored").inc()
            return WebhookStatus.RECEIVED

        event_id = payload.id
        if await self._store.exists(event_id):
            logger.info("Duplicate event received, ignoring: %s", event_id)
            WEBHOOKS.labels(outcome="duplicate").inc()
            return WebhookStatus.DUPLICATE_IGNORED
        await self._store.record(event_id)

        message = IncomingMessage(id=event_id, sender=payload.sender, to=payload.to, body=payload.body)
        logger.info("New %s from %s to %s: %s", event, message.sender, message.to, message.body)

        await self._messenger.send_seen(message.sender)

        classification = await self._llm.determine_intent(message.body)
        logger.info("Determined intent: %s", classification.intent.value)
        INTENTS.labels(intent=classification.intent.value).inc()

        route = classification.to_route()
        handler = self._handlers.get(type(route))
        if handler is None:
            raise TypeError(f"Unhandled intent route: {route!r}")
        final_response = await handler(route, message)

        logger.info("Final response to user: %s", final_response)
        await self._messenger.send_text(message.sender, final_response)
        WEBHOOKS.labels(outcome="processed").inc()
        return WebhookStatus.RECEIVED

    async def _apologise(self, message: IncomingMessage, reply: str) -> None:
        try:
            await self._messenger.send_text(message.sender, reply)
        except Exception:
            logger.warning("Could not deliver failure reply to %s", message.sender, exc_info=True)

    # --------------------------------------------------------------- question
    async def _handle_question(self, route: QuestionRoute, message: IncomingMessage) -> str:
        answer = await self._llm.get_answer(message.body)
        logger.info("Answer: %s", answer)
        return answer

    # ------------------------------------------------------------ transaction
    async def _handle_transaction(self, route: TransactionRoute, message: IncomingMessage) -> str:
        try:
            async with budget_session(self._budget) as budget:
                accounts, categories, payees = await asyncio.gather(
                    budget.get_accounts(),
                    budget.get_categories(),
                    budget.get_payees(),
                )
                extraction = await self._llm.process_transaction(
                    message.body,
                    [acc.name for acc in accounts],
                    [cat.name for cat in categories],
                )
                logger.info("Transaction data: %s", extraction.model_dump())
                try:
                    await self._post_transaction(budget, route.detail, extraction, accounts, categories, payees)
                except ResolutionError as exc:
                    return exc.reply
                TRANSACTIONS_POSTED.labels(detail=route.detail.value).inc()
                return extraction.message_to_user
        except Exception:
            logger.exception("Error during Actual Budget integration")
            BRANCH_FAILURES.labels(branch="transaction").inc()
            await self._apologise(message, TRANSACTION_FAILURE_REPLY)
            raise

    async def _post_transaction(
        self,
        budget: ActualClient,
        detail: TransactionDetail,
        extraction: TransactionExtraction,
        accounts: list[Account],
        categories: list[Category],
        payees: list[Payee],
    ) -> None:
        account = _require(
            resolve_by_name(extraction.source_account_name, accounts),
            f'Sorry, I couldn\'t find an account named "{extraction.source_account_name}".',
        )
        amount = abs(to_minor_units(extraction.amount))
        today = self._today().isoformat()

        if detail is TransactionDetail.TRANSFER:
            destination = _require(
                resolve_by_name(extraction.payee, accounts),
                f'Sorry, I couldn\'t find a destination account named "{extraction.payee}" for the transfer.',
            )
            destination_payee = _require(
                find_transfer_payee(destination.id, payees),
                f'Sorry, I couldn\'t find the internal transfer payee for account "{destination.name}".',
            )
            source_payee = _require(
                find_transfer_payee(account.id, payees),
                f'Sorry, I couldn\'t find the internal transfer payee for account "{account.name}".',
            )
            withdrawal = LedgerTransaction(
                date=today,
                amount=-amount,
                payee=destination_payee.id,
                notes=extraction.description or f"Transfer to {destination.name}",
                cleared=False,
            )
            deposit = LedgerTransaction(
                date=today,
                amount=amount,
                payee=source_payee.id,
                notes=extraction.description or f"Transfer from {account.name}",
                cleared=False,
            )
            await budget.add_transactions(account.id, [withdrawal])
            await budget.add_transactions(destination.id, [deposit])
            return

        category = _require(
            resolve_by_name(extraction.category, categories),
            f'Sorry, I couldn\'t find a category named "{extraction.category}".',
        )
        transaction = LedgerTransaction(
            date=today,
            amount=amount if detail is TransactionDetail.INCOME else -amount,
            notes=extraction.description,
            category=category.id,
            payee_name=extraction.payee,
            cleared=False,
        )
        await budget.add_transactions(account.id, [transaction])

    # ---------------------------------------------------------- balance query
    async def _handle_balance_query(self, route: BalanceQueryRoute, message: IncomingMessage) -> str:
        try:
            async with budget_session(self._budget) as budget:
                accounts, categories = await asyncio.gather(
                    budget.get_accounts(),
                    budget.get_categories(),
                )
                query = await self._llm.process_balance_query(
                    message.body,
                    [acc.name for acc in accounts],
                    [cat.name for cat in categories],
                )
                logger.info("Balance query data: %s", query.model_dump())
                if query.query_type is QueryType.ACCOUNT:
                    return await self._account_balances(budget, query, accounts)
                return await self._budget_report(budget, query)
        except Exception:
            logger.exception("Error during balance query")
            BRANCH_FAILURES.labels(branch="query_balance").inc()
            await self._apologise(message, BALANCE_FAILURE_REPLY)
            raise

    async def _account_line(self, budget: ActualClient, account: Account) -> str:
        balance = await budget.get_account_balance(account.id)
        return f"*{account.name}:* {format_money(balance)}"

    async def _account_balances(self, budget: ActualClient, query: BalanceQuery, accounts: list[Account]) -> str:
        if query.is_all:
            lines = await asyncio.gather(
                *(self._account_line(budget, acc) for acc in accounts if not acc.closed)
            )
            return "\n".join(["*🏦 All Account Balances:*", *lines])

        account = resolve_by_name(query.name, accounts)
        if account is None:
            return f'Sorry, I couldn\'t find an account named "{query.name}".'
        return "\n".join(["*🏦 Account Balance:*", await self._account_line(budget, account)])

    async def _budget_report(self, budget: ActualClient, query: BalanceQuery) -> str:
        month = self._today().strftime("%Y-%m")
        budget_month = await budget.get_budget_month(month)

        if query.name and not query.is_all:
            categories = [cat for group in budget_month.categoryGroups for cat in group.categories]
            category = resolve_by_name(query.name, categories)
            if category is None:
                return f'Sorry, I couldn\'t find a budget category named "{query.name}".'
            return (
                f"*📊 Budget for {category.name}:*\n"
                f"- *Budgeted:* {format_money(category.budgeted)}\n"
                f"- *Spent:* {format_money(abs(category.spent))}\n"
                f"- *Remaining:* {format_money(category.balance)}"
            )

        parts = ["*📊 Monthly Budget Summary:*"]
        for group in budget_month.categoryGroups:
            if group.is_income:
                continue
            parts.append(f"\n*{group.name}*")
            parts.extend(f"- {cat.name}: {format_money(cat.balance)}" for cat in group.categories)
        return "\n".join(parts)
