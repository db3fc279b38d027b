# libs/models.py
"""Domain models shared by the gateway, the LLM layer and the budget client.

Levels
------
1. **IncomingMessage** – то, что пришло из WAHA: минимальная нормализация.
2. **LLM-схемы** – :class:`IntentClassification`, :class:`TransactionExtraction`,
   :class:`BalanceQuery`. Gemini отдаёт JSON, Pydantic его валидирует.
3. **Actual-сущности** – :class:`Account`, :class:`Category`, :class:`Payee`,
   :class:`BudgetMonth`. Неизвестные поля бэкенда сохраняются (``extra="allow"``).
4. **LedgerTransaction** – то, что мы отправляем в Actual.

Intent routing is a tagged union (:data:`Route`): one dataclass per branch,
built by :meth:`IntentClassification.to_route`.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

__all__ = [
    "IncomingMessage",
    "Intent",
    "TransactionDetail",
    "IntentClassification",
    "TransactionExtraction",
    "QueryType",
    "BalanceQuery",
    "Account",
    "Category",
    "BudgetCategory",
    "CategoryGroup",
    "Payee",
    "BudgetMonth",
    "LedgerTransaction",
    "QuestionRoute",
    "TransactionRoute",
    "BalanceQueryRoute",
    "Route",
]


class IncomingMessage(BaseModel):
    """Входящее сообщение чата. ``id`` – ключ идемпотентности."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    sender: str = Field(..., alias="from")
    to: str
    body: str


# ---------------------------------------------------------------------------
# LLM output
# ---------------------------------------------------------------------------


class Intent(str, Enum):
    TRANSACTION = "transaction"
    QUESTION = "question"
    QUERY_BALANCE = "query_balance"


class TransactionDetail(str, Enum):
    EXPENSE = "expense"  # деньги ушли
    INCOME = "income"  # деньги пришли
    TRANSFER = "transfer"  # между своими счетами


@dataclass(frozen=True)
class QuestionRoute:
    pass


@dataclass(frozen=True)
class TransactionRoute:
    detail: TransactionDetail


@dataclass(frozen=True)
class BalanceQueryRoute:
    pass


Route = Union[QuestionRoute, TransactionRoute, BalanceQueryRoute]


class IntentClassification(BaseModel):
    intent: Intent
    transactionDetail: Optional[TransactionDetail] = None

    def to_route(self) -> Route:
        if self.intent is Intent.QUESTION:
            return QuestionRoute()
        if self.intent is Intent.QUERY_BALANCE:
            return BalanceQueryRoute()
        # Без подтипа считаем транзакцию расходом – самый частый случай.
        return TransactionRoute(self.transactionDetail or TransactionDetail.EXPENSE)


class TransactionExtraction(BaseModel):
    """Мини-схема, которую возвращает Gemini для записи транзакции.

    ``category`` и ``source_account_name`` обязаны совпадать с одним из
    переданных имён, если список имён передан в ``context`` валидации.
    """

    description: str
    amount: str
    category: str
    payee: Optional[str] = None
    source_account_name: str
    message_to_user: str

    @field_validator("category")
    @classmethod
    def _known_category(cls, v: str, info: ValidationInfo) -> str:
        names = (info.context or {}).get("category_names")
        if names and v not in names:
            raise ValueError(f"category {v!r} is not one of the available categories")
        return v

    @field_validator("source_account_name")
    @classmethod
    def _known_account(cls, v: str, info: ValidationInfo) -> str:
        names = (info.context or {}).get("account_names")
        if names and v not in names:
            raise ValueError(f"account {v!r} is not one of the available accounts")
        return v


class QueryType(str, Enum):
    ACCOUNT = "account"
    BUDGET = "budget"
    SUMMARY = "summary"


class BalanceQuery(BaseModel):
    query_type: QueryType
    name: Optional[str] = None

    @property
    def is_all(self) -> bool:
        return self.name is not None and self.name.lower() == "all"


# ---------------------------------------------------------------------------
# Actual Budget entities
# ---------------------------------------------------------------------------


class _ActualEntity(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str


class Account(_ActualEntity):
    offbudget: bool = False
    closed: bool = False


class Category(_ActualEntity):
    is_income: bool = False
    group_id: Optional[str] = None


class Payee(_ActualEntity):
    name: str = ""
    transfer_acct: Optional[str] = None


class BudgetCategory(_ActualEntity):
    """Категория внутри месяца бюджета, суммы – в минорных единицах."""

    budgeted: int = 0
    spent: int = 0
    balance: int = 0


class CategoryGroup(_ActualEntity):
    is_income: bool = False
    categories: list[BudgetCategory] = Field(default_factory=list)


class BudgetMonth(BaseModel):
    model_config = ConfigDict(extra="allow")

    month: str = ""
    categoryGroups: list[CategoryGroup] = Field(default_factory=list)


class LedgerTransaction(BaseModel):
    """Транзакция для ``addTransactions``. ``amount`` – минорные единицы со знаком."""

    date: str
    amount: int
    payee: Optional[str] = None
    payee_name: Optional[str] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    cleared: bool = False
