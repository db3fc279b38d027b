# libs/matching.py
"""Сопоставление имён из текста LLM с сущностями Actual.

Политика простая и намеренно строгая: регистр не важен, всё остальное –
точное совпадение (пробелы не обрезаются, "Groceries " ≠ "Groceries").
"""
from __future__ import annotations

from typing import Iterable, Optional, Protocol, TypeVar

from libs.models import Payee

__all__ = ["resolve_by_name", "find_transfer_payee"]


class _Named(Protocol):
    name: str


T = TypeVar("T", bound=_Named)


def resolve_by_name(name: Optional[str], candidates: Iterable[T]) -> Optional[T]:
    """Первый кандидат, чьё ``name`` совпадает с *name* без учёта регистра."""
    if name is None:
        return None
    wanted = name.lower()
    for candidate in candidates:
        if candidate.name.lower() == wanted:
            return candidate
    return None


def find_transfer_payee(account_id: str, payees: Iterable[Payee]) -> Optional[Payee]:
    """Внутренний transfer-payee счёта (``transfer_acct == account_id``)."""
    for payee in payees:
        if payee.transfer_acct == account_id:
            return payee
    return None
