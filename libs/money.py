# libs/money.py
"""Деньги: парсинг сумм из LLM и форматирование минорных единиц.

Actual хранит суммы целыми числами в сотых долях (``12345`` = 123,45).
Перевод в «человеческий» вид делается только при выводе пользователю.
"""
from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from libs.config import get_settings

__all__ = ["parse_ambiguous_decimal", "to_minor_units", "format_money"]

_SUFFIXES = {"k": Decimal(1_000), "rb": Decimal(1_000), "jt": Decimal(1_000_000), "m": Decimal(1_000_000)}
_SUFFIX_RE = re.compile(r"^(?P<num>.*?)\s*(?P<suffix>k|rb|jt|m)$", re.I)


def parse_ambiguous_decimal(num_str: str) -> Decimal:
    """
    Преобразует строку с неизвестным форматом числа в Decimal.

    - Пробелы, запятые и точки – возможные разделители.
    - Если есть и точка, и запятая, последний символ – десятичный разделитель.
    - Несколько одинаковых разделителей или ровно три цифры после
      единственного – это разделители тысяч.
    - Суффиксы ``k``/``rb`` (тысячи) и ``jt``/``m`` (миллионы): "20k" → 20000.
    """
    cleaned = num_str.strip().replace(" ", "")
    if not cleaned:
        raise ValueError("Input string cannot be empty")

    multiplier = Decimal(1)
    m = _SUFFIX_RE.match(cleaned)
    if m:
        cleaned = m.group("num")
        multiplier = _SUFFIXES[m.group("suffix").lower()]

    last_dot = cleaned.rfind(".")
    last_comma = cleaned.rfind(",")

    if last_dot != -1 and last_comma != -1:
        if last_comma > last_dot:
            # "1.234,56"
            final = cleaned.replace(".", "").replace(",", ".")
        else:
            # "1,234.56"
            final = cleaned.replace(",", "")
    elif last_comma != -1 or last_dot != -1:
        sep = "," if last_comma != -1 else "."
        head, _, tail = cleaned.rpartition(sep)
        if cleaned.count(sep) > 1 or len(tail) == 3:
            # "1.234.567", "20.000", "1,000" – разделители тысяч
            final = cleaned.replace(sep, "")
        else:
            # "1,23" -> "1.23"
            final = f"{head}.{tail}"
    else:
        final = cleaned

    final = re.sub(r"[^0-9.-]", "", final)
    try:
        return Decimal(final) * multiplier
    except InvalidOperation:
        raise ValueError(f"Cannot convert {num_str!r} to a number (cleaned to {final!r})") from None


def to_minor_units(amount: str) -> int:
    """Сумма из LLM ("20000", "20k", "1,5") → целые сотые доли."""
    value = parse_ambiguous_decimal(amount) * 100
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_money(minor_units: int) -> str:
    """``15000000`` → ``"Rp 150.000,00"`` (символ и разделители из настроек)."""
    settings = get_settings()
    major = (Decimal(minor_units) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if major < 0 else ""
    whole, _, cents = f"{abs(major):.2f}".partition(".")
    grouped = f"{int(whole):,}".replace(",", settings.currency_thousands_sep)
    return f"{sign}{settings.currency_symbol} {grouped}{settings.currency_decimal_sep}{cents}"
