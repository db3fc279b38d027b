# libs/errors.py
"""Единый тип ошибки для внешних вызовов (WAHA, Gemini, Actual).

Любой сбой клиента оборачивается в :class:`UpstreamError` с исходным
сообщением. FastAPI-хендлер шлюза превращает его в JSON-ответ с ``code``.
"""
from __future__ import annotations

from http import HTTPStatus

__all__ = ["UpstreamError"]


class UpstreamError(Exception):
    """Ошибка вызова внешнего сервиса (network / API / невалидный ответ)."""

    def __init__(
        self,
        message: str,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = int(status_code)

    def __repr__(self) -> str:
        return f"UpstreamError({self.status_code}, {self.message!r})"
