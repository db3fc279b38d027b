# services/webhook_gateway/schemas.py
"""Pydantic DTO-models used by the *webhook gateway*.

Отделяем их от `main.py`, чтобы:
1. Избежать циклических импортов (оркестратор тоже принимает `MessagePayload`).
2. Упростить автогенерацию OpenAPI-документации.

Валидация намеренно мягкая: лишние поля WAHA разрешены на обоих уровнях,
обязательны только ``from``/``to``/``body`` внутри ``payload``.
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessagePayload(BaseModel):
    """``payload`` события WAHA ``message``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = Field(None)            # example="false_628123456789@c.us_3EB0..."
    sender: str = Field(..., alias="from")     # example="628123456789@c.us"
    to: str = Field(...)
    body: str = Field(...)                     # example="Beli kopi 20k dari Cash"


class WebhookRequest(BaseModel):
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "event": "message",
                "payload": {"from": "sender", "to": "receiver", "body": "Hello!"},
            },
        },
    )

    event: str
    payload: Optional[MessagePayload] = None


class WebhookResponse(BaseModel):
    status: Literal["received", "duplicate_ignored"] = Field(
        "received", description="'duplicate_ignored' if payload.id was already processed"
    )
