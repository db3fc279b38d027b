# libs/gemini.py
"""
LLM-слой бота на основе Google Gemini.

Четыре операции, все – один вызов модели без ретраев:

* :meth:`GeminiAssistant.determine_intent`      – transaction / question / query_balance;
* :meth:`GeminiAssistant.process_transaction`   – извлечение транзакции;
* :meth:`GeminiAssistant.process_balance_query` – извлечение запроса баланса;
* :meth:`GeminiAssistant.get_answer`            – свободный ответ текстом.

Структурированные операции просят у Gemini JSON по ``types.Schema``, а затем
валидируют его Pydantic-моделью из :mod:`libs.models`.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Sequence, TypeVar

from google import genai
from google.genai import types
from pydantic import BaseModel, ValidationError

from libs.config import Settings
from libs.errors import UpstreamError
from libs.models import BalanceQuery, IntentClassification, TransactionExtraction

__all__ = ["GeminiAssistant"]

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_JSON_RE = re.compile(r"\{.*\}", re.S)           # «первый» JSON в тексте

# ────────────────────────────────
# Схемы ответа
# ────────────────────────────────
INTENT_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        "intent": types.Schema(
            type=types.Type.STRING,
            enum=["transaction", "question", "query_balance"],
            description=(
                'The determined intent of the user input. "transaction" for financial recordings, '
                '"query_balance" for asking about account or budget balances, "question" for everything else.'
            ),
        ),
        "transactionDetail": types.Schema(
            type=types.Type.STRING,
            enum=["expense", "income", "transfer"],
            nullable=True,
            description=(
                'If the intent is "transaction", specify the type. "expense" is money out (e.g., buying something), '
                '"income" is money in (e.g., salary), "transfer" is moving money between two of the user\'s own accounts.'
            ),
        ),
    },
    required=["intent"],
)

BALANCE_QUERY_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        "query_type": types.Schema(
            type=types.Type.STRING,
            enum=["account", "budget", "summary"],
            description=(
                "The type of query. 'account' for account balances, 'budget' for a specific category's budget, "
                "'summary' for a general budget overview."
            ),
        ),
        "name": types.Schema(
            type=types.Type.STRING,
            nullable=True,
            description=(
                "The name of the account or category. Use 'all' for all accounts or a budget summary. "
                "Choose from the provided lists."
            ),
        ),
    },
    required=["query_type"],
)


def _name_choice(names: Sequence[str], description: str) -> types.Schema:
    # Пустой enum Gemini не принимает – тогда просто строка.
    if names:
        return types.Schema(type=types.Type.STRING, enum=list(names), description=description)
    return types.Schema(type=types.Type.STRING, description=description)


def transaction_schema(account_names: Sequence[str], category_names: Sequence[str]) -> types.Schema:
    """Схема извлечения транзакции; категория и счёт ограничены переданными именами."""
    return types.Schema(
        type=types.Type.OBJECT,
        properties={
            "description": types.Schema(
                type=types.Type.STRING, description="A clear description of the transaction."
            ),
            "amount": types.Schema(
                type=types.Type.STRING,
                description="The numeric amount as a string, parsed from formats like '20k' to '20000'.",
            ),
            "category": _name_choice(
                category_names, "The category for the transaction, chosen from the provided list."
            ),
            "payee": types.Schema(
                type=types.Type.STRING,
                nullable=True,
                description=(
                    "The person or business being paid for an expense, or the source of funds for an income. "
                    "For a transfer, this should be the name of the destination account, chosen from the "
                    "available accounts list."
                ),
            ),
            "source_account_name": _name_choice(
                account_names,
                "The account the money is coming from, chosen from the provided list. "
                "Choose Other if it can not be determined.",
            ),
            "message_to_user": types.Schema(
                type=types.Type.STRING,
                description="A short summary on what you just done, use emojis if necessary.",
            ),
        },
        required=["description", "amount", "category", "source_account_name", "message_to_user"],
    )


def _extract_json(chunk_text: str) -> Any:
    m = _JSON_RE.search(chunk_text)
    if m is None:
        raise ValueError("Gemini returned non-JSON output")
    return json.loads(m.group(0))


class GeminiAssistant:
    """Асинхронная обёртка над ``google.genai.Client`` для нужд бота."""

    def __init__(self, client: genai.Client, model: str = "gemini-2.5-flash") -> None:
        self._client = client
        self._model = model

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiAssistant":
        return cls(genai.Client(api_key=settings.gemini_api_key), model=settings.gemini_model)

    # ------------------------------------------------------------- low level
    async def _generate(self, op: str, prompt: str, config: types.GenerateContentConfig | None = None) -> str:
        try:
            response = await self._client.aio.models.generate_content(
                model=self._model,
                contents=prompt,
                config=config,
            )
        except Exception as exc:
            raise UpstreamError(f"Gemini API Error ({op}): {exc}") from exc
        return response.text or ""

    async def _generate_structured(
        self,
        op: str,
        prompt: str,
        schema: types.Schema,
        model_cls: type[M],
        context: dict[str, Any] | None = None,
    ) -> M:
        config = types.GenerateContentConfig(
            temperature=0.1,
            response_mime_type="application/json",
            response_schema=schema,
        )
        raw_answer = await self._generate(op, prompt, config)
        logger.debug("Gemini %s raw answer: %s", op, raw_answer)
        try:
            return model_cls.model_validate(_extract_json(raw_answer), context=context)
        except (ValueError, ValidationError) as exc:
            raise UpstreamError(f"Gemini response validation error ({op}): {exc}") from exc

    # -------------------------------------------------------------- business
    async def determine_intent(self, text: str) -> IntentClassification:
        prompt = (
            "Analyze the user's text and determine the intent.\n"
            '*   If the text is about recording an expense, income, or transfer, the intent is "transaction".\n'
            '*   If the text is about asking for an account balance or budget status, the intent is "query_balance".\n'
            '*   Otherwise, the intent is "question".\n\n'
            f'User input: "{text}"'
        )
        return await self._generate_structured("determineIntent", prompt, INTENT_SCHEMA, IntentClassification)

    async def process_transaction(
        self,
        text: str,
        account_names: Sequence[str],
        category_names: Sequence[str],
    ) -> TransactionExtraction:
        prompt = (
            "You are a financial assistant. Extract transaction details from the following user input, "
            "which is in Indonesian.\n\n"
            f"Available accounts: {', '.join(account_names)}\n"
            f"Available categories: {', '.join(category_names)}\n"
            f'"{text}"'
        )
        return await self._generate_structured(
            "processTransaction",
            prompt,
            transaction_schema(account_names, category_names),
            TransactionExtraction,
            context={"account_names": list(account_names), "category_names": list(category_names)},
        )

    async def process_balance_query(
        self,
        text: str,
        account_names: Sequence[str],
        category_names: Sequence[str],
    ) -> BalanceQuery:
        prompt = (
            "You are a financial query processing AI. Extract the query details from the user's message.\n\n"
            f"Available accounts: {', '.join(account_names)}\n"
            f"Available categories: {', '.join(category_names)}\n\n"
            f'User message: "{text}"'
        )
        return await self._generate_structured("processBalanceQuery", prompt, BALANCE_QUERY_SCHEMA, BalanceQuery)

    async def get_answer(self, text: str) -> str:
        prompt = f'Answer the user\'s question or general inquiry concisely. User question: "{text}"'
        return await self._generate("getAnswer", prompt)
