# tests/test_gemini.py
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.genai import types

from libs.errors import UpstreamError
from libs.gemini import GeminiAssistant, transaction_schema
from libs.models import Intent, QueryType, TransactionDetail

pytestmark = pytest.mark.asyncio


def _assistant(*texts: str, error: Exception | None = None) -> tuple[GeminiAssistant, AsyncMock]:
    client = MagicMock()
    generate = AsyncMock()
    if error is not None:
        generate.side_effect = error
    else:
        generate.side_effect = [MagicMock(text=t) for t in texts]
    client.aio.models.generate_content = generate
    return GeminiAssistant(client, model="gemini-test"), generate


async def test_determine_intent():
    assistant, generate = _assistant('{"intent": "transaction", "transactionDetail": "transfer"}')

    result = await assistant.determine_intent("Transfer 100rb dari BCA ke Gopay")

    assert result.intent is Intent.TRANSACTION
    assert result.transactionDetail is TransactionDetail.TRANSFER
    kwargs = generate.await_args.kwargs
    assert kwargs["model"] == "gemini-test"
    assert 'User input: "Transfer 100rb dari BCA ke Gopay"' in kwargs["contents"]
    assert kwargs["config"].response_mime_type == "application/json"


async def test_process_transaction_constrains_names():
    payload = {
        "description": "Beli kopi",
        "amount": "20000",
        "category": "Food & Drink",
        "payee": None,
        "source_account_name": "Cash",
        "message_to_user": "☕ ok",
    }
    assistant, generate = _assistant(json.dumps(payload))

    result = await assistant.process_transaction("Beli kopi 20k dari Cash", ["Cash", "Gopay"], ["Food & Drink"])

    assert result.amount == "20000"
    schema = generate.await_args.kwargs["config"].response_schema
    assert schema.properties["source_account_name"].enum == ["Cash", "Gopay"]
    assert schema.properties["category"].enum == ["Food & Drink"]
    prompt = generate.await_args.kwargs["contents"]
    assert "Available accounts: Cash, Gopay" in prompt
    assert "Available categories: Food & Drink" in prompt


async def test_process_transaction_rejects_unknown_category():
    payload = {
        "description": "Token listrik",
        "amount": "100000",
        "category": "Electricity",
        "payee": "PLN",
        "source_account_name": "BRI",
        "message_to_user": "⚡",
    }
    assistant, _ = _assistant(json.dumps(payload))

    with pytest.raises(UpstreamError, match=r"validation error \(processTransaction\)"):
        await assistant.process_transaction("Bayar token listrik dari BRI", ["BRI"], ["Food & Drink"])


def test_transaction_schema_without_names_has_no_enum():
    schema = transaction_schema([], [])
    assert schema.properties["category"].enum is None
    assert schema.properties["category"].type == types.Type.STRING


async def test_process_balance_query_extracts_json_from_noise():
    assistant, _ = _assistant('```json\n{"query_type": "account", "name": "all"}\n```')

    result = await assistant.process_balance_query("Saldo semua?", ["Cash"], ["Food"])

    assert result.query_type is QueryType.ACCOUNT
    assert result.is_all


async def test_non_json_output_is_validation_error():
    assistant, _ = _assistant("Maaf, saya tidak mengerti.")

    with pytest.raises(UpstreamError, match=r"validation error \(determineIntent\)"):
        await assistant.determine_intent("???")


async def test_get_answer_returns_text_without_schema():
    assistant, generate = _assistant("Anggaran adalah rencana.")

    assert await assistant.get_answer("Apa itu anggaran?") == "Anggaran adalah rencana."
    assert generate.await_args.kwargs["config"] is None


async def test_api_error_is_wrapped_and_not_retried():
    assistant, generate = _assistant(error=RuntimeError("429 RESOURCE_EXHAUSTED"))

    with pytest.raises(UpstreamError, match=r"Gemini API Error \(getAnswer\): 429"):
        await assistant.get_answer("halo")

    assert generate.await_count == 1
