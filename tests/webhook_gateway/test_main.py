# tests/webhook_gateway/test_main.py

from unittest.mock import patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from libs.errors import UpstreamError
from libs.models import Intent, IntentClassification, TransactionDetail, TransactionExtraction
from services.webhook_gateway.main import create_app


@pytest.fixture
def client(orchestrator) -> TestClient:
    """Приложение с оркестратором на моках вместо WAHA / Gemini / Actual."""
    app = create_app(lambda settings: orchestrator)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def lenient_client(orchestrator) -> TestClient:
    """Как `client`, но необработанные исключения превращаются в HTTP-ответ."""
    app = create_app(lambda settings: orchestrator)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def message_event() -> dict:
    return {
        "event": "message",
        "session": "default",
        "payload": {
            "id": "false_628111@c.us_3EB0C767D26A",
            "from": "628111@c.us",
            "to": "628999@c.us",
            "body": "Apa itu dana darurat?",
            "hasMedia": False,
        },
    }


class TestWebhook:
    def test_message_is_processed(self, client, message_event, messenger, llm):
        llm.determine_intent.return_value = IntentClassification(intent=Intent.QUESTION)
        llm.get_answer.return_value = "Dana darurat adalah tabungan cadangan."

        response = client.post("/webhook", json=message_event)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "received"}
        messenger.send_text.assert_awaited_once_with("628111@c.us", "Dana darurat adalah tabungan cadangan.")

    def test_duplicate_is_ignored(self, client, message_event, messenger, llm):
        llm.determine_intent.return_value = IntentClassification(intent=Intent.QUESTION)
        llm.get_answer.return_value = "ok"

        first = client.post("/webhook", json=message_event)
        second = client.post("/webhook", json=message_event)

        assert first.json() == {"status": "received"}
        assert second.status_code == status.HTTP_200_OK
        assert second.json() == {"status": "duplicate_ignored"}
        assert messenger.send_text.await_count == 1

    def test_other_events_are_acknowledged(self, client, messenger):
        response = client.post("/webhook", json={"event": "session.status", "payload": {"from": "a", "to": "b", "body": ""}})

        assert response.json() == {"status": "received"}
        messenger.send_seen.assert_not_awaited()

    def test_event_without_payload(self, client):
        response = client.post("/webhook", json={"event": "engine.event"})
        assert response.json() == {"status": "received"}

    @pytest.mark.parametrize("missing", ["from", "to", "body"])
    def test_invalid_payload_rejected(self, client, message_event, llm, missing):
        del message_event["payload"][missing]

        response = client.post("/webhook", json=message_event)

        assert response.status_code == 422
        llm.determine_intent.assert_not_awaited()

    def test_missing_event_rejected(self, client):
        response = client.post("/webhook", json={"payload": {"from": "a", "to": "b", "body": "c"}})
        assert response.status_code == 422

    def test_upstream_error_becomes_failed_request(self, client, message_event, llm):
        llm.determine_intent.side_effect = UpstreamError("Gemini API Error (determineIntent): quota")

        response = client.post("/webhook", json=message_event)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"code": 500, "message": "Gemini API Error (determineIntent): quota"}
        assert llm.determine_intent.await_count == 1


class TestHealthCheck:
    def test_health_success(self, client, store):
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "ok"}
        store.ping.assert_awaited_once()

    def test_health_db_failure(self, client, store):
        store.ping.side_effect = ConnectionError("db down")

        response = client.get("/health")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json() == {"status": "db_down"}


class TestUnexpectedErrors:
    def test_unparseable_amount_returns_json_error(self, lenient_client, message_event, messenger, llm, budget):
        llm.determine_intent.return_value = IntentClassification(
            intent=Intent.TRANSACTION, transactionDetail=TransactionDetail.EXPENSE
        )
        llm.process_transaction.return_value = TransactionExtraction(
            description="Beli kopi",
            amount="dua puluh ribu",
            category="Food & Drink",
            payee="Starbucks",
            source_account_name="Cash",
            message_to_user="☕",
        )

        with patch("services.webhook_gateway.main.sentry_capture") as capture:
            response = lenient_client.post("/webhook", json=message_event)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.headers["content-type"] == "application/json"
        body = response.json()
        assert body["code"] == 500
        assert "Cannot convert 'dua puluh ribu' to a number" in body["message"]
        capture.assert_called_once()
        assert isinstance(capture.call_args.args[0], ValueError)
        budget.add_transactions.assert_not_awaited()
        budget.shutdown.assert_awaited_once()

    def test_unexpected_error_without_message(self, lenient_client, message_event, llm):
        llm.determine_intent.side_effect = RuntimeError()

        response = lenient_client.post("/webhook", json=message_event)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"code": 500, "message": "Internal Server Error"}
