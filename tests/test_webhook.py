"""
Tests for the /webhook endpoints.

Tests cover:
- GET subscription handshake (valid/invalid token and mode)
- POST ingestion of messages, statuses and contacts
- Malformed envelopes acknowledged with 200 and no state change
- Invalid JSON (400) and persistence failures (500)
"""

import pytest
from fastapi.testclient import TestClient

from app.errors import PersistenceOperationFailure
from app.main import create_app
from app.memory_store import MemoryStore


TEST_VERIFY_TOKEN = "test-verify-token"


class FailingStore(MemoryStore):
    """Store whose writes fail, as a dropped database connection would."""

    def upsert_message(self, message):
        raise PersistenceOperationFailure("upsert_message failed")


@pytest.fixture(scope="function")
def client():
    """Create test client with a fresh in-memory store for each test."""
    with TestClient(create_app()) as test_client:
        yield test_client


class TestWebhookVerification:
    """GET /webhook handshake."""

    def test_valid_token_echoes_challenge(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": TEST_VERIFY_TOKEN,
            "hub.challenge": "1158201444",
        })

        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_unprefixed_parameters(self, client):
        response = client.get("/webhook", params={
            "mode": "subscribe",
            "verify_token": TEST_VERIFY_TOKEN,
            "challenge": "abc",
        })

        assert response.status_code == 200
        assert response.text == "abc"

    def test_wrong_token_forbidden(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "wrong",
            "hub.challenge": "abc",
        })

        assert response.status_code == 403
        assert response.text == "Forbidden"

    def test_wrong_mode_forbidden(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "unsubscribe",
            "hub.verify_token": TEST_VERIFY_TOKEN,
            "hub.challenge": "abc",
        })

        assert response.status_code == 403

    def test_missing_parameters_forbidden(self, client):
        assert client.get("/webhook").status_code == 403


class TestWebhookIngestion:
    """POST /webhook with well-formed envelopes."""

    def test_message_is_stored(self, client, payloads):
        envelope = payloads.envelope(
            messages=[payloads.text_message("wamid.1", timestamp="1625097600")],
            contacts=[payloads.contact("1234567890", "John Doe")],
        )

        response = client.post("/webhook", json=envelope)

        assert response.status_code == 200
        assert response.json() == {"success": True}

        messages = client.get("/messages/1234567890").json()
        assert len(messages) == 1
        assert messages[0]["primary_id"] == "wamid.1"
        assert messages[0]["created_at"] == 1625097600000
        assert messages[0]["display_name"] == "John Doe"
        assert messages[0]["body"] == {"kind": "text", "text": "Hello", "preview_url": False}

    def test_redelivery_is_idempotent(self, client, payloads):
        first = payloads.envelope(messages=[payloads.text_message("wamid.1", body="v1")])
        second = payloads.envelope(messages=[payloads.text_message("wamid.1", body="v2")])

        assert client.post("/webhook", json=first).status_code == 200
        assert client.post("/webhook", json=second).status_code == 200

        messages = client.get("/messages/1234567890").json()
        assert len(messages) == 1
        assert messages[0]["body"]["text"] == "v2"

    def test_status_update_applied(self, client, payloads):
        client.post("/webhook", json=payloads.envelope(messages=[payloads.text_message("wamid.1")]))

        response = client.post("/webhook", json=payloads.envelope(
            statuses=[payloads.status("wamid.1", status="read", timestamp="1625097700")]
        ))

        assert response.status_code == 200
        message = client.get("/messages/1234567890").json()[0]
        assert message["status"] == "read"
        assert message["status_timestamp"] == 1625097700000

    def test_unmatched_status_ok(self, client, payloads):
        response = client.post("/webhook", json=payloads.envelope(statuses=[payloads.status("nope")]))

        assert response.status_code == 200
        assert client.get("/messages/1234567890").json() == []

    def test_contacts_upserted(self, client, payloads):
        client.post("/webhook", json=payloads.envelope(contacts=[payloads.contact("1234567890", "John")]))
        client.post("/webhook", json=payloads.envelope(contacts=[payloads.contact("1234567890", "Johnny")]))

        contacts = client.get("/contacts").json()
        assert len(contacts) == 1
        assert contacts[0]["display_name"] == "Johnny"

    def test_non_string_profile_name_keeps_batch(self, client, payloads):
        envelope = payloads.envelope(
            messages=[payloads.text_message("wamid.1"), payloads.text_message("wamid.2")],
            contacts=[{"wa_id": "1234567890", "profile": {"name": 42}}],
        )

        response = client.post("/webhook", json=envelope)

        assert response.status_code == 200
        messages = client.get("/messages/1234567890").json()
        assert [m["primary_id"] for m in messages] == ["wamid.1", "wamid.2"]
        assert messages[0]["display_name"] == "1234567890"

    def test_response_includes_request_id_header(self, client, payloads):
        response = client.post("/webhook", json=payloads.envelope())
        assert "x-request-id" in response.headers


class TestMalformedWebhooks:
    """Envelopes this service ignores or cannot read."""

    @pytest.mark.parametrize("body", [
        {},
        {"object": "whatsapp_business_account"},
        {"entry": []},
        {"entry": [{"changes": []}]},
    ])
    def test_malformed_envelope_acknowledged(self, client, body):
        response = client.post("/webhook", json=body)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert client.get("/contacts").json() == []

    def test_other_field_acknowledged(self, client, payloads):
        envelope = payloads.envelope(messages=[payloads.text_message("wamid.1")], field="account_update")

        response = client.post("/webhook", json=envelope)

        assert response.status_code == 200
        assert client.get("/messages/1234567890").json() == []
        assert client.get("/contacts").json() == []

    def test_invalid_json(self, client):
        response = client.post(
            "/webhook",
            content="not valid json",
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid JSON"}

    def test_persistence_failure_returns_500(self, payloads):
        with TestClient(create_app(store=FailingStore())) as failing_client:
            response = failing_client.post(
                "/webhook",
                json=payloads.envelope(messages=[payloads.text_message("wamid.1")])
            )

        assert response.status_code == 500
        assert response.json() == {"detail": "Webhook processing failed"}
