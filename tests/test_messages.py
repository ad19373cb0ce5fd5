"""
Tests for the read/compose API, health endpoints and the realtime channel.

Tests cover:
- GET /messages/{conversation_id} ordering and isolation
- POST /messages (201, server-assigned fields, validation)
- GET /contacts and POST /contacts/{id}/read
- /api prefix aliases
- GET /health in both store modes, probes and metrics
- WebSocket join/leave and room-filtered delivery
"""

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.storage import SqlStore


@pytest.fixture(scope="function")
def client():
    """Create test client with a fresh in-memory store for each test."""
    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def seeded_client(client, payloads):
    """Client with two conversations delivered out of order."""
    client.post("/webhook", json=payloads.envelope(
        messages=[
            payloads.text_message("m3", timestamp="1625097630", body="third"),
            payloads.text_message("m1", timestamp="1625097610", body="first"),
        ],
        contacts=[payloads.contact("1234567890", "John Doe")],
    ))
    client.post("/webhook", json=payloads.envelope(
        messages=[
            payloads.text_message("m2", timestamp="1625097620", body="second"),
            payloads.text_message("x1", sender="0987654321", timestamp="1625097600", body="other"),
        ],
    ))
    return client


class TestListMessages:
    """GET /messages/{conversation_id}."""

    def test_empty_conversation(self, client):
        response = client.get("/messages/1234567890")

        assert response.status_code == 200
        assert response.json() == []

    def test_ordered_by_created_at(self, seeded_client):
        messages = seeded_client.get("/messages/1234567890").json()

        assert [m["primary_id"] for m in messages] == ["m1", "m2", "m3"]
        created = [m["created_at"] for m in messages]
        assert created == sorted(created)

    def test_only_requested_conversation(self, seeded_client):
        messages = seeded_client.get("/messages/0987654321").json()

        assert [m["primary_id"] for m in messages] == ["x1"]
        assert messages[0]["conversation_id"] == "0987654321"

    def test_api_prefix_alias(self, seeded_client):
        assert seeded_client.get("/api/messages/1234567890").json() == \
            seeded_client.get("/messages/1234567890").json()


class TestSendMessage:
    """POST /messages."""

    def test_created(self, client):
        response = client.post("/messages", json={
            "conversation_id": "1234567890",
            "body": {"kind": "text", "text": "Hi!"},
        })

        assert response.status_code == 201
        data = response.json()
        assert data["primary_id"].startswith("msg_")
        assert data["direction"] == "outbound"
        assert data["status"] == "sent"
        assert data["to_id"] == "1234567890"
        assert data["display_name"] == "1234567890"
        assert data["body"]["text"] == "Hi!"

        stored = client.get("/messages/1234567890").json()
        assert stored == [data]

    def test_media_draft(self, client):
        response = client.post("/api/messages", json={
            "conversation_id": "1234567890",
            "body": {"kind": "document", "url": "https://example.com/a.pdf", "filename": "a.pdf"},
        })

        assert response.status_code == 201
        assert response.json()["body"]["kind"] == "document"

    def test_unknown_kind_rejected(self, client):
        response = client.post("/messages", json={
            "conversation_id": "1234567890",
            "body": {"kind": "hologram"},
        })
        assert response.status_code == 422

    def test_missing_conversation_rejected(self, client):
        response = client.post("/messages", json={"body": {"kind": "text", "text": "x"}})
        assert response.status_code == 422

    def test_updates_contact_last_message(self, client):
        sent = client.post("/messages", json={
            "conversation_id": "555",
            "body": {"kind": "text", "text": "ping"},
        }).json()

        contacts = client.get("/contacts").json()
        assert contacts[0]["conversation_id"] == "555"
        assert contacts[0]["last_message"]["primary_id"] == sent["primary_id"]
        assert contacts[0]["unread_count"] == 0


class TestContacts:
    """GET /contacts and unread bookkeeping."""

    def test_contacts_listed(self, seeded_client):
        contacts = seeded_client.get("/contacts").json()

        assert [c["conversation_id"] for c in contacts] == ["0987654321", "1234567890"]
        john = contacts[1]
        assert john["display_name"] == "John Doe"
        assert john["unread_count"] == 3
        assert john["last_message"]["primary_id"] == "m3"

    def test_mark_read(self, seeded_client):
        response = seeded_client.post("/contacts/1234567890/read")

        assert response.status_code == 200
        assert response.json()["unread_count"] == 0

    def test_mark_read_unknown(self, client):
        response = client.post("/contacts/nobody/read")
        assert response.status_code == 404


class TestHealth:
    """Health, probes and metrics."""

    def test_health_in_memory(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "in-memory"
        assert data["timestamp"].endswith("Z")

    def test_health_connected(self):
        store = SqlStore.from_url("sqlite://")
        store.connect()
        with TestClient(create_app(store=store)) as sql_client:
            assert sql_client.get("/health").json()["database"] == "connected"
            assert sql_client.get("/health/ready").json()["status"] == "ready"

    def test_probes(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}
        assert client.get("/health/ready").json() == {"status": "ready", "reason": None}

    def test_metrics_exposed(self, client, payloads):
        client.post("/webhook", json=payloads.envelope(messages=[payloads.text_message("m1")]))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_requests_total" in response.text
        assert "webhook_events_total" in response.text


class TestRealtime:
    """WebSocket channel."""

    def test_join_receives_room_events(self, client, payloads):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "join-chat", "data": "1234567890"})
            assert ws.receive_json() == {"event": "chat-joined", "data": "1234567890"}

            client.post("/webhook", json=payloads.envelope(
                messages=[payloads.text_message("m1"), payloads.text_message("m2")],
                statuses=[payloads.status("m1", status="read")],
            ))

            events = [ws.receive_json() for _ in range(3)]

        assert [e["event"] for e in events] == ["newMessage", "newMessage", "messageStatusUpdate"]
        assert events[0]["data"]["primary_id"] == "m1"
        assert events[2]["data"] == {"message_id": "m1", "status": "read"}

    def test_join_resets_unread(self, client, payloads):
        client.post("/webhook", json=payloads.envelope(messages=[payloads.text_message("m1")]))
        assert client.get("/contacts").json()[0]["unread_count"] == 1

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "join-chat", "data": "1234567890"})
            ws.receive_json()

            client.post("/webhook", json=payloads.envelope(messages=[payloads.text_message("m2")]))
            assert ws.receive_json()["event"] == "newMessage"

            assert client.get("/contacts").json()[0]["unread_count"] == 0

    def test_other_rooms_not_delivered(self, client, payloads):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "join-chat", "data": "0987654321"})
            ws.receive_json()

            client.post("/webhook", json=payloads.envelope(messages=[payloads.text_message("m1")]))
            client.post("/webhook", json=payloads.envelope(
                messages=[payloads.text_message("x1", sender="0987654321")]
            ))

            event = ws.receive_json()

        assert event["data"]["primary_id"] == "x1"

    def test_leave_chat(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "join-chat", "data": 1234567890})
            assert ws.receive_json()["data"] == "1234567890"
            ws.send_json({"event": "leave-chat", "data": "1234567890"})
            assert ws.receive_json() == {"event": "chat-left", "data": "1234567890"}
            assert client.app.state.broadcaster.is_viewing("1234567890") is False
