"""
Pytest configuration and shared fixtures.

Test settings are pinned here before any app import: no DATABASE_URL
(in-memory store) and a known verification token.
"""

import os
from types import SimpleNamespace

import pytest

os.environ["DATABASE_URL"] = ""
os.environ["WEBHOOK_VERIFY_TOKEN"] = "test-verify-token"
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()


PHONE_NUMBER_ID = "102290129340398"
DISPLAY_PHONE_NUMBER = "15550123456"


def make_envelope(messages=None, statuses=None, contacts=None, field="messages"):
    """Build a WhatsApp Cloud API envelope with a single change."""
    value = {
        "messaging_product": "whatsapp",
        "metadata": {
            "display_phone_number": DISPLAY_PHONE_NUMBER,
            "phone_number_id": PHONE_NUMBER_ID,
        },
    }
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    if contacts is not None:
        value["contacts"] = contacts
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": PHONE_NUMBER_ID, "changes": [{"value": value, "field": field}]}],
    }


def text_message(message_id, sender="1234567890", timestamp="1625097600", body="Hello"):
    return {
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "text": {"body": body},
        "type": "text",
    }


def status_event(message_id, status="delivered", timestamp="1625097660", recipient="1234567890"):
    return {
        "id": message_id,
        "status": status,
        "timestamp": timestamp,
        "recipient_id": recipient,
    }


def contact(wa_id, name=None):
    entry = {"wa_id": wa_id}
    if name is not None:
        entry["profile"] = {"name": name}
    return entry


class RecordingSubscriber:
    """Stands in for a WebSocket: records every frame sent to it."""

    def __init__(self, fail=False):
        self.frames = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection lost")
        self.frames.append(data)

    @property
    def events(self):
        return [f["event"] for f in self.frames]


@pytest.fixture
def payloads():
    """Envelope and item builders for webhook payloads."""
    return SimpleNamespace(
        envelope=make_envelope,
        text_message=text_message,
        status=status_event,
        contact=contact,
        phone_number_id=PHONE_NUMBER_ID,
    )


@pytest.fixture
def subscriber():
    return RecordingSubscriber


@pytest.fixture
def memory_store():
    from app.memory_store import MemoryStore
    return MemoryStore()


@pytest.fixture
def sql_store():
    """SqlStore on a private in-memory SQLite database."""
    from app.storage import SqlStore
    store = SqlStore.from_url("sqlite://")
    store.connect()
    yield store
    store.close()
