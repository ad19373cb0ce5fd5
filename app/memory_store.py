"""
In-process fallback store.

Used when the durable database is not configured or unreachable. Mirrors
SqlStore's matching and ordering rules so callers cannot tell the two apart.
Records are copied on the way in and out, the same way rows are
re-materialized by the database.
"""

import logging
import threading
from typing import Optional

from app.schemas import Contact, Message
from app.storage import Store, is_newer

logger = logging.getLogger(__name__)


class MemoryStore(Store):
    mode = "in-memory"

    def __init__(self):
        self._messages: dict[str, Message] = {}
        self._contacts: dict[str, Contact] = {}
        # One lock for the whole table; every operation is a short read-modify-write
        self._lock = threading.RLock()

    def upsert_message(self, message: Message) -> bool:
        with self._lock:
            created = message.primary_id not in self._messages
            self._messages[message.primary_id] = message.model_copy(deep=True)
        logger.debug(f"Message {message.primary_id} {'created' if created else 'replaced'}")
        return created

    def update_status(
        self, message_id: str, status: str, status_timestamp: Optional[int]
    ) -> Optional[Message]:
        with self._lock:
            matches = [
                m for m in self._messages.values()
                if m.primary_id == message_id or m.secondary_id == message_id
            ]
            if not matches:
                return None
            first = min(matches, key=lambda m: (m.created_at, m.primary_id))
            updated = first.model_copy(update={"status": status, "status_timestamp": status_timestamp})
            self._messages[first.primary_id] = updated
            return updated.model_copy(deep=True)

    def upsert_contact(self, conversation_id: str, display_name: str) -> Contact:
        with self._lock:
            existing = self._contacts.get(conversation_id)
            if existing is None:
                contact = Contact(conversation_id=conversation_id, display_name=display_name)
            else:
                contact = existing.model_copy(update={"display_name": display_name})
            self._contacts[conversation_id] = contact
            return contact.model_copy(deep=True)

    def record_last_message(self, message: Message, increment_unread: bool) -> Contact:
        with self._lock:
            contact = self._contacts.get(message.conversation_id)
            if contact is None:
                contact = Contact(
                    conversation_id=message.conversation_id,
                    display_name=message.display_name,
                )
            update = {}
            if is_newer(message, contact.last_message):
                update["last_message"] = message.model_copy(deep=True)
            if increment_unread:
                update["unread_count"] = contact.unread_count + 1
            contact = contact.model_copy(update=update)
            self._contacts[message.conversation_id] = contact
            return contact.model_copy(deep=True)

    def mark_read(self, conversation_id: str) -> Optional[Contact]:
        with self._lock:
            contact = self._contacts.get(conversation_id)
            if contact is None:
                return None
            contact = contact.model_copy(update={"unread_count": 0})
            self._contacts[conversation_id] = contact
            return contact.model_copy(deep=True)

    def get_message(self, primary_id: str) -> Optional[Message]:
        with self._lock:
            message = self._messages.get(primary_id)
            return message.model_copy(deep=True) if message else None

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._lock:
            messages = [
                m.model_copy(deep=True) for m in self._messages.values()
                if m.conversation_id == conversation_id
            ]
        return sorted(messages, key=lambda m: (m.created_at, m.primary_id))

    def list_contacts(self) -> list[Contact]:
        with self._lock:
            contacts = [c.model_copy(deep=True) for c in self._contacts.values()]
        return sorted(contacts, key=lambda c: c.conversation_id)

    def ping(self) -> bool:
        return True
