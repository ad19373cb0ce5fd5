"""
Realtime fan-out of applied deltas.

Subscribers are WebSocket connections (anything with an async send_json).
Delivery is filtered by room membership at publish time: a subscriber only
receives events for conversations it has joined.

The broadcaster never touches the store. It is confined to the event loop
that serves the app, so room bookkeeping needs no lock.
"""

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Optional, Protocol

from app.metrics import realtime_subscribers, record_realtime_event
from app.schemas import Message, StatusUpdate

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Realtime event names."""

    # Server -> client
    NEW_MESSAGE = "newMessage"
    MESSAGE_STATUS_UPDATE = "messageStatusUpdate"
    CHAT_JOINED = "chat-joined"
    CHAT_LEFT = "chat-left"

    # Client -> server
    JOIN_CHAT = "join-chat"
    LEAVE_CHAT = "leave-chat"


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


def frame(event: str, data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


class Broadcaster:
    """Publish-only event bus with per-conversation rooms."""

    def __init__(self):
        # conversation_id -> subscribers in that room
        self._rooms: dict[str, set[Subscriber]] = defaultdict(set)
        # subscriber -> joined conversation ids
        self._memberships: dict[Subscriber, set[str]] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._memberships)

    def connect(self, subscriber: Subscriber) -> None:
        self._memberships.setdefault(subscriber, set())
        realtime_subscribers.set(self.subscriber_count)
        logger.info("Realtime subscriber connected")

    def disconnect(self, subscriber: Subscriber) -> None:
        rooms = self._memberships.pop(subscriber, set())
        for conversation_id in rooms:
            self._discard(conversation_id, subscriber)
        realtime_subscribers.set(self.subscriber_count)
        logger.info("Realtime subscriber disconnected")

    def join(self, subscriber: Subscriber, conversation_id: str) -> None:
        self._memberships.setdefault(subscriber, set()).add(conversation_id)
        self._rooms[conversation_id].add(subscriber)
        logger.info(f"Subscriber joined chat {conversation_id}")

    def leave(self, subscriber: Subscriber, conversation_id: str) -> None:
        self._memberships.get(subscriber, set()).discard(conversation_id)
        self._discard(conversation_id, subscriber)
        logger.info(f"Subscriber left chat {conversation_id}")

    def is_viewing(self, conversation_id: str) -> bool:
        """True while at least one subscriber has the conversation open."""
        return bool(self._rooms.get(conversation_id))

    def _discard(self, conversation_id: str, subscriber: Subscriber) -> None:
        room = self._rooms.get(conversation_id)
        if room is None:
            return
        room.discard(subscriber)
        if not room:
            del self._rooms[conversation_id]

    async def publish(self, event: str, data: Any, conversation_id: Optional[str]) -> int:
        """
        Send one event to every subscriber of the conversation's room.

        Fire-and-forget: a subscriber whose send fails is dropped and the
        remaining subscribers still receive the event.

        Returns:
            Number of subscribers the event was delivered to
        """
        record_realtime_event(event)
        if conversation_id is None:
            logger.debug(f"No conversation for {event}, nothing to deliver")
            return 0

        delivered = 0
        payload = frame(event, data)
        # Snapshot: sends suspend and membership may change meanwhile
        for subscriber in list(self._rooms.get(conversation_id, ())):
            try:
                await subscriber.send_json(payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping realtime subscriber after failed send: {e}")
                self.disconnect(subscriber)
        logger.debug(f"Published {event} for {conversation_id} to {delivered} subscriber(s)")
        return delivered

    async def publish_new_message(self, message: Message) -> int:
        return await self.publish(
            EventType.NEW_MESSAGE.value,
            message.model_dump(mode="json"),
            message.conversation_id,
        )

    async def publish_status_update(
        self, message_id: str, status: str, conversation_id: Optional[str]
    ) -> int:
        update = StatusUpdate(message_id=message_id, status=status)
        return await self.publish(
            EventType.MESSAGE_STATUS_UPDATE.value,
            update.model_dump(),
            conversation_id,
        )
