"""
Webhook-to-state reconciliation.

Applies the sub-events of one normalized webhook change to the store, in
order: messages, then statuses, then contacts. Each item succeeds or fails on
its own; there is no transaction across items. Every applied message and
status change is republished through the broadcaster after the store call
returns.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Optional

from pydantic import ValidationError

from app.broadcaster import Broadcaster
from app.errors import MissingIdentity, UnmatchedStatus
from app.metrics import record_webhook_event
from app.normalizer import normalize_envelope
from app.schemas import (
    MEDIA_BODIES,
    Contact,
    ContactEvent,
    InboundMessageEvent,
    MediaPayload,
    Message,
    MessageBody,
    MessageDraft,
    StatusEvent,
    TextBody,
    TextPayload,
    UnsupportedBody,
    WebhookMetadata,
)
from app.storage import Store

logger = logging.getLogger(__name__)

DEFAULT_RECIPIENT = "business"


@dataclass
class IngestResult:
    """Per-payload tally, logged with the request."""
    ignored: bool = False
    messages: int = 0
    statuses: int = 0
    unmatched_statuses: int = 0
    contacts: int = 0
    skipped: int = 0

    def as_log_fields(self) -> dict[str, Any]:
        return asdict(self)


def seconds_to_ms(timestamp: int) -> int:
    """Provider timestamps are epoch seconds; records store milliseconds."""
    return int(timestamp) * 1000


def _describe(e: ValidationError) -> str:
    return ", ".join(
        ".".join(str(part) for part in err["loc"]) or "item" for err in e.errors()
    )


def build_body(event: InboundMessageEvent) -> MessageBody:
    """Map the provider's type-specific object onto the body union."""
    if event.type == "text":
        text = event.text or TextPayload()
        return TextBody(text=text.body, preview_url=text.preview_url)

    body_cls = MEDIA_BODIES.get(event.type)
    if body_cls is None:
        return UnsupportedBody(type=event.type)

    media: MediaPayload = getattr(event, event.type) or MediaPayload()
    fields: dict[str, Any] = {
        "media_id": media.id,
        "mime_type": media.mime_type,
        "sha256": media.sha256,
        "caption": media.caption,
        "url": media.link,
    }
    if event.type == "document":
        fields["filename"] = media.filename
    elif event.type == "audio":
        fields["voice"] = media.voice
    return body_cls(**fields)


def build_inbound_message(
    raw: Any,
    metadata: WebhookMetadata,
    profile_name: Optional[str] = None,
    business_id: Optional[str] = None,
) -> Message:
    """
    Convert one value.messages item into a canonical Message.

    Raises:
        MissingIdentity: the item has no usable id, sender or timestamp
    """
    try:
        event = InboundMessageEvent.model_validate(raw)
    except ValidationError as e:
        raise MissingIdentity(f"invalid message event ({_describe(e)})") from e

    owners = {metadata.phone_number_id, metadata.display_phone_number, business_id} - {None}
    direction = "outbound" if event.from_id in owners else "inbound"

    try:
        return Message(
            primary_id=event.id,
            secondary_id=event.id,
            conversation_id=event.from_id,
            from_id=event.from_id,
            to_id=metadata.phone_number_id or DEFAULT_RECIPIENT,
            direction=direction,
            body=build_body(event),
            created_at=seconds_to_ms(event.timestamp),
            status="received",
            display_name=profile_name or event.from_id,
        )
    except ValidationError as e:
        raise MissingIdentity(f"invalid message event {event.id} ({_describe(e)})") from e


def parse_status_event(raw: Any) -> StatusEvent:
    try:
        return StatusEvent.model_validate(raw)
    except ValidationError as e:
        raise MissingIdentity(f"invalid status event ({_describe(e)})") from e


def parse_contact_event(raw: Any) -> ContactEvent:
    try:
        return ContactEvent.model_validate(raw)
    except ValidationError as e:
        raise MissingIdentity(f"invalid contact event ({_describe(e)})") from e


class WebhookIngestor:
    """Applies webhook payloads and client-sent messages to the store."""

    def __init__(self, store: Store, broadcaster: Broadcaster, business_id: str = DEFAULT_RECIPIENT):
        self.store = store
        self.broadcaster = broadcaster
        self.business_id = business_id

    async def ingest(self, payload: Any) -> IngestResult:
        """
        Apply one webhook envelope.

        Per-item errors are logged and counted. PersistenceOperationFailure
        propagates to the caller; items applied before it stay applied.
        """
        change = normalize_envelope(payload)
        if change is None:
            return IngestResult(ignored=True)

        value = change.value
        result = IngestResult()
        profile_name = value.first_profile_name()

        for raw in value.messages:
            try:
                await self.apply_message(raw, value.metadata, profile_name)
                result.messages += 1
            except MissingIdentity as e:
                logger.warning(f"Skipping message: {e}")
                record_webhook_event("message", "skipped")
                result.skipped += 1

        for raw in value.statuses:
            try:
                await self.apply_status(raw)
                result.statuses += 1
            except UnmatchedStatus as e:
                logger.info(f"No message found for status update: {e}")
                record_webhook_event("status", "unmatched")
                result.unmatched_statuses += 1
            except MissingIdentity as e:
                logger.warning(f"Skipping status: {e}")
                record_webhook_event("status", "skipped")
                result.skipped += 1

        if value.contacts:
            applied = self.apply_contacts(value.contacts)
            result.contacts = len(applied)
            result.skipped += len(value.contacts) - len(applied)

        logger.info(f"Webhook applied: {result.as_log_fields()}")
        return result

    async def apply_message(
        self, raw: Any, metadata: WebhookMetadata, profile_name: Optional[str] = None
    ) -> Message:
        message = build_inbound_message(raw, metadata, profile_name, self.business_id)

        created = self.store.upsert_message(message)
        increment_unread = (
            created
            and message.direction == "inbound"
            and not self.broadcaster.is_viewing(message.conversation_id)
        )
        self.store.record_last_message(message, increment_unread=increment_unread)
        logger.info(f"Inserted/Updated message: {message.primary_id}")
        record_webhook_event("message", "applied")

        await self.broadcaster.publish_new_message(message)
        return message

    async def apply_status(self, raw: Any) -> Message:
        """
        Apply a status transition to the first message matching its id.

        The status update is broadcast whether or not a stored message matched.

        Raises:
            MissingIdentity: the status has no id
            UnmatchedStatus: no stored message carries that id
        """
        event = parse_status_event(raw)
        status_timestamp = seconds_to_ms(event.timestamp) if event.timestamp is not None else None
        updated = self.store.update_status(event.id, event.status, status_timestamp)

        conversation_id = updated.conversation_id if updated else event.recipient_id
        await self.broadcaster.publish_status_update(event.id, event.status, conversation_id)

        if updated is None:
            raise UnmatchedStatus(event.id)
        logger.info(f"Updated message status: {event.id} -> {event.status}")
        record_webhook_event("status", "applied")
        return updated

    def apply_contacts(self, raw_contacts: list[Any]) -> list[Contact]:
        """Upsert every contact of the payload; display name falls back to wa_id."""
        applied = []
        for raw in raw_contacts:
            try:
                event = parse_contact_event(raw)
            except MissingIdentity as e:
                logger.warning(f"Skipping contact: {e}")
                record_webhook_event("contact", "skipped")
                continue
            name = event.profile.name if event.profile and event.profile.name else event.wa_id
            applied.append(self.store.upsert_contact(event.wa_id, name))
            logger.info(f"Updated contact: {event.wa_id}")
            record_webhook_event("contact", "applied")
        return applied

    async def send_message(self, draft: MessageDraft) -> Message:
        """Persist and broadcast a message composed by a client."""
        now_ms = int(time.time() * 1000)
        primary_id = f"msg_{now_ms}_{uuid.uuid4().hex[:9]}"
        message = Message(
            primary_id=primary_id,
            secondary_id=primary_id,
            conversation_id=draft.conversation_id,
            from_id=self.business_id,
            to_id=draft.conversation_id,
            direction="outbound",
            body=draft.body,
            created_at=now_ms,
            status="sent",
            display_name=draft.display_name or draft.conversation_id,
        )
        self.store.upsert_message(message)
        self.store.record_last_message(message, increment_unread=False)
        logger.info(f"Stored outbound message: {primary_id}")

        await self.broadcaster.publish_new_message(message)
        return message
