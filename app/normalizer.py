"""
Webhook envelope normalization.

Pulls the messages/statuses/contacts triple out of a WhatsApp Cloud API
envelope. Only entry[0].changes[0] is consulted; the provider batches one
change per delivery for the "messages" field.
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from app.errors import MalformedPayload
from app.schemas import ChangeValue, WebhookChange

logger = logging.getLogger(__name__)

MESSAGES_FIELD = "messages"


def extract_change(payload: Any) -> WebhookChange:
    """
    Extract the first change of the first entry.

    Raises:
        MalformedPayload: the envelope does not have the expected shape
    """
    if not isinstance(payload, dict):
        raise MalformedPayload("payload is not an object")

    entries = payload.get("entry")
    if not isinstance(entries, list) or not entries:
        raise MalformedPayload("missing entry")

    entry = entries[0]
    changes = entry.get("changes") if isinstance(entry, dict) else None
    if not isinstance(changes, list) or not changes:
        raise MalformedPayload("missing changes")

    change = changes[0]
    if not isinstance(change, dict):
        raise MalformedPayload("change is not an object")

    field = change.get("field")
    if field != MESSAGES_FIELD:
        raise MalformedPayload(f"unsupported field {field!r}")

    value = change.get("value")
    if not isinstance(value, dict):
        raise MalformedPayload("missing value")

    try:
        return WebhookChange(field=field, value=ChangeValue.model_validate(value))
    except ValidationError as e:
        raise MalformedPayload(f"invalid value: {e.error_count()} error(s)") from e


def normalize_envelope(payload: Any) -> Optional[WebhookChange]:
    """
    Return the change to apply, or None for envelopes this service ignores.

    Never raises: malformed payloads are logged and dropped so the provider
    is not made to retry them.
    """
    try:
        change = extract_change(payload)
    except MalformedPayload as e:
        logger.info(f"Ignoring webhook payload: {e}")
        return None

    value = change.value
    logger.debug(
        f"Normalized change: messages={len(value.messages)}, "
        f"statuses={len(value.statuses)}, contacts={len(value.contacts)}"
    )
    return change
