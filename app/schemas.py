"""
Pydantic schemas for request/response validation.

This module contains:
- Canonical Message / Contact records shared by both stores and the API
- The tagged union of message bodies
- Provider event models parsed out of the webhook envelope
- Response models for API responses
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


Direction = Literal["inbound", "outbound"]
MessageStatus = Literal["received", "sent", "delivered", "read", "failed"]

# Largest epoch-seconds value whose millisecond form fits a signed 64-bit column
MAX_EPOCH_SECONDS = (2**63 - 1) // 1000


# =============================================================================
# Message Bodies
# =============================================================================

class TextBody(BaseModel):
    kind: Literal["text"] = "text"
    text: str = ""
    preview_url: bool = False


class _MediaBody(BaseModel):
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    caption: Optional[str] = None
    url: Optional[str] = None


class ImageBody(_MediaBody):
    kind: Literal["image"] = "image"


class VideoBody(_MediaBody):
    kind: Literal["video"] = "video"


class DocumentBody(_MediaBody):
    kind: Literal["document"] = "document"
    filename: Optional[str] = None


class AudioBody(_MediaBody):
    kind: Literal["audio"] = "audio"
    voice: bool = False


class UnsupportedBody(BaseModel):
    """Provider message types outside the five supported kinds."""
    kind: Literal["unsupported"] = "unsupported"
    type: str


MessageBody = Annotated[
    Union[TextBody, ImageBody, VideoBody, DocumentBody, AudioBody, UnsupportedBody],
    Field(discriminator="kind"),
]

MEDIA_BODIES: dict[str, type[_MediaBody]] = {
    "image": ImageBody,
    "video": VideoBody,
    "document": DocumentBody,
    "audio": AudioBody,
}


# =============================================================================
# Canonical Records
# =============================================================================

class Message(BaseModel):
    """
    One inbound or outbound message.

    primary_id is the identity key. secondary_id starts equal to it and is
    consulted alongside it when reconciling status updates.
    """
    primary_id: str = Field(..., min_length=1)
    secondary_id: Optional[str] = None
    conversation_id: str
    from_id: str
    to_id: str
    direction: Direction
    body: MessageBody
    created_at: int = Field(..., description="Event time in epoch milliseconds")
    status: MessageStatus = "received"
    status_timestamp: Optional[int] = None
    display_name: str

    model_config = {"from_attributes": True}

    @property
    def kind(self) -> str:
        return self.body.kind


class Contact(BaseModel):
    """One counterpart directory entry, keyed by conversation_id."""
    conversation_id: str
    display_name: str
    unread_count: int = Field(default=0, ge=0)
    last_message: Optional[Message] = None

    model_config = {"from_attributes": True}


class StatusUpdate(BaseModel):
    """Realtime payload for a status transition."""
    message_id: str
    status: str


# =============================================================================
# Provider Event Models
# =============================================================================

class WebhookMetadata(BaseModel):
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None


class TextPayload(BaseModel):
    body: str = ""
    preview_url: bool = False


class MediaPayload(BaseModel):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    voice: bool = False
    link: Optional[str] = None


class InboundMessageEvent(BaseModel):
    """
    A single entry of value.messages.

    Only the fields the pipeline reads are declared; anything else the
    provider sends is kept but ignored.
    """
    id: str = Field(..., min_length=1)
    from_id: str = Field(..., alias="from", min_length=1)
    timestamp: int = Field(..., ge=0, le=MAX_EPOCH_SECONDS)
    type: str = "text"
    text: Optional[TextPayload] = None
    image: Optional[MediaPayload] = None
    video: Optional[MediaPayload] = None
    document: Optional[MediaPayload] = None
    audio: Optional[MediaPayload] = None

    model_config = {"populate_by_name": True, "extra": "allow"}


class StatusEvent(BaseModel):
    """A single entry of value.statuses."""
    id: str = Field(..., min_length=1)
    status: MessageStatus
    timestamp: Optional[int] = Field(None, ge=0, le=MAX_EPOCH_SECONDS)
    recipient_id: Optional[str] = None

    model_config = {"extra": "allow"}


class ContactProfile(BaseModel):
    name: Optional[str] = None


class ContactEvent(BaseModel):
    """A single entry of value.contacts."""
    wa_id: str = Field(..., min_length=1)
    profile: Optional[ContactProfile] = None

    model_config = {"extra": "allow"}


class ChangeValue(BaseModel):
    """
    The value object of a "messages" change.

    Items are kept raw so a bad item can be skipped on its own instead of
    failing the whole payload.
    """
    metadata: WebhookMetadata = Field(default_factory=WebhookMetadata)
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)
    contacts: list[Any] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    @field_validator("messages", "statuses", "contacts", mode="before")
    @classmethod
    def default_items(cls, v: Any) -> Any:
        return [] if v is None else v

    def first_profile_name(self) -> Optional[str]:
        """Profile name of the first contact, if the provider sent one."""
        if not self.contacts:
            return None
        first = self.contacts[0]
        profile = first.get("profile") if isinstance(first, dict) else None
        if not isinstance(profile, dict):
            return None
        name = profile.get("name")
        return name if isinstance(name, str) and name else None


class WebhookChange(BaseModel):
    field: str
    value: ChangeValue


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MessageDraft(BaseModel):
    """
    Partially-filled message posted by a client.

    The server assigns ids, timestamps, direction and status.
    """
    conversation_id: str = Field(..., min_length=1)
    body: MessageBody
    display_name: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "conversation_id": "1234567890",
                    "body": {"kind": "text", "text": "Hello"},
                }
            ]
        }
    }


class ClientFrame(BaseModel):
    """Realtime frame sent by a client: join-chat / leave-chat."""
    event: str
    data: Any = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing, including ignored envelopes."""
    success: bool = Field(default=True, description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for GET /health."""
    status: str = Field(..., description="Health status")
    timestamp: str = Field(..., description="Server time (ISO-8601 UTC)")
    database: Literal["connected", "in-memory"] = Field(
        ..., description="Which store is serving requests"
    )


class ProbeResponse(BaseModel):
    """Response model for liveness/readiness probes."""
    status: str = Field(..., description="Probe status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
