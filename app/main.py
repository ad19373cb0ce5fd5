import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from app.broadcaster import Broadcaster, EventType, frame
from app.config import Settings, get_settings
from app.errors import PersistenceOperationFailure
from app.ingestion import WebhookIngestor
from app.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from app.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from app.schemas import (
    ClientFrame,
    Contact,
    ErrorResponse,
    HealthResponse,
    Message,
    MessageDraft,
    ProbeResponse,
    WebhookResponse,
)
from app.storage import Store, open_store
from app.utils import verify_subscription


logger = logging.getLogger(__name__)


# =============================================================================
# Dependencies
# =============================================================================

def get_store(request: Request) -> Store:
    return request.app.state.store


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# =============================================================================
# Read / Compose Routes (served at / and /api)
# =============================================================================

router = APIRouter()


@router.get("/contacts", response_model=list[Contact])
async def list_contacts(store: Store = Depends(get_store)) -> list[Contact]:
    """List every contact, ordered by conversation id."""
    try:
        contacts = store.list_contacts()
    except PersistenceOperationFailure:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch contacts"
        )
    logger.info(f"GET /contacts: returned {len(contacts)} contacts")
    return contacts


@router.post(
    "/contacts/{conversation_id}/read",
    response_model=Contact,
    responses={404: {"model": ErrorResponse, "description": "Unknown conversation"}},
)
async def mark_contact_read(conversation_id: str, store: Store = Depends(get_store)) -> Contact:
    """Reset the unread counter of one conversation."""
    try:
        contact = store.mark_read(conversation_id)
    except PersistenceOperationFailure:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update contact"
        )
    if contact is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
    return contact


@router.get("/messages/{conversation_id}", response_model=list[Message])
async def list_messages(conversation_id: str, store: Store = Depends(get_store)) -> list[Message]:
    """
    List the messages of one conversation.

    Ordering:
        - created_at ASC, primary_id ASC (deterministic)
    """
    try:
        messages = store.list_messages(conversation_id)
    except PersistenceOperationFailure:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch messages"
        )
    logger.info(f"GET /messages/{conversation_id}: returned {len(messages)} messages")
    return messages


@router.post("/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    draft: MessageDraft,
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> Message:
    """
    Store a message composed by a client and broadcast it.

    The server assigns primary_id/secondary_id, created_at, direction
    (outbound) and status (sent).
    """
    try:
        return await ingestor.send_message(draft)
    except PersistenceOperationFailure:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save message"
        )


# =============================================================================
# Webhook Routes
# =============================================================================

webhook_router = APIRouter()


@webhook_router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> PlainTextResponse:
    """
    Subscription handshake.

    Accepts hub.mode / hub.verify_token / hub.challenge (or the same names
    without the hub. prefix). Echoes the challenge when the token matches
    WEBHOOK_VERIFY_TOKEN, otherwise 403.
    """
    params = request.query_params
    mode = params.get("hub.mode", params.get("mode"))
    token = params.get("hub.verify_token", params.get("verify_token"))
    challenge = params.get("hub.challenge", params.get("challenge"))

    if verify_subscription(mode, token, settings.WEBHOOK_VERIFY_TOKEN):
        logger.info("Webhook verified successfully")
        return PlainTextResponse(challenge or "")

    logger.warning("Webhook verification failed")
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


@webhook_router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Body is not JSON"},
        500: {"model": ErrorResponse, "description": "Persistence failure"},
    }
)
async def receive_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> WebhookResponse:
    """
    Ingest one WhatsApp Cloud API envelope.

    - Envelopes that do not carry a "messages" change are acknowledged and ignored
    - Items without an id are skipped; the rest of the payload is still applied
    - Redelivered messages replace the stored record (idempotent)
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("invalid_json")
        log_webhook_data(request, result="invalid_json")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON"
        )

    try:
        result = await ingestor.ingest(payload)
    except PersistenceOperationFailure as e:
        logger.error(f"Webhook processing error: {e}")
        record_webhook_outcome("error")
        log_webhook_data(request, result="error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    outcome = "ignored" if result.ignored else "processed"
    record_webhook_outcome(outcome)
    log_webhook_data(request, result=outcome, tally=result.as_log_fields())
    return WebhookResponse(success=True)


# =============================================================================
# Health & Metrics Routes
# =============================================================================

ops_router = APIRouter()


@ops_router.get("/health", response_model=HealthResponse)
async def health(store: Store = Depends(get_store)) -> HealthResponse:
    """Report which store is serving requests."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        database=store.mode,
    )


@ops_router.get("/health/live", response_model=ProbeResponse)
async def health_live() -> ProbeResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return ProbeResponse(status="ok")


@ops_router.get("/health/ready", response_model=ProbeResponse)
async def health_ready(response: Response, store: Store = Depends(get_store)) -> ProbeResponse:
    """Readiness probe - 503 when the store does not answer."""
    if not store.ping():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ProbeResponse(status="not_ready", reason="Store not reachable")
    return ProbeResponse(status="ready")


@ops_router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Realtime Channel
# =============================================================================

async def handle_client_frame(websocket: WebSocket, raw: str) -> None:
    """Apply one join-chat / leave-chat frame from a subscriber."""
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    store: Store = websocket.app.state.store

    try:
        client_frame = ClientFrame.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.warning(f"Ignoring malformed realtime frame: {e}")
        return

    conversation_id = str(client_frame.data) if client_frame.data not in (None, "") else None
    if conversation_id is None:
        logger.warning(f"Ignoring {client_frame.event} without conversation id")
        return

    if client_frame.event == EventType.JOIN_CHAT.value:
        broadcaster.join(websocket, conversation_id)
        try:
            store.mark_read(conversation_id)
        except PersistenceOperationFailure as e:
            logger.error(f"Could not reset unread count for {conversation_id}: {e}")
        await websocket.send_json(frame(EventType.CHAT_JOINED.value, conversation_id))
    elif client_frame.event == EventType.LEAVE_CHAT.value:
        broadcaster.leave(websocket, conversation_id)
        await websocket.send_json(frame(EventType.CHAT_LEFT.value, conversation_id))
    else:
        logger.warning(f"Unknown realtime event: {client_frame.event}")


async def realtime(websocket: WebSocket) -> None:
    """Realtime channel: newMessage and messageStatusUpdate for joined chats."""
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    broadcaster.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await handle_client_frame(websocket, raw)
    except WebSocketDisconnect:
        logger.debug("Realtime client closed the connection")
    finally:
        broadcaster.disconnect(websocket)


# =============================================================================
# Application Factory
# =============================================================================

def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None) -> FastAPI:
    """
    Build the application.

    The store is opened in the lifespan (or taken from the caller) and
    shared through app.state; nothing is kept at module level.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: open the store (durable or in-memory) and wire the pipeline
        - Shutdown: release the store
        """
        app.state.store = store or open_store(settings)
        app.state.broadcaster = Broadcaster()
        app.state.ingestor = WebhookIngestor(
            app.state.store,
            app.state.broadcaster,
            business_id=settings.BUSINESS_PHONE_NUMBER_ID,
        )
        logger.info(f"Store ready: {app.state.store.mode}")
        yield
        app.state.store.close()

    app = FastAPI(
        title="WhatsApp Webhook Relay",
        description="Ingests WhatsApp Cloud API webhooks and relays changes to live viewers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(webhook_router)
    app.include_router(ops_router)
    app.include_router(router)
    app.include_router(router, prefix="/api", include_in_schema=False)
    app.add_api_websocket_route("/ws", realtime)

    return app


app = create_app()
