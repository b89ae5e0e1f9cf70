import json
import logging
import math
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from wachat import block_registry, conversation_store, message_store, user_store
from wachat.config import settings
from wachat.delivery import DeliveryCoordinator
from wachat.errors import ChatError, NotFound, ValidationError
from wachat.ingestor import WebhookIngestor
from wachat.logging_utils import RequestLoggingMiddleware, log_ingest_data, setup_logging
from wachat.metrics import get_metrics, get_metrics_content_type, record_ingest_outcome
from wachat.presence import PresenceHub
from wachat.schemas import (
    ArchiveRequest,
    BlockedListResponse,
    BlockedUserResponse,
    BlockRequest,
    ConversationListResponse,
    ConversationStateResponse,
    ConversationSummary,
    DeleteMessageRequest,
    DeleteMessageResponse,
    ErrorResponse,
    ForwardMessageRequest,
    ForwardResponse,
    HealthResponse,
    IngestResponse,
    LoadPayloadsResponse,
    MessageResponse,
    MessagesPageResponse,
    MuteRequest,
    PayloadStatsResponse,
    ProcessPayloadsResponse,
    SearchResponse,
    SendMessageRequest,
    StatusUpdateResponse,
    UpdateStatusRequest,
)
from wachat.storage import SessionLocal, check_db_health, get_db, init_db
from wachat.utils import isoformat_z, utcnow, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, presence hub, coordinator and ingestor
    - Shutdown: Close every open websocket
    """
    init_db()
    hub = PresenceHub(SessionLocal)
    app.state.hub = hub
    app.state.coordinator = DeliveryCoordinator(SessionLocal, hub, settings)
    app.state.ingestor = WebhookIngestor(SessionLocal, settings.BUSINESS_PHONE_NUMBER)
    yield
    await hub.close()


app = FastAPI(
    title="WhatsApp-style Chat API",
    description="Real-time conversation and delivery-state service for WhatsApp-like messages",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# =============================================================================
# Dependencies
# =============================================================================

async def get_caller(
    x_wa_id: Annotated[str | None, Header(alias="X-WA-ID")] = None,
) -> str:
    """Caller identity, already resolved by the authentication layer in front of this service."""
    if not x_wa_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing caller identity"
        )
    return x_wa_id


def get_coordinator(request: Request) -> DeliveryCoordinator:
    return request.app.state.coordinator


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


Caller = Annotated[str, Depends(get_caller)]
Coordinator = Annotated[DeliveryCoordinator, Depends(get_coordinator)]
Ingestor = Annotated[WebhookIngestor, Depends(get_ingestor)]

ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Not a participant, or blocked"},
    404: {"model": ErrorResponse, "description": "Message, user or conversation not found"},
    503: {"model": ErrorResponse, "description": "Store timeout, safe to retry"},
}


def _pages(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if total else 0


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WEBHOOK_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def send_message(body: SendMessageRequest, caller: Caller, coordinator: Coordinator) -> MessageResponse:
    """
    Send a live message from the caller.

    The message is stored with status "sent", then "new_message" goes to the
    conversation room and "message_notification" to the recipient.
    """
    message = await coordinator.send(
        caller,
        body.to,
        body.content.model_dump(exclude_none=True),
        body.message_type,
        body.reply_to,
        body.message_id,
    )
    return MessageResponse.model_validate(message)


@app.put(
    "/messages/{message_id}/status",
    response_model=StatusUpdateResponse,
    responses=ERROR_RESPONSES,
)
async def update_message_status(
    message_id: str,
    body: UpdateStatusRequest,
    caller: Caller,
    coordinator: Coordinator,
) -> StatusUpdateResponse:
    """
    Advance a message's status. Backward or repeated updates succeed with
    changed=false and broadcast nothing.
    """
    result = await coordinator.update_status(message_id, body.status, requester=caller)
    return StatusUpdateResponse(**result)


@app.delete(
    "/messages/{message_id}",
    response_model=DeleteMessageResponse,
    responses={**ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Delete window expired"}},
)
async def delete_message(
    message_id: str,
    caller: Caller,
    coordinator: Coordinator,
    body: DeleteMessageRequest | None = None,
) -> DeleteMessageResponse:
    """
    Delete a message for the caller only, or for everyone.

    Deleting for everyone is limited to the sender and to the configured
    window after sending (7 minutes by default).
    """
    for_everyone = body.for_everyone if body else False
    result = await coordinator.delete_message(message_id, caller, for_everyone)
    return DeleteMessageResponse(**result)


@app.post(
    "/messages/forward",
    response_model=ForwardResponse,
    responses=ERROR_RESPONSES,
)
async def forward_message(body: ForwardMessageRequest, caller: Caller, coordinator: Coordinator) -> ForwardResponse:
    """Forward a message to several recipients; blocked or unknown recipients are skipped."""
    forwarded = await coordinator.forward(body.message_id, caller, body.to)
    return ForwardResponse(forwarded_to=forwarded)


@app.get(
    "/messages/search",
    response_model=SearchResponse,
)
async def search_messages(
    caller: Caller,
    q: Annotated[str, Query(min_length=1, description="Case-insensitive text to search for")],
    conversation_id: Annotated[str | None, Query(description="Restrict to one conversation")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    db: Session = Depends(get_db),
) -> SearchResponse:
    """
    Search the caller's messages, newest first.

    Messages deleted for everyone, or deleted by the caller, never match.
    """
    logger.info(f"GET /messages/search: q={q}, conversation_id={conversation_id}, page={page}")
    messages, total = message_store.search_messages(db, caller, q, conversation_id, page, page_size)
    return SearchResponse(
        data=[MessageResponse.from_message(m) for m in messages],
        total=total,
        page=page,
        page_size=page_size,
        pages=_pages(total, page_size),
        query=q,
    )


@app.get(
    "/messages/{message_id}/info",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
)
async def message_info(message_id: str, caller: Caller, db: Session = Depends(get_db)) -> MessageResponse:
    """Delivery details (status, delivered_at, read_at) of one message."""
    message = message_store.get_message_for_participant(db, message_id, caller)
    return MessageResponse.from_message(message)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    caller: Caller,
    include_archived: Annotated[bool, Query(description="Include conversations the caller archived")] = False,
    db: Session = Depends(get_db),
) -> ConversationListResponse:
    summaries = conversation_store.list_conversations(db, caller, include_archived)
    return ConversationListResponse(
        conversations=[ConversationSummary.from_summary(s) for s in summaries]
    )


@app.get("/conversations/archived", response_model=ConversationListResponse)
async def list_archived_conversations(caller: Caller, db: Session = Depends(get_db)) -> ConversationListResponse:
    summaries = conversation_store.list_archived(db, caller)
    return ConversationListResponse(
        conversations=[ConversationSummary.from_summary(s) for s in summaries]
    )


@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesPageResponse,
    responses=ERROR_RESPONSES,
)
async def list_conversation_messages(
    conversation_id: str,
    caller: Caller,
    coordinator: Coordinator,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int | None, Query(ge=1, le=100)] = None,
    mark_read: Annotated[bool, Query(description="Mark messages addressed to the caller as read")] = True,
) -> MessagesPageResponse:
    """
    One page of a conversation in chronological order; page 1 holds the
    most recent messages.
    """
    result = await coordinator.list_messages(conversation_id, caller, page, page_size, mark_read)
    return MessagesPageResponse(
        data=result["data"],
        total=result["total"],
        page=result["page"],
        page_size=result["page_size"],
        pages=_pages(result["total"], result["page_size"]),
    )


@app.delete("/conversations/{conversation_id}", responses=ERROR_RESPONSES)
async def delete_conversation(conversation_id: str, caller: Caller, coordinator: Coordinator) -> dict:
    removed = await coordinator.delete_conversation(conversation_id, caller)
    return {"conversation_id": conversation_id, "deleted_messages": removed}


@app.delete("/conversations/{conversation_id}/messages", responses=ERROR_RESPONSES)
async def clear_conversation(conversation_id: str, caller: Caller, coordinator: Coordinator) -> dict:
    removed = await coordinator.clear_conversation(conversation_id, caller)
    return {"conversation_id": conversation_id, "deleted_messages": removed}


def _conversation_state(conversation, caller: str) -> ConversationStateResponse:
    mute = conversation.mute_entry(caller)
    return ConversationStateResponse(
        conversation_id=conversation.conversation_id,
        is_archived=conversation.is_archived,
        is_muted=conversation.is_muted,
        archived_for_caller=conversation.archive_entry(caller) is not None,
        muted_for_caller=conversation_store.is_muted_for(conversation, caller),
        muted_until=isoformat_z(mute.muted_until) if mute else None,
    )


@app.put(
    "/conversations/{conversation_id}/archive",
    response_model=ConversationStateResponse,
    responses=ERROR_RESPONSES,
)
async def archive_conversation(
    conversation_id: str,
    body: ArchiveRequest,
    caller: Caller,
    db: Session = Depends(get_db),
) -> ConversationStateResponse:
    conversation = conversation_store.set_archived(db, conversation_id, caller, body.archive)
    return _conversation_state(conversation, caller)


@app.put(
    "/conversations/{conversation_id}/mute",
    response_model=ConversationStateResponse,
    responses=ERROR_RESPONSES,
)
async def mute_conversation(
    conversation_id: str,
    body: MuteRequest,
    caller: Caller,
    db: Session = Depends(get_db),
) -> ConversationStateResponse:
    until = utcnow() + timedelta(seconds=body.duration_seconds) if body.mute and body.duration_seconds else None
    conversation = conversation_store.set_muted(db, conversation_id, caller, body.mute, until)
    return _conversation_state(conversation, caller)


@app.get(
    "/conversations/{conversation_id}/export",
    response_class=PlainTextResponse,
    responses=ERROR_RESPONSES,
)
async def export_conversation(conversation_id: str, caller: Caller, db: Session = Depends(get_db)) -> PlainTextResponse:
    """Plain-text transcript of everything the caller can see, oldest first."""
    transcript = message_store.export_transcript(db, conversation_id, caller)
    return PlainTextResponse(
        transcript,
        headers={"Content-Disposition": f'attachment; filename="chat_{conversation_id}.txt"'},
    )


# =============================================================================
# Block Routes
# =============================================================================

def _blocked_response(relation) -> BlockedUserResponse:
    return BlockedUserResponse(
        user_id=relation.blocked_user,
        blocked_at=isoformat_z(relation.blocked_at),
        reason=relation.reason,
    )


@app.post(
    "/blocks",
    response_model=BlockedUserResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Already blocked"}},
)
async def block_user(body: BlockRequest, caller: Caller, db: Session = Depends(get_db)) -> BlockedUserResponse:
    if user_store.get_user(db, body.user_id) is None:
        raise NotFound(f"User not found: {body.user_id}")
    relation = block_registry.block(db, caller, body.user_id, body.reason)
    return _blocked_response(relation)


@app.delete("/blocks", responses=ERROR_RESPONSES)
async def unblock_user(body: BlockRequest, caller: Caller, db: Session = Depends(get_db)) -> dict:
    block_registry.unblock(db, caller, body.user_id)
    return {"user_id": body.user_id, "blocked": False}


@app.get("/blocks", response_model=BlockedListResponse)
async def list_blocked_users(caller: Caller, db: Session = Depends(get_db)) -> BlockedListResponse:
    return BlockedListResponse(
        blocked_users=[_blocked_response(r) for r in block_registry.list_blocked(db, caller)]
    )


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """Meta's subscription handshake: echo the challenge when the verify token matches."""
    if (
        hub_mode == "subscribe"
        and settings.WEBHOOK_VERIFY_TOKEN
        and hub_verify_token == settings.WEBHOOK_VERIFY_TOKEN
    ):
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("Webhook verification failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")


@app.post(
    "/webhook",
    response_model=IngestResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    ingestor: Ingestor,
    x_hub_signature: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> IngestResponse:
    """
    Ingest a WhatsApp Business webhook payload.

    - Validates HMAC-SHA256 of the raw body (X-Hub-Signature-256 or X-Signature)
    - Idempotent: replayed messages are counted as skipped
    - Partial failures are counted, never fail the batch
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    signature = x_hub_signature or x_signature
    if not signature or not verify_hmac_signature(raw_body, signature, settings.WEBHOOK_SECRET):
        logger.error("Missing or invalid webhook signature")
        record_ingest_outcome("invalid_signature")
        log_ingest_data(request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        record_ingest_outcome("validation_error")
        log_ingest_data(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )

    try:
        result = await run_in_threadpool(ingestor.ingest, payload)
    except ValidationError:
        record_ingest_outcome("validation_error")
        log_ingest_data(request, result="validation_error")
        raise

    log_ingest_data(request, result="processed", **result.as_dict())
    return IngestResponse(**result.as_dict())


# =============================================================================
# Payload Import Routes
# =============================================================================

@app.post("/payloads/load", response_model=LoadPayloadsResponse)
async def load_payloads(request: Request, ingestor: Ingestor) -> LoadPayloadsResponse:
    """Store the *.json payload documents found in PAYLOADS_DIR."""
    results = await run_in_threadpool(ingestor.load_payload_files)
    log_ingest_data(request, **results)
    return LoadPayloadsResponse(**results)


@app.post("/payloads/process", response_model=ProcessPayloadsResponse)
async def process_payloads(request: Request, ingestor: Ingestor) -> ProcessPayloadsResponse:
    """Ingest every stored payload that has not been processed yet."""
    results = await run_in_threadpool(ingestor.process_pending)
    log_ingest_data(request, result="processed", **results)
    return ProcessPayloadsResponse(**results)


@app.get("/payloads/stats", response_model=PayloadStatsResponse)
async def payload_stats(ingestor: Ingestor) -> PayloadStatsResponse:
    stats = await run_in_threadpool(ingestor.payload_stats)
    return PayloadStatsResponse(**stats)


# =============================================================================
# WebSocket Route
# =============================================================================

def _lookup_name(wa_id: str) -> str | None:
    with SessionLocal() as db:
        user = user_store.get_user(db, wa_id)
        return user.name if user else None


async def _handle_client_event(websocket: WebSocket, wa_id: str, data: dict) -> None:
    hub: PresenceHub = websocket.app.state.hub
    coordinator: DeliveryCoordinator = websocket.app.state.coordinator

    action = data.get("event")
    payload = data.get("data")
    if payload is None:
        payload = {}
    elif not isinstance(payload, dict):
        raise ValidationError("Event data must be a JSON object")
    conversation_id = payload.get("conversationId")

    if action == "join_conversation":
        hub.join(websocket, conversation_id)
        await websocket.send_json({"event": "joined_conversation", "data": {"conversationId": conversation_id}})
    elif action == "leave_conversation":
        hub.leave(websocket, conversation_id)
        await websocket.send_json({"event": "left_conversation", "data": {"conversationId": conversation_id}})
    elif action in ("typing_start", "typing_stop"):
        await hub.typing(websocket, conversation_id, action == "typing_start")
    elif action == "mark_messages_read":
        await coordinator.mark_read(conversation_id, wa_id)
    elif action == "update_presence":
        await hub.update_presence(websocket, payload.get("status"))
    else:
        raise ValidationError(f"Unknown event: {action}")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, wa_id: str | None = None) -> None:
    """
    Real-time channel.

    Clients send {"event": <action>, "data": {...}} and receive events in the
    same envelope. Rejected actions come back as an "error" event; the
    connection stays open.
    """
    name = await run_in_threadpool(_lookup_name, wa_id) if wa_id else None
    if name is None:
        logger.warning(f"Rejecting websocket for unknown user: {wa_id}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub: PresenceHub = websocket.app.state.hub
    await hub.connect(websocket, wa_id, name)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
                if not isinstance(data, dict):
                    raise ValidationError("Events must be JSON objects")
                await _handle_client_event(websocket, wa_id, data)
            except json.JSONDecodeError:
                await websocket.send_json(
                    {"event": "error", "data": ValidationError("Invalid JSON").to_dict()}
                )
            except ChatError as e:
                await websocket.send_json({"event": "error", "data": e.to_dict()})
    except WebSocketDisconnect:
        logger.debug(f"Websocket closed by client: {wa_id}")
    finally:
        await hub.disconnect(websocket)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - webhook_ingest_total: Ingestion outcomes
    - realtime_events_total: Events fanned out to websockets
    - message_status_transitions_total: Applied status transitions
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
