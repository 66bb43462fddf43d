import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, Header, Query, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from chatsync import message_store, registry
from chatsync.config import settings
from chatsync.errors import (
    AuthenticationError,
    AuthorizationError,
    ChatSyncError,
    NotFoundError,
    ValidationError,
)
from chatsync.logging_utils import setup_logging, RequestLoggingMiddleware, log_chat_data
from chatsync.metrics import (
    record_message_outcome,
    record_messages_seen,
    get_metrics,
    get_metrics_content_type,
)
from chatsync.models import Conversation, Message, User
from chatsync.realtime import (
    MESSAGE_CREATED,
    MESSAGE_UPDATED,
    EventHub,
    conversation_topic,
    user_topic,
)
from chatsync.schemas import (
    BatchUpdateResponse,
    ConversationOut,
    ConversationResponse,
    ConversationsListResponse,
    CreateConversationRequest,
    CreateMessageRequest,
    ErrorResponse,
    HealthResponse,
    MessageOut,
    MessageResponse,
    MessagesListResponse,
    Pagination,
    RealtimeEnvelope,
    SeenResponse,
    UserOut,
)
from chatsync.storage import init_db, check_db_health, get_db, get_user, search_users, SessionLocal


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    - Shutdown: Cleanup resources
    """
    init_db()
    yield


app = FastAPI(
    title="Chat Sync API",
    description="Message delivery and synchronization service for two-party chat",
    version="1.0.0",
    lifespan=lifespan,
)

# One hub per application instance; endpoints reach it through app.state
app.state.event_hub = EventHub(queue_size=settings.REALTIME_QUEUE_SIZE)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    401: {"model": ErrorResponse, "description": "Missing or unknown caller"},
    403: {"model": ErrorResponse, "description": "Caller is not allowed"},
}


# =============================================================================
# Error Handling
# =============================================================================

@app.exception_handler(ChatSyncError)
async def chat_error_handler(request: Request, exc: ChatSyncError) -> JSONResponse:
    """Render domain errors as {"detail", "code"} with their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}", exc_info=exc)
    else:
        logger.warning(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body and query validation failures are plain 400s in the shared error shape."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    detail = "; ".join(problems) or "Invalid request"
    logger.warning(f"Request validation failed: {detail}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": detail, "code": ValidationError.code},
    )


# =============================================================================
# Dependencies and Serialization
# =============================================================================

def get_event_hub(request: Request) -> EventHub:
    return request.app.state.event_hub


def get_current_user(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-ID")] = None,
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the caller from the X-User-ID header set by the auth gateway.
    """
    if not x_user_id:
        raise AuthenticationError("Missing X-User-ID header")
    user = get_user(db, x_user_id)
    if user is None:
        raise AuthenticationError("Unknown user")
    return user


def message_to_out(message: Message) -> MessageOut:
    return MessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        recipient_id=message.recipient_id,
        content=message.content,
        image_url=message.image_url,
        status=message.status,
        client_ref=message.client_ref,
        created_at=message.created_at,
        updated_at=message.updated_at,
        seen_at=message.seen_at,
    )


def conversation_to_out(db: Session, conversation: Conversation, viewer_id: str) -> ConversationOut:
    last_message = None
    if conversation.last_message_id is not None:
        row = message_store.get_message(db, conversation.last_message_id)
        if row is not None:
            last_message = message_to_out(row)
    return ConversationOut(
        id=conversation.id,
        participant_ids=conversation.participant_ids,
        last_message=last_message,
        last_message_time=conversation.last_message_at,
        unread_count=message_store.count_unread(db, viewer_id, conversation.id),
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def user_to_out(user: User) -> UserOut:
    return UserOut(id=user.id, name=user.name or user.email, email=user.email)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied. Otherwise returns 503 (Service Unavailable).
    """
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
async def create_message(
    payload: CreateMessageRequest,
    request: Request,
    response: Response,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_event_hub),
) -> MessageResponse:
    """
    Send a message.

    - Without conversationId the conversation with recipientId is resolved
      or created through the registry.
    - With conversationId the sender must be a participant; the recipient
      defaults to the other participant.
    - Idempotent per clientRef: a replay returns 200 with the stored
      message and duplicate=true.
    """
    sender_id = user.id
    logger.info(f"POST /messages: sender={sender_id}, conversation={payload.conversation_id}")

    if payload.recipient_id is not None and get_user(db, payload.recipient_id) is None:
        record_message_outcome("rejected")
        log_chat_data(request, conversation_id=payload.conversation_id, result="rejected")
        raise ValidationError("Recipient not found")

    if payload.conversation_id is None:
        conversation, _ = registry.get_or_create_conversation(db, sender_id, payload.recipient_id)
        recipient_id = payload.recipient_id
    else:
        conversation = registry.get_conversation_for_user(db, payload.conversation_id, sender_id)
        if conversation is None:
            record_message_outcome("rejected")
            log_chat_data(request, conversation_id=payload.conversation_id, result="rejected")
            raise ValidationError("Invalid conversation ID or user not participant")
        recipient_id = payload.recipient_id or conversation.other_participant(sender_id)

    message, duplicate = message_store.send_message(
        db=db,
        conversation_id=conversation.id,
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=payload.content,
        image_url=payload.image_url,
        client_ref=payload.client_ref,
    )

    out = message_to_out(message)
    result = "duplicate" if duplicate else "created"
    record_message_outcome(result)
    log_chat_data(request, message_id=message.id, conversation_id=conversation.id, dup=duplicate, result=result)

    if duplicate:
        response.status_code = status.HTTP_200_OK
    else:
        hub.publish_message(MESSAGE_CREATED, out)

    logger.info(f"Message processed: {message.id}, result: {result}")
    return MessageResponse(message=out, duplicate=duplicate)


@app.get(
    "/messages/conversation/{conversation_id}",
    response_model=MessagesListResponse,
    responses=ERROR_RESPONSES,
)
async def list_messages(
    conversation_id: int,
    limit: Annotated[int, Query(ge=1, description="Page size; capped at MAX_PAGE_SIZE")] = settings.DEFAULT_PAGE_SIZE,
    skip: Annotated[int, Query(ge=0, description="Number of newest messages to skip")] = 0,
    before: Annotated[Optional[int], Query(ge=1, description="Only messages older than this message id")] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    One page of a conversation, newest first.

    Pass before=<oldest id already held> to page back through history
    independently of messages that arrived since.

    Response:
        - messages: the page
        - pagination: limit actually applied, skip, hasMore
    """
    if not registry.is_participant(db, conversation_id, user.id):
        raise AuthorizationError("You are not a participant in this conversation")

    messages, has_more = message_store.list_messages(db, conversation_id, limit=limit, offset=skip, before=before)
    applied_limit = min(limit, settings.MAX_PAGE_SIZE)

    logger.info(f"GET /messages/conversation/{conversation_id}: returned {len(messages)} (limit={applied_limit}, skip={skip})")

    return MessagesListResponse(
        messages=[message_to_out(m) for m in messages],
        pagination=Pagination(limit=applied_limit, skip=skip, has_more=has_more),
    )


@app.patch(
    "/messages/{message_id}/seen",
    response_model=SeenResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Unknown message"}},
)
async def mark_message_seen(
    message_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_event_hub),
) -> SeenResponse:
    """
    Mark one message as seen. Only its recipient may do this; calling it
    again returns alreadySeen=true and leaves seenAt untouched.
    """
    message, already_seen = message_store.mark_message_seen(db, message_id, user.id)
    out = message_to_out(message)

    log_chat_data(
        request,
        message_id=message.id,
        conversation_id=message.conversation_id,
        result="already_seen" if already_seen else "seen",
    )
    if not already_seen:
        record_messages_seen(1)
        hub.publish_message(MESSAGE_UPDATED, out)

    return SeenResponse(message=out, already_seen=already_seen)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get(
    "/conversations",
    response_model=ConversationsListResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
)
async def list_conversations(
    limit: Annotated[int, Query(ge=1, description="Page size; capped at MAX_PAGE_SIZE")] = settings.DEFAULT_PAGE_SIZE,
    skip: Annotated[int, Query(ge=0)] = 0,
    search: Annotated[Optional[str], Query(description="Search users by name or email instead")] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    """
    Conversations of the caller, most recently active first.

    With search, returns up to 10 candidate users (the caller excluded)
    under "users" instead.
    """
    if search:
        users = search_users(db, search, exclude_id=user.id, limit=10)
        return ConversationsListResponse(users=[user_to_out(u) for u in users])

    conversations, has_more = registry.list_conversations_for_user(
        db, user.id, limit=limit, offset=skip, max_page_size=settings.MAX_PAGE_SIZE
    )
    return ConversationsListResponse(
        conversations=[conversation_to_out(db, c, user.id) for c in conversations],
        pagination=Pagination(limit=min(limit, settings.MAX_PAGE_SIZE), skip=skip, has_more=has_more),
    )


@app.post(
    "/conversations",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_conversation(
    payload: CreateConversationRequest,
    request: Request,
    response: Response,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """Get or create the conversation with recipientId (idempotent per pair)."""
    if payload.recipient_id == user.id:
        raise ValidationError("Cannot create conversation with yourself")
    if get_user(db, payload.recipient_id) is None:
        raise ValidationError("Recipient not found")

    conversation, created = registry.get_or_create_conversation(db, user.id, payload.recipient_id)
    if not created:
        response.status_code = status.HTTP_200_OK

    log_chat_data(request, conversation_id=conversation.id, result="created" if created else "existing")
    return ConversationResponse(conversation=conversation_to_out(db, conversation, user.id), is_new=created)


@app.get(
    "/conversations/{conversation_id}",
    response_model=ConversationResponse,
    response_model_exclude_none=True,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Unknown conversation"}},
)
async def get_conversation(
    conversation_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationResponse:
    conversation = registry.get_conversation_for_user(db, conversation_id, user.id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return ConversationResponse(conversation=conversation_to_out(db, conversation, user.id))


@app.post(
    "/conversations/{conversation_id}/seen",
    response_model=BatchUpdateResponse,
    responses=ERROR_RESPONSES,
)
async def mark_conversation_seen(
    conversation_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_event_hub),
) -> BatchUpdateResponse:
    """Mark every message addressed to the caller in the conversation as seen."""
    if not registry.is_participant(db, conversation_id, user.id):
        raise AuthorizationError("You are not a participant in this conversation")

    updated = message_store.mark_seen_returning(db, conversation_id, user.id)
    record_messages_seen(len(updated))
    for message in updated:
        hub.publish_message(MESSAGE_UPDATED, message_to_out(message))

    log_chat_data(request, conversation_id=conversation_id, result="seen")
    return BatchUpdateResponse(updated=len(updated))


@app.post(
    "/conversations/{conversation_id}/delivered",
    response_model=BatchUpdateResponse,
    responses=ERROR_RESPONSES,
)
async def mark_conversation_delivered(
    conversation_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_event_hub),
) -> BatchUpdateResponse:
    """Move messages addressed to the caller from sent to delivered."""
    if not registry.is_participant(db, conversation_id, user.id):
        raise AuthorizationError("You are not a participant in this conversation")

    updated = message_store.mark_delivered_returning(db, conversation_id, user.id)
    for message in updated:
        hub.publish_message(MESSAGE_UPDATED, message_to_out(message))

    log_chat_data(request, conversation_id=conversation_id, result="delivered")
    return BatchUpdateResponse(updated=len(updated))


# =============================================================================
# Realtime Routes
# =============================================================================

def _websocket_caller(websocket: WebSocket) -> Optional[str]:
    return websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")


def _is_ping(text: str) -> bool:
    if text.strip() == "ping":
        return True
    try:
        frame = json.loads(text)
    except ValueError:
        return False
    return isinstance(frame, dict) and frame.get("type") == "ping"


async def _stream_topic(websocket: WebSocket, topic: str) -> None:
    """
    Forward hub events for one topic until the client disconnects.

    A reader task watches the socket so a disconnect is noticed even while
    no events flow; client pings are answered through the same queue.
    """
    hub: EventHub = websocket.app.state.event_hub
    await websocket.accept()

    async with hub.subscribe(topic) as queue:
        await websocket.send_json(RealtimeEnvelope(type="connected", data={"topic": topic}).model_dump())

        async def read_frames() -> None:
            try:
                while True:
                    text = await websocket.receive_text()
                    if not _is_ping(text):
                        continue
                    try:
                        queue.put_nowait(RealtimeEnvelope(type="pong").model_dump())
                    except asyncio.QueueFull:
                        logger.warning(f"Realtime queue full, dropping pong for topic={topic}")
            except WebSocketDisconnect:
                return

        reader = asyncio.create_task(read_frames())
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({getter, reader}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                await websocket.send_json(getter.result())
        except WebSocketDisconnect:
            logger.info(f"Realtime client disconnected: topic={topic}")
        finally:
            reader.cancel()


@app.websocket("/ws/conversations/{conversation_id}")
async def conversation_events(websocket: WebSocket, conversation_id: int) -> None:
    """Push channel scoped to one conversation."""
    caller = _websocket_caller(websocket)
    if not caller:
        await websocket.close(code=4401)
        return
    with SessionLocal() as db:
        allowed = registry.is_participant(db, conversation_id, caller)
    if not allowed:
        logger.warning(f"Realtime subscription refused: conversation={conversation_id}, user={caller}")
        await websocket.close(code=4403)
        return
    await _stream_topic(websocket, conversation_topic(conversation_id))


@app.websocket("/ws/users/me")
async def user_events(websocket: WebSocket) -> None:
    """Push channel scoped to everything addressed to or sent by the caller."""
    caller = _websocket_caller(websocket)
    with SessionLocal() as db:
        known = caller is not None and get_user(db, caller) is not None
    if not known:
        await websocket.close(code=4401)
        return
    await _stream_topic(websocket, user_topic(caller))


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total / request_latency_seconds
    - messages_created_total, messages_seen_total
    - conversations_resolved_total, realtime_subscribers
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
