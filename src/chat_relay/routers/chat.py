"""
Authenticated streaming chat router.

Implements POST /api/chat:
    1. Verifies the Supabase bearer token
    2. Validates the ``{id, messages}`` body
    3. Persists the latest user turn (blocking - failure aborts before
       any completion call is made)
    4. Streams the completion back as Server-Sent Events
    5. Persists the assistant turn from the completion callback
       (non-blocking - failure is only logged)

Request Schema:
{
    "id": "chat-123",                       # Required, chat session id
    "messages": [                            # Required, oldest first
        {"role": "system", "content": "..."},
        {"role": "user", "content": "...", "id": "optional"}
    ]
}

Also implements GET /api/chat/history for session rehydration.

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
import uuid as uuid_module
from typing import Any, List, Tuple

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, TypeAdapter, ValidationError
from starlette.background import BackgroundTask

from chat_relay.dependencies import get_completion_relay, get_current_user, get_message_store
from chat_relay.models import ChatMessage, CompletionResult, HistoryEntry
from chat_relay.services.auth import AuthenticatedUser
from chat_relay.services.completion_relay import SSE_HEADERS, CompletionRelay, FinishCallback
from chat_relay.services.errors import InvalidRequest, PersistenceFailure
from chat_relay.services.message_store import MessageStore

logger = structlog.get_logger(__name__)

router = APIRouter()

MISSING_CHAT_ID = "Missing chat ID"
INVALID_MESSAGES = "Invalid or missing messages array"
INVALID_JSON = "Invalid JSON body"
USER_PERSIST_FAILED = "Failed to save user message"

_messages_adapter = TypeAdapter(List[ChatMessage])


class HistoryResponse(BaseModel):
    """Stored turns of the authenticated user, oldest first."""
    messages: List[HistoryEntry]


# ============================================================================
# Request Validation
# ============================================================================

def parse_chat_request(payload: Any) -> Tuple[str, List[ChatMessage]]:
    """
    Validate a decoded ``POST /api/chat`` body.

    Args:
        payload: Decoded JSON body

    Returns:
        Tuple of (chat id, validated messages)

    Raises:
        InvalidRequest: "Missing chat ID" or "Invalid or missing messages array"
    """
    if not isinstance(payload, dict):
        payload = {}

    chat_id = payload.get("id")
    if not isinstance(chat_id, str) or not chat_id.strip():
        raise InvalidRequest(MISSING_CHAT_ID)

    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise InvalidRequest(INVALID_MESSAGES)

    try:
        messages = _messages_adapter.validate_python(raw_messages)
    except ValidationError as e:
        logger.info("chat.request.invalid_messages", errors=e.error_count())
        raise InvalidRequest(INVALID_MESSAGES) from e

    return chat_id, messages


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise InvalidRequest(INVALID_JSON) from e


def _assistant_persister(store: MessageStore, chat_id: str, user_id: str) -> FinishCallback:
    """Build the completion callback that stores the assistant turn."""

    async def on_finish(result: CompletionResult) -> None:
        try:
            await store.append_message(chat_id, user_id, "assistant", result.text)
        except PersistenceFailure:
            # The client already has its answer
            logger.warning("chat.assistant_persist_failed", chat_id=chat_id)

        logger.info(
            "chat.completion.finished",
            chat_id=chat_id,
            usage=result.usage.model_dump(),
            finish_reason=result.finish_reason,
            completion_chars=len(result.text),
        )

    return on_finish


# ============================================================================
# API Endpoints
# ============================================================================

@router.post("/api/chat")
async def create_chat_turn(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
    relay: CompletionRelay = Depends(get_completion_relay),
):
    """
    Run one chat turn and stream the model's answer.

    Streaming SSE Protocol:
    - `data: {...}` - Provider chunks, passed through unmodified
    - `data: [DONE]` - Stream completion marker

    Args:
        request: Incoming request (JSON body read manually so that the
            error messages match the documented contract)
        user: Authenticated caller (injected)
        store: Chat history gateway (injected)
        relay: Completion relay (injected)

    Returns:
        StreamingResponse with text/event-stream media type

    Raises:
        InvalidRequest: 400 for a malformed body
        PersistenceFailure: 500 when the user turn cannot be stored
        UpstreamFailure: 500 when the completion call fails
    """
    payload = await _read_json(request)
    chat_id, messages = parse_chat_request(payload)

    structlog.contextvars.bind_contextvars(chat_id=chat_id, user_id=user.id)
    logger.debug("chat.request.validated", message_count=len(messages))

    last_message = messages[-1]
    if last_message.role == "user":
        try:
            await store.append_message(chat_id, user.id, "user", last_message.content)
        except PersistenceFailure as e:
            raise PersistenceFailure(USER_PERSIST_FAILED) from e

    completion_id = f"chatcmpl-{uuid_module.uuid4().hex[:24]}"
    stream = await relay.start(
        messages,
        on_finish=_assistant_persister(store, chat_id, user.id),
        completion_id=completion_id,
    )

    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(stream.wait_finished),
    )


@router.get("/api/chat/history", response_model=HistoryResponse)
async def get_chat_history(
    user: AuthenticatedUser = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
) -> HistoryResponse:
    """Return every stored turn of the caller, ordered by created_at."""
    messages = await store.fetch_history(user.id)
    return HistoryResponse(messages=[HistoryEntry.from_stored(m) for m in messages])
