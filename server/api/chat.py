"""Public chat and history endpoints."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request

from api._helpers import enforce_rate_limit, get_runtime, require_json, resolve_rate_limit_identity
from schemas.chat import ChatReplyOut, ChatRequestIn, HistoryOut
from services.actor import iso_from_ms
from services.errors import ValidationFailure
from services.runtime import ChatRuntime
from services.transcription import DEFAULT_AUDIO_MIME_TYPE, decode_base64

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/chat", response_model=ChatReplyOut, dependencies=[Depends(require_json)])
def chat_view(
    payload: ChatRequestIn,
    request: Request,
    runtime: ChatRuntime = Depends(get_runtime),
):
    identity = resolve_rate_limit_identity(payload.conversation_id, request)
    enforce_rate_limit(runtime, identity)

    message = payload.message
    if not message and payload.voice:
        audio = decode_base64(payload.voice)
        message = runtime.transcriber.transcribe(audio, payload.voice_mime_type or DEFAULT_AUDIO_MIME_TYPE)

    if not message:
        raise ValidationFailure("No valid message content was provided")

    conversation_id = payload.conversation_id or str(uuid.uuid4())
    actor = runtime.registry.get(conversation_id)
    return actor.handle_message(conversation_id, message, payload.metadata or {})


@router.get("/history", response_model=HistoryOut)
def history_view(
    conversation_id: str | None = Query(default=None, alias="conversationId"),
    runtime: ChatRuntime = Depends(get_runtime),
):
    if not conversation_id:
        raise ValidationFailure("conversationId query parameter is required")
    try:
        conversation_id = str(uuid.UUID(conversation_id))
    except ValueError:
        raise ValidationFailure("conversationId must be a valid UUID")

    summary = runtime.store.get_summary(conversation_id)
    messages = runtime.store.recent_messages(conversation_id, runtime.settings.HISTORY_PAGE_LIMIT)
    return {
        "conversationId": conversation_id,
        "summary": summary["summary"] if summary else None,
        "lastUpdated": iso_from_ms(summary["updatedAt"]) if summary else None,
        "messages": messages,
    }
