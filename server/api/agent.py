"""Internal actor RPC endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api._helpers import get_runtime
from schemas.chat import AgentMessageIn, AgentStateIn, ChatReplyOut
from services.runtime import ChatRuntime

router = APIRouter()


@router.post("/message", response_model=ChatReplyOut)
def agent_message_view(payload: AgentMessageIn, runtime: ChatRuntime = Depends(get_runtime)):
    actor = runtime.registry.get(payload.conversation_id)
    return actor.handle_message(payload.conversation_id, payload.message, payload.metadata or {})


@router.post("/state")
def agent_state_view(payload: AgentStateIn, runtime: ChatRuntime = Depends(get_runtime)):
    actor = runtime.registry.get(payload.conversation_id)
    actor.apply_external_state_update({
        "summary": payload.summary,
        "pinned_facts": payload.pinned_facts,
        "last_updated": payload.last_updated,
    })
    return {"ok": True}
