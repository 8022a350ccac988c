"""Chat gateway and actor RPC schemas."""

from __future__ import annotations

import re
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config import settings
from services.errors import UnsupportedAudioType
from services.transcription import normalize_audio_mime_type

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")


def _check_uuid(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return str(uuid.UUID(value))
    except (ValueError, AttributeError, TypeError):
        raise ValueError("conversationId must be a valid UUID")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequestIn(_CamelModel):
    conversation_id: str | None = None
    message: str | None = None
    voice: str | None = None
    voice_mime_type: str | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("conversation_id")
    @classmethod
    def _valid_conversation_id(cls, v: str | None) -> str | None:
        return _check_uuid(v)

    @field_validator("message")
    @classmethod
    def _trim_message(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("Message cannot be empty")
        if len(v) > settings.MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message cannot be longer than {settings.MAX_MESSAGE_LENGTH} characters")
        return v

    @field_validator("voice")
    @classmethod
    def _base64_voice(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not _BASE64_RE.match(v):
            raise ValueError("Voice input must be base64 encoded audio")
        return v

    @field_validator("voice_mime_type")
    @classmethod
    def _known_mime_type(cls, v: str | None) -> str | None:
        if v is None:
            return None
        try:
            return normalize_audio_mime_type(v)
        except UnsupportedAudioType as exc:
            raise ValueError(exc.details) from exc

    @model_validator(mode="after")
    def _message_or_voice(self) -> "ChatRequestIn":
        if not self.message and not self.voice:
            raise ValueError("Provide either a text message or voice input")
        return self


class AgentMessageIn(_CamelModel):
    conversation_id: str
    message: str = Field(min_length=1)
    metadata: dict[str, Any] | None = None

    @field_validator("conversation_id")
    @classmethod
    def _valid_conversation_id(cls, v: str) -> str:
        return _check_uuid(v)


class AgentStateIn(_CamelModel):
    conversation_id: str
    summary: str | None = None
    pinned_facts: list[str] | None = None
    last_updated: str | None = None

    @field_validator("conversation_id")
    @classmethod
    def _valid_conversation_id(cls, v: str) -> str:
        return _check_uuid(v)


class ChatReplyMetadata(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    message_count: int
    received_at: str


class ChatReplyOut(_CamelModel):
    conversation_id: str
    reply: str
    summary: str | None = None
    metadata: ChatReplyMetadata


class HistoryMessageOut(_CamelModel):
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: int


class HistoryOut(_CamelModel):
    conversation_id: str
    summary: str | None = None
    last_updated: str | None = None
    messages: list[HistoryMessageOut] = []
