"""Voice input: MIME normalization, base64 decoding, speech-to-text."""

from __future__ import annotations

import base64
import binascii
import logging

from services.errors import TranscriptionError, UnsupportedAudioType, ValidationFailure

logger = logging.getLogger(__name__)

AUDIO_MIME_TYPES = ("audio/mpeg", "audio/wav", "audio/webm", "audio/ogg")
DEFAULT_AUDIO_MIME_TYPE = "audio/mpeg"

_MIME_ALIASES = {
    "audio/mp3": "audio/mpeg",
    "audio/x-wav": "audio/wav",
}

_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
}


def normalize_audio_mime_type(value: str | None) -> str:
    """Map *value* onto one of AUDIO_MIME_TYPES, dropping any parameters."""
    base = (value or "").split(";")[0].strip().lower()
    if not base:
        return DEFAULT_AUDIO_MIME_TYPE
    if base in AUDIO_MIME_TYPES:
        return base
    if base in _MIME_ALIASES:
        return _MIME_ALIASES[base]
    raise UnsupportedAudioType(
        f"Unsupported audio MIME type: {value}",
        details=f"voiceMimeType must be one of: {', '.join(AUDIO_MIME_TYPES)}",
    )


def decode_base64(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationFailure("Voice input must be base64 encoded audio") from exc


class Transcriber:
    """Speech-to-text through the OpenAI audio transcription endpoint."""

    def __init__(self, client, model: str):
        self._client = client
        self._model = model

    def transcribe(self, audio: bytes, mime_type: str) -> str:
        canonical = normalize_audio_mime_type(mime_type)
        filename = f"voice.{_EXTENSIONS[canonical]}"
        try:
            result = self._client.audio.transcriptions.create(
                model=self._model,
                file=(filename, audio, canonical),
            )
        except Exception as exc:
            logger.warning("Transcription request failed: %s", exc)
            raise TranscriptionError(f"Transcription request failed: {exc}") from exc

        text = (getattr(result, "text", None) or "").strip()
        if not text:
            raise TranscriptionError("Unable to transcribe audio input")
        return text


def create_transcriber(settings) -> Transcriber:
    from openai import OpenAI

    kwargs: dict = {"api_key": settings.LLM_API_KEY or None}
    if settings.LLM_BASE_URL:
        kwargs["base_url"] = settings.LLM_BASE_URL
    return Transcriber(OpenAI(**kwargs), settings.TRANSCRIPTION_MODEL)
