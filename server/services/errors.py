"""Error taxonomy shared by the turn path, the gateway, and the pipeline.

Each error carries the HTTP status the gateway renders it with; handlers in
``main.py`` turn them into ``{"error": ..., "details": ...}`` bodies.
"""

from __future__ import annotations


class ChatServiceError(Exception):
    status_code = 500
    public_message = "Unable to process chat request"

    def __init__(self, message: str = "", *, details=None):
        super().__init__(message or self.public_message)
        self.details = details if details is not None else (message or None)


class ValidationFailure(ChatServiceError):
    status_code = 400
    public_message = "Invalid request"


class UnsupportedMediaType(ValidationFailure):
    status_code = 415
    public_message = "Content-Type must be application/json"


class RateLimitExceeded(ChatServiceError):
    status_code = 429
    public_message = "Rate limit exceeded. Please slow down."

    def __init__(self, retry_after_ms: int):
        super().__init__(self.public_message, details=None)
        self.retry_after_ms = retry_after_ms


class RateLimitStoreError(ChatServiceError):
    status_code = 503
    public_message = "Rate limiter unavailable"


class InferenceError(ChatServiceError):
    status_code = 502
    public_message = "The AI model did not return a response"


class TranscriptionError(ChatServiceError):
    status_code = 502
    public_message = "Unable to transcribe audio input"


class UnsupportedAudioType(ValidationFailure):
    public_message = "Unsupported audio MIME type"


class StorageError(ChatServiceError):
    status_code = 500
    public_message = "Conversation storage failure"


class PipelineStepError(ChatServiceError):
    """Raised inside the summarization pipeline; never reaches an HTTP caller."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step
