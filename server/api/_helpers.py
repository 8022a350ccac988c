"""Shared helpers for API routers."""

from __future__ import annotations

import logging
import uuid

from fastapi import Request

from services.errors import RateLimitExceeded, RateLimitStoreError, UnsupportedMediaType
from services.rate_limit import rate_key
from services.runtime import ChatRuntime

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> ChatRuntime:
    """FastAPI dependency: the process runtime, with the schema bootstrapped."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        from config import settings
        from services.runtime import build_runtime

        runtime = build_runtime(settings)
        request.app.state.runtime = runtime
    runtime.ensure_schema()
    return runtime


def require_json(request: Request) -> None:
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type:
        raise UnsupportedMediaType()


def client_identity(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return None


def resolve_rate_limit_identity(conversation_id: str | None, request: Request) -> str:
    """Conversation id, then caller address, then a throwaway key."""
    return conversation_id or client_identity(request) or str(uuid.uuid4())


def enforce_rate_limit(runtime: ChatRuntime, identity: str) -> None:
    settings = runtime.settings
    key = rate_key(identity)
    try:
        allowed = runtime.rate_limiter.allow(key, settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_MS)
    except RateLimitStoreError:
        if settings.RATE_LIMIT_FAIL_OPEN:
            logger.warning("Rate limiter unavailable, allowing request for %s (fail-open)", key, exc_info=True)
            return
        logger.error("Rate limiter unavailable, rejecting request for %s (fail-closed)", key)
        raise
    if not allowed:
        raise RateLimitExceeded(
            retry_after_ms=runtime.rate_limiter.retry_after_ms(key, settings.RATE_LIMIT_WINDOW_MS),
        )
