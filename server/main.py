"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

# Ensure server/ is on sys.path for absolute imports
_server_dir = str(Path(__file__).resolve().parent)
if _server_dir not in sys.path:  # pragma: no cover
    sys.path.insert(0, _server_dir)

try:
    __version__ = (Path(__file__).resolve().parent.parent / "VERSION").read_text().strip()
except Exception:  # pragma: no cover
    __version__ = "0.0.0-dev"

import redis as redis_lib
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api import actor_router, api_router
from config import settings
from database import SessionLocal
from services.errors import ChatServiceError, RateLimitExceeded

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure unified logging before anything else
    from logging_config import setup_logging
    setup_logging("Server")

    from services.runtime import build_runtime
    runtime = build_runtime(settings)
    app.state.runtime = runtime

    # Schema bootstrap failures are retried on the first request that needs the store
    try:
        runtime.ensure_schema()
    except Exception:
        logger.exception("Schema bootstrap failed on startup")

    # Resume summary runs left mid-pipeline by a crashed worker
    try:
        from services.pipeline_recovery import recover_stalled_runs
        recovered = recover_stalled_runs(
            session_factory=runtime.session_factory, summary_queue=runtime.summary_queue,
        )
        if recovered:
            logger.info("Resumed %d stalled summary runs", recovered)
    except Exception:
        logger.exception("Failed to recover stalled summary runs on startup")

    yield


app = FastAPI(title="Conversation Orchestrator API", version=__version__, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL_ORIGINS else [],
    allow_methods=["OPTIONS", "POST", "GET"],
    allow_headers=["Content-Type", "Authorization"],
)


# ── Error shaping ──────────────────────────────────────────────────────────


@app.exception_handler(RateLimitExceeded)
async def _rate_limited(request: Request, exc: RateLimitExceeded):
    retry_after_seconds = max(1, -(-exc.retry_after_ms // 1000))
    return JSONResponse(
        {"error": exc.public_message, "retryAfterMs": exc.retry_after_ms},
        status_code=exc.status_code,
        headers={"Retry-After": str(retry_after_seconds)},
    )


@app.exception_handler(ChatServiceError)
async def _service_error(request: Request, exc: ChatServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        {"error": exc.public_message, "details": exc.details},
        status_code=exc.status_code,
    )


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError):
    details = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse({"error": "Invalid request", "details": details}, status_code=400)


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        {"error": "Unable to process request", "details": str(exc)},
        status_code=500,
    )


# ── Routes ─────────────────────────────────────────────────────────────────

app.include_router(api_router)
app.include_router(actor_router)


@app.get("/health")
def health():
    redis_ok = False
    try:
        r = redis_lib.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            redis_ok = bool(r.ping())
        finally:
            r.close()
    except Exception:
        logger.warning("Health check: Redis unreachable", exc_info=True)

    db_ok = False
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.warning("Health check: database unreachable", exc_info=True)

    return {
        "status": "ok" if redis_ok and db_ok else "degraded",
        "redis": redis_ok,
        "database": db_ok,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG, log_config=None)
