"""Centralised logging configuration for the server and RQ workers.

Usage:
    from logging_config import setup_logging, conversation_id_var, run_id_var, step_var

    # At process startup:
    setup_logging("Server")        # or "Worker-{pid}"

    # Inside actors and pipeline steps:
    conversation_id_var.set("6f1c...")
    run_id_var.set("6f1c...-1718000000000")
    step_var.set("summarize")

Plain ``logging.getLogger(__name__).info(...)`` calls pick up the current
conversation/run/step through the ContextFilter.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextvars import ContextVar
from pathlib import Path

# ── Context variables ──────────────────────────────────────────────────────

conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")
run_id_var: ContextVar[str] = ContextVar("run_id_var", default="")
step_var: ContextVar[str] = ContextVar("step_var", default="")

HTTP_CLIENT_LOGGERS = ("httpx", "httpcore")


# ── Filter: stamps context onto every LogRecord ────────────────────────────

class ContextFilter(logging.Filter):
    """Injects ``role``, ``conversation_id``, ``run_id`` and ``step`` onto each record."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        record.conversation_id = conversation_id_var.get("")  # type: ignore[attr-defined]
        record.run_id = run_id_var.get("")  # type: ignore[attr-defined]
        record.step = step_var.get("")  # type: ignore[attr-defined]
        return True


# ── Formatter: builds [Role][Conv][Run][Step][LEVEL] prefix ────────────

class ContextFormatter(logging.Formatter):
    """Produces lines like:

    2026-02-17 14:30:00 [Server][Conv 6f1c2a9b][INFO] services.actor:201 - Handled turn ...
    2026-02-17 14:30:05 [Worker-9821][Conv 6f1c2a9b][Run 00000000][Step summarize][INFO] services.summarization:88 - ...
    """

    def format(self, record: logging.LogRecord) -> str:
        role = getattr(record, "role", "")
        conversation_id = getattr(record, "conversation_id", "")
        run_id = getattr(record, "run_id", "")
        step = getattr(record, "step", "")

        parts = [f"[{role}]"] if role else []
        if conversation_id:
            parts.append(f"[Conv {conversation_id[:8]}]")
        if run_id:
            # Trigger timestamp suffix; the conversation prefix is already shown
            parts.append(f"[Run {run_id[-8:]}]")
        if step:
            parts.append(f"[Step {step}]")
        parts.append(f"[{record.levelname}]")

        prefix = "".join(parts)
        timestamp = self.formatTime(record, self.datefmt)
        location = f"{record.name}:{record.lineno}"
        message = record.getMessage()

        formatted = f"{timestamp} {prefix} {location} - {message}"
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            formatted += "\n" + record.exc_text
        if record.stack_info:
            formatted += "\n" + record.stack_info
        return formatted


# ── Setup function ─────────────────────────────────────────────────────────

def setup_logging(role: str) -> None:
    """Attach the context-aware handlers to the root logger for *role*.

    Server processes also route uvicorn output through root. Repeat calls
    are no-ops.
    """
    from config import settings

    root = logging.getLogger()

    if any(getattr(h, "name", None) == "_convo_stream" for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    ctx_filter = ContextFilter(role)
    formatter = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.name = "_convo_stream"
    stream_handler.addFilter(ctx_filter)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.name = "_convo_file"
        file_handler.addFilter(ctx_filter)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Actor state pushes log one INFO line per request otherwise
    for name in HTTP_CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if "server" in role.lower():
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            uv_logger = logging.getLogger(name)
            uv_logger.handlers.clear()
            uv_logger.propagate = True
