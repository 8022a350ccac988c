"""Pydantic settings loaded from .env, with conf.json overlay."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent

# ---------------------------------------------------------------------------
# conf.json: runtime config (separate from .env secrets)
# ---------------------------------------------------------------------------


def get_data_dir() -> Path:
    """Resolve the service data directory. CHAT_DATA_DIR env var or ~/.config/convo-orchestrator."""
    d = os.environ.get("CHAT_DATA_DIR", "")
    return Path(d).expanduser() if d else Path.home() / ".config" / "convo-orchestrator"


class RuntimeConfig(BaseModel):
    database_url: str = ""
    redis_url: str = ""
    log_level: str = ""
    log_file: str = ""
    platform_base_url: str = ""
    cors_allow_all_origins: bool | None = None  # None = use Settings default
    rate_limit_fail_open: bool | None = None
    llm_provider: str = ""
    chat_model: str = ""
    summary_model: str = ""


_logger = logging.getLogger(__name__)


def load_conf() -> RuntimeConfig:
    """Load conf.json from the data directory."""
    conf_path = get_data_dir() / "conf.json"
    if conf_path.exists():
        try:
            return RuntimeConfig.model_validate_json(conf_path.read_text())
        except Exception:
            _logger.warning("Failed to parse %s, using defaults", conf_path, exc_info=True)
    return RuntimeConfig()


# ---------------------------------------------------------------------------
# Bootstrap: load .env, load conf.json
# ---------------------------------------------------------------------------

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)
_conf = load_conf()

# ---------------------------------------------------------------------------
# Settings (pydantic-settings): .env / env vars override conf.json defaults
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    DEBUG: bool = False

    DATABASE_URL: str = _conf.database_url or f"sqlite:///{BASE_DIR / 'conversations.sqlite3'}"
    REDIS_URL: str = _conf.redis_url or "redis://localhost:6379/0"

    CORS_ALLOW_ALL_ORIGINS: bool = (
        _conf.cors_allow_all_origins if _conf.cors_allow_all_origins is not None else True
    )

    LOG_LEVEL: str = _conf.log_level or "INFO"
    LOG_FILE: str = _conf.log_file or ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    # Base URL the summarization worker uses to reach the actor RPC endpoints
    PLATFORM_BASE_URL: str = _conf.platform_base_url or "http://localhost:8000"
    ACTOR_RPC_TIMEOUT: float = 10.0
    ACTOR_STATE_TTL_SECONDS: int = 30 * 24 * 3600
    ACTOR_REGISTRY_MAX_SIZE: int = 10_000

    # Inference
    LLM_PROVIDER: str = _conf.llm_provider or "openai"  # openai | anthropic | openai_compatible
    LLM_API_KEY: str = ""
    LLM_BASE_URL: str = ""
    CHAT_MODEL: str = _conf.chat_model or "gpt-4o-mini"
    SUMMARY_MODEL: str = _conf.summary_model or "gpt-4o-mini"
    LLM_TEMPERATURE: float | None = None
    LLM_TIMEOUT: int | None = 60
    LLM_MAX_RETRIES: int | None = 2
    TRANSCRIPTION_MODEL: str = "whisper-1"

    # Conversation turn
    MAX_MESSAGE_LENGTH: int = 2000
    HISTORY_TURN_LIMIT: int = 15
    HISTORY_PAGE_LIMIT: int = 50

    # Summarization pipeline
    SUMMARY_MAX_MESSAGES: int = 25
    SUMMARY_QUEUE_NAME: str = "summaries"
    SUMMARY_QUEUE_MAX_PENDING: int = 1000
    SUMMARY_MAX_STEP_RETRIES: int = 3
    SUMMARY_STALE_RUN_SECONDS: int = 900

    # Rate limiting
    RATE_LIMIT_REQUESTS: int = 30
    RATE_LIMIT_WINDOW_MS: int = 60_000
    RATE_LIMIT_MIN_TTL_SECONDS: int = 60
    RATE_LIMIT_FAIL_OPEN: bool = (
        _conf.rate_limit_fail_open if _conf.rate_limit_fail_open is not None else False
    )

    model_config = ConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
