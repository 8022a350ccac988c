"""Root conftest: shared fixtures for all server tests."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock

# Ensure server/ is on sys.path
_server_dir = str(Path(__file__).resolve().parent)
if _server_dir not in sys.path:
    sys.path.insert(0, _server_dir)

import fakeredis
import pytest
from langchain_core.language_models import FakeListChatModel
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401  register all models with Base

# In-memory SQLite; StaticPool ensures all connections share the same DB
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(bind=TEST_ENGINE, autoflush=False, expire_on_commit=False)


@pytest.fixture(autouse=True)
def _setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db():
    """Yield a test database session."""
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory():
    return TestSession


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store():
    from services.transcript import TranscriptStore
    return TranscriptStore(TestSession)


@pytest.fixture
def chat_llm():
    """Inference backend over a scripted LangChain fake model."""
    from services.llm import InferenceBackend
    return InferenceBackend(FakeListChatModel(responses=["Hi there!", "Sure thing."]), name="chat")


@pytest.fixture
def summary_queue():
    queue = MagicMock()
    queue.enqueue.return_value = None
    return queue


@pytest.fixture
def transcriber():
    t = MagicMock()
    t.transcribe.return_value = "transcribed hello"
    return t


@pytest.fixture
def chat_settings():
    from config import settings
    return settings.model_copy(update={
        "RATE_LIMIT_REQUESTS": 30,
        "RATE_LIMIT_WINDOW_MS": 60_000,
        "RATE_LIMIT_FAIL_OPEN": False,
    })


@pytest.fixture
def runtime(chat_settings, fake_redis, summary_queue, chat_llm, transcriber):
    from services.runtime import ChatRuntime

    return ChatRuntime(
        chat_settings,
        bind=TEST_ENGINE,
        session_factory=TestSession,
        redis_client=fake_redis,
        summary_queue=summary_queue,
        chat_llm=chat_llm,
        transcriber=transcriber,
    )


@pytest.fixture
def app(runtime):
    from main import app as _app

    _app.state.runtime = runtime
    yield _app
    _app.state.runtime = None


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    return TestClient(app)
