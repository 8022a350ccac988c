"""Process-lifetime wiring: store, limiter, actor registry, summary queue.

The server builds one ``ChatRuntime`` during startup and keeps it on
``app.state.runtime``; request handlers reach it through the
``get_runtime`` dependency. RQ workers build their own pipeline through
``get_worker_pipeline``.
"""

from __future__ import annotations

import functools
import logging
import threading

import redis as redis_lib
from rq import Queue
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import SchemaBootstrap
from services.actor import ActorRegistry, ActorStateMirror, ConversationActor
from services.errors import StorageError
from services.llm import InferenceBackend, create_chat_model_from_settings
from services.rate_limit import RateLimiter
from services.summary_queue import SummaryQueue
from services.transcript import TranscriptStore

logger = logging.getLogger(__name__)


def _redis(settings) -> redis_lib.Redis:
    return redis_lib.from_url(settings.REDIS_URL, decode_responses=True)


def build_summary_queue(settings, connection: redis_lib.Redis | None = None) -> SummaryQueue:
    conn = connection if connection is not None else redis_lib.from_url(settings.REDIS_URL)
    queue = Queue(settings.SUMMARY_QUEUE_NAME, connection=conn)
    return SummaryQueue(queue, max_pending=settings.SUMMARY_QUEUE_MAX_PENDING)


class ChatRuntime:
    """Everything a request needs, created once per process."""

    def __init__(
        self,
        settings,
        *,
        bind: Engine,
        session_factory: sessionmaker,
        redis_client: redis_lib.Redis,
        summary_queue,
        chat_llm: InferenceBackend | None = None,
        transcriber=None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.redis = redis_client
        self.schema = SchemaBootstrap(bind)
        self.store = TranscriptStore(session_factory)
        self.rate_limiter = RateLimiter(
            redis_client, min_ttl_seconds=settings.RATE_LIMIT_MIN_TTL_SECONDS,
        )
        self.summary_queue = summary_queue
        self.mirror = ActorStateMirror(redis_client, settings.ACTOR_STATE_TTL_SECONDS)
        self._chat_llm = chat_llm
        self._transcriber = transcriber
        self._lazy_lock = threading.Lock()
        self.registry = ActorRegistry(self._new_actor, max_size=settings.ACTOR_REGISTRY_MAX_SIZE)

    @property
    def chat_llm(self) -> InferenceBackend:
        with self._lazy_lock:
            if self._chat_llm is None:
                self._chat_llm = InferenceBackend(
                    create_chat_model_from_settings(self.settings, self.settings.CHAT_MODEL), name="chat",
                )
            return self._chat_llm

    @property
    def transcriber(self):
        with self._lazy_lock:
            if self._transcriber is None:
                from services.transcription import create_transcriber
                self._transcriber = create_transcriber(self.settings)
            return self._transcriber

    def _new_actor(self, conversation_id: str) -> ConversationActor:
        return ConversationActor(
            conversation_id,
            store=self.store,
            llm=self.chat_llm,
            trigger=self.summary_queue,
            mirror=self.mirror,
            history_limit=self.settings.HISTORY_TURN_LIMIT,
            summary_max_messages=self.settings.SUMMARY_MAX_MESSAGES,
        )

    def ensure_schema(self) -> None:
        try:
            self.schema.ensure()
        except SQLAlchemyError as exc:
            raise StorageError(f"Schema bootstrap failed: {exc}") from exc


def build_runtime(settings) -> ChatRuntime:
    from database import SessionLocal, engine

    return ChatRuntime(
        settings,
        bind=engine,
        session_factory=SessionLocal,
        redis_client=_redis(settings),
        summary_queue=build_summary_queue(settings),
    )


@functools.lru_cache(maxsize=1)
def get_worker_pipeline():
    """Pipeline instance for RQ worker processes."""
    from config import settings
    from database import SessionLocal, engine
    from services.actor_client import ActorStateClient
    from services.summarization import SummarizationPipeline

    SchemaBootstrap(engine).ensure()
    summary_queue = build_summary_queue(settings)
    return SummarizationPipeline(
        TranscriptStore(SessionLocal),
        InferenceBackend(create_chat_model_from_settings(settings, settings.SUMMARY_MODEL), name="summary"),
        ActorStateClient(settings.PLATFORM_BASE_URL, timeout=settings.ACTOR_RPC_TIMEOUT),
        SessionLocal,
        schedule_retry=summary_queue.enqueue_retry,
        max_step_retries=settings.SUMMARY_MAX_STEP_RETRIES,
    )
