"""SQLAlchemy engine, session, declarative base, and schema bootstrap."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config import settings

logger = logging.getLogger(__name__)


engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in settings.DATABASE_URL else {},
    echo=False,
)

# Enable WAL mode and foreign keys for SQLite
if "sqlite" in settings.DATABASE_URL:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


class SchemaBootstrap:
    """Run-once schema creation shared by every caller in the process.

    The first caller issues the DDL; callers arriving while it runs block on
    the same pending future. A failed attempt clears the pending future so
    the next call retries from scratch.
    """

    def __init__(self, bind: Engine):
        self._bind = bind
        self._lock = threading.Lock()
        self._pending: Future | None = None

    @property
    def ready(self) -> bool:
        pending = self._pending
        return pending is not None and pending.done() and pending.exception() is None

    def ensure(self) -> None:
        with self._lock:
            pending = self._pending
            owner = pending is None
            if owner:
                pending = Future()
                self._pending = pending

        if not owner:
            pending.result()
            return

        try:
            import models  # noqa: F401  register all models with Base

            Base.metadata.create_all(bind=self._bind)
        except Exception as exc:
            logger.exception("Schema bootstrap failed")
            with self._lock:
                self._pending = None
            pending.set_exception(exc)
            raise
        logger.info("Schema ready")
        pending.set_result(None)
