"""TranscriptStore: durable conversations, messages, and summaries."""

from __future__ import annotations

import functools
import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from models.conversation import Conversation, ConversationMessage, ConversationSummary
from services.errors import StorageError

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")


def _storage_op(fn):
    """Surface any SQLAlchemy failure as a StorageError."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("Transcript store operation %s failed", fn.__name__)
            raise StorageError(f"{fn.__name__} failed: {exc}") from exc

    return wrapper


def _insert_for(db: Session):
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class TranscriptStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @_storage_op
    def ensure_conversation(self, conversation_id: str, created_at: int) -> None:
        with self._session_factory() as db:
            insert = _insert_for(db)
            stmt = (
                insert(Conversation)
                .values(id=conversation_id, created_at=created_at)
                .on_conflict_do_nothing(index_elements=["id"])
            )
            db.execute(stmt)
            db.commit()

    @_storage_op
    def append(self, conversation_id: str, role: str, content: str, created_at: int) -> dict:
        if role not in ROLES:
            raise ValueError(f"Unsupported role: {role}")
        with self._session_factory() as db:
            message = ConversationMessage(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=created_at,
            )
            db.add(message)
            db.commit()
            return message.to_dict()

    @_storage_op
    def recent_messages(self, conversation_id: str, limit: int) -> list[dict]:
        """Return up to *limit* most recent messages, oldest first."""
        with self._session_factory() as db:
            rows = db.scalars(
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
                .order_by(ConversationMessage.created_at.desc())
                .limit(limit)
            ).all()
        return [row.to_dict() for row in reversed(rows)]

    @_storage_op
    def count_messages(self, conversation_id: str) -> int:
        with self._session_factory() as db:
            return db.scalar(
                select(func.count())
                .select_from(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
            ) or 0

    @_storage_op
    def get_summary(self, conversation_id: str) -> dict | None:
        with self._session_factory() as db:
            row = db.get(ConversationSummary, conversation_id)
            if row is None:
                return None
            return {
                "conversationId": row.conversation_id,
                "summary": row.summary,
                "updatedAt": row.updated_at,
            }

    @_storage_op
    def upsert_summary(self, conversation_id: str, summary: str, updated_at: int) -> None:
        with self._session_factory() as db:
            insert = _insert_for(db)
            stmt = insert(ConversationSummary).values(
                conversation_id=conversation_id, summary=summary, updated_at=updated_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["conversation_id"],
                set_={"summary": stmt.excluded.summary, "updated_at": stmt.excluded.updated_at},
            )
            db.execute(stmt)
            db.commit()
