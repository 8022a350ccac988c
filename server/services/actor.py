"""ConversationActor: one serialized handler per conversation id.

The registry hands out exactly one live actor per conversation id and drops
the least recently used idle actors once it holds more than its cap. Each
actor owns a lock; ``handle_message`` and
``apply_external_state_update`` both run under it, so turns for one
conversation never interleave while different conversations proceed in
parallel on the server's threadpool.

Actor state (summary, pinned facts, last update) is a cache of what the
summarization pipeline derived. It is mirrored to Redis so a restarted
process picks it back up; the transcript store stays authoritative for the
summary text.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import redis as redis_lib

from logging_config import conversation_id_var
from services.llm import InferenceBackend
from services.transcript import TranscriptStore

logger = logging.getLogger(__name__)

MAX_PINNED_FACTS = 5
NO_SUMMARY_MARKER = "No summary is available yet. Ask clarifying questions if required."
NO_FACTS_MARKER = "No pinned facts recorded yet."


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class SummaryTriggerProtocol(Protocol):
    def enqueue(self, conversation_id: str, trigger_ms: int, max_messages: int) -> str | None: ...


@dataclass
class ActorState:
    conversation_id: str
    summary: str | None = None
    pinned_facts: list[str] = field(default_factory=list)
    last_updated: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, conversation_id: str, data: dict[str, Any]) -> "ActorState":
        facts = data.get("pinned_facts")
        if not isinstance(facts, list):
            facts = []
        return cls(
            conversation_id=conversation_id,
            summary=data.get("summary"),
            pinned_facts=[str(f) for f in facts][:MAX_PINNED_FACTS],
            last_updated=data.get("last_updated"),
        )


class ActorStateMirror:
    """Redis copy of each actor's state, keyed ``actor:<id>:state``."""

    def __init__(self, r: redis_lib.Redis, ttl_seconds: int):
        self._redis = r
        self._ttl = ttl_seconds

    @staticmethod
    def _key(conversation_id: str) -> str:
        return f"actor:{conversation_id}:state"

    def load(self, conversation_id: str) -> ActorState:
        try:
            raw = self._redis.get(self._key(conversation_id))
        except redis_lib.RedisError:
            logger.warning("Could not load actor state for %s, starting empty", conversation_id, exc_info=True)
            return ActorState(conversation_id=conversation_id)
        if not raw:
            return ActorState(conversation_id=conversation_id)
        try:
            return ActorState.from_dict(conversation_id, json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("Discarding malformed actor state for %s", conversation_id)
            return ActorState(conversation_id=conversation_id)

    def save(self, state: ActorState) -> None:
        try:
            self._redis.set(self._key(state.conversation_id), json.dumps(state.to_dict()), ex=self._ttl)
        except redis_lib.RedisError:
            # In-memory copy stays current; only restart durability is lost
            logger.warning("Could not persist actor state for %s", state.conversation_id, exc_info=True)


def build_chat_messages(
    summary: str | None,
    pinned_facts: list[str],
    history: list[dict],
    user_message: str,
) -> list[dict]:
    """Assemble the grounding context for one turn."""
    system_prompt = "\n\n".join([
        "You are an empathetic AI assistant conversing with a human.",
        "Respond with clear, concise answers while acknowledging prior context.",
        f"Conversation summary so far:\n{summary}" if summary else NO_SUMMARY_MARKER,
        f"Important facts to retain:\n{chr(10).join(pinned_facts)}" if pinned_facts else NO_FACTS_MARKER,
        "Keep responses under 200 words unless explicitly asked for detail.",
        "Return markdown formatted answers when it improves readability.",
    ])
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    messages.append({"role": "user", "content": user_message})
    return messages


class ConversationActor:
    def __init__(
        self,
        conversation_id: str,
        *,
        store: TranscriptStore,
        llm: InferenceBackend,
        trigger: SummaryTriggerProtocol,
        mirror: ActorStateMirror,
        history_limit: int = 15,
        summary_max_messages: int = 25,
        clock: Callable[[], int] = now_ms,
    ):
        self.conversation_id = conversation_id
        self._store = store
        self._llm = llm
        self._trigger = trigger
        self._mirror = mirror
        self._history_limit = history_limit
        self._summary_max_messages = summary_max_messages
        self._clock = clock
        self._lock = threading.Lock()
        self._state = mirror.load(conversation_id)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def snapshot(self) -> ActorState:
        with self._lock:
            return ActorState.from_dict(self.conversation_id, self._state.to_dict())

    def handle_message(self, conversation_id: str, text: str, metadata: dict | None = None) -> dict:
        if conversation_id != self.conversation_id:
            raise ValueError(
                f"Actor for {self.conversation_id} cannot handle conversation {conversation_id}"
            )
        with self._lock:
            token = conversation_id_var.set(conversation_id)
            try:
                return self._handle(text, metadata or {})
            finally:
                conversation_id_var.reset(token)

    def _handle(self, text: str, metadata: dict) -> dict:
        cid = self.conversation_id
        received_at = self._clock()

        self._store.ensure_conversation(cid, received_at)
        summary_record = self._store.get_summary(cid)
        summary = summary_record["summary"] if summary_record else None
        history = self._store.recent_messages(cid, self._history_limit)

        reply = self._llm.complete(
            build_chat_messages(summary, self._state.pinned_facts, history, text)
        )

        # Strictly increasing timestamps keep creation order unambiguous
        last_ts = history[-1]["createdAt"] if history else 0
        user_ts = max(received_at, last_ts + 1)
        self._store.append(cid, "user", text, user_ts)
        assistant_ts = max(self._clock(), user_ts + 1)
        self._store.append(cid, "assistant", reply, assistant_ts)

        self._state.last_updated = iso_from_ms(self._clock())
        self._mirror.save(self._state)

        try:
            self._trigger.enqueue(cid, received_at, self._summary_max_messages)
        except Exception:
            logger.exception("Failed to schedule summarization for conversation %s", cid)

        logger.info("Handled turn for conversation %s (%d prior messages)", cid, len(history))
        return {
            "conversationId": cid,
            "reply": reply,
            "summary": summary,
            # Caller keys first: messageCount and receivedAt are always ours
            "metadata": {
                **metadata,
                "messageCount": len(history) + 2,
                "receivedAt": iso_from_ms(received_at),
            },
        }

    def apply_external_state_update(self, update: dict) -> ActorState:
        """Merge a partial state update; omitted fields keep their value."""
        with self._lock:
            current = self._state
            facts = update.get("pinned_facts")
            self._state = ActorState(
                conversation_id=self.conversation_id,
                summary=update["summary"] if update.get("summary") is not None else current.summary,
                pinned_facts=list(facts)[:MAX_PINNED_FACTS] if facts is not None else current.pinned_facts,
                last_updated=update.get("last_updated") or iso_from_ms(self._clock()),
            )
            self._mirror.save(self._state)
            logger.info(
                "Applied state update for conversation %s (%d pinned facts)",
                self.conversation_id, len(self._state.pinned_facts),
            )
            return ActorState.from_dict(self.conversation_id, self._state.to_dict())


class ActorRegistry:
    """Process-wide map of conversation id to its single live actor.

    Bounded LRU: past ``max_size`` entries the least recently used actors
    that are not mid-turn are dropped. State survives in the Redis mirror,
    so the next ``get`` rebuilds an equivalent actor. When every actor is
    busy the map may briefly exceed its cap.
    """

    def __init__(self, factory: Callable[[str], ConversationActor], max_size: int = 10_000):
        self._factory = factory
        self._max_size = max_size
        self._actors: OrderedDict[str, ConversationActor] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, conversation_id: str) -> ConversationActor:
        with self._lock:
            actor = self._actors.get(conversation_id)
            if actor is not None:
                self._actors.move_to_end(conversation_id)
                return actor

        # Built outside the lock: loading state is a Redis round trip
        created = self._factory(conversation_id)

        with self._lock:
            actor = self._actors.get(conversation_id)
            if actor is not None:
                self._actors.move_to_end(conversation_id)
                return actor
            self._actors[conversation_id] = created
            self._evict_idle()
            return created

    def _evict_idle(self) -> None:
        excess = len(self._actors) - self._max_size
        if excess <= 0:
            return
        for cid in list(self._actors)[:-1]:
            if excess == 0:
                break
            if self._actors[cid].busy:
                continue
            del self._actors[cid]
            excess -= 1
            logger.debug("Evicted idle actor for conversation %s", cid)

    def __contains__(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._actors

    def __len__(self) -> int:
        with self._lock:
            return len(self._actors)
