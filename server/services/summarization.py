"""Summarization pipeline: checkpointed, resumable, runs on RQ workers.

One run is identified by ``<conversation_id>-<trigger_ms>``. Each step
writes a ``SummaryRunStep`` row holding its output before the next step
starts; a re-delivered or retried run reads those checkpoints back and only
executes the steps that have not completed yet.

Overlapping runs for the same conversation are allowed. Both of their side
effects (summary upsert, actor state push) are last-writer-wins, so no
ordering between runs is required.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from logging_config import conversation_id_var, run_id_var, step_var
from models.summary_run import SummaryRun, SummaryRunStep
from services.actor import MAX_PINNED_FACTS, iso_from_ms, now_ms
from services.errors import PipelineStepError
from services.llm import InferenceBackend
from services.transcript import TranscriptStore

logger = logging.getLogger(__name__)

STEP_FETCH = "fetch_messages"
STEP_SUMMARIZE = "summarize"
STEP_PERSIST = "persist_summary"
STEP_EXTRACT = "extract_pinned_facts"
STEP_SYNC = "sync_actor_state"

PIPELINE_STEPS = (STEP_FETCH, STEP_SUMMARIZE, STEP_PERSIST, STEP_EXTRACT, STEP_SYNC)
FINISHED_STATUSES = ("completed", "skipped", "partial")

SUMMARY_INSTRUCTIONS = "\n\n".join([
    "Summarize the following conversation in 6 sentences or fewer.",
    "Highlight actionable next steps and key facts worth remembering.",
    "Return the summary in markdown with sections: Summary, Action Items, Facts.",
])

_BULLET_RE = re.compile(r"^[-*]\s+")


def make_run_id(conversation_id: str, trigger_ms: int) -> str:
    return f"{conversation_id}-{trigger_ms}"


def format_transcript(messages: list[dict]) -> str:
    return "\n\n".join(f"{m['role'].upper()}: {m['content']}" for m in messages)


def extract_pinned_facts(summary: str, limit: int = MAX_PINNED_FACTS) -> list[str]:
    """First *limit* bulleted lines (``-`` or ``*``) of *summary*, markers stripped."""
    facts: list[str] = []
    for line in summary.split("\n"):
        stripped = line.strip()
        if not _BULLET_RE.match(stripped):
            continue
        facts.append(_BULLET_RE.sub("", stripped, count=1))
        if len(facts) == limit:
            break
    return facts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StepLog:
    """Checkpoint rows for one run."""

    def __init__(self, session_factory: sessionmaker, run_id: str):
        self._session_factory = session_factory
        self.run_id = run_id

    def completed(self) -> dict[str, Any]:
        with self._session_factory() as db:
            rows = (
                db.query(SummaryRunStep)
                .filter(SummaryRunStep.run_id == self.run_id, SummaryRunStep.status == "completed")
                .all()
            )
            return {row.step: row.output for row in rows}

    def _completed_output(self, db, step: str) -> tuple[bool, Any]:
        row = (
            db.query(SummaryRunStep)
            .filter(
                SummaryRunStep.run_id == self.run_id,
                SummaryRunStep.step == step,
                SummaryRunStep.status == "completed",
            )
            .first()
        )
        return (row is not None, row.output if row is not None else None)

    def record_success(self, step: str, output: Any, duration_ms: int, retry_count: int = 0) -> Any:
        """Checkpoint *step* and return the output every later step must use.

        A concurrent worker may have checkpointed the same step first; the
        partial unique index keeps a single completed row and its output wins.
        """
        with self._session_factory() as db:
            found, existing = self._completed_output(db, step)
            if found:
                return existing
            db.add(SummaryRunStep(
                run_id=self.run_id, step=step, status="completed", output=output,
                duration_ms=duration_ms, retry_count=retry_count,
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                found, existing = self._completed_output(db, step)
                if not found:
                    raise
                logger.info("Step %s of run %s was checkpointed by another worker", step, self.run_id)
                return existing
            return output

    def record_failure(self, step: str, error: str, duration_ms: int, retry_count: int = 0) -> None:
        with self._session_factory() as db:
            db.add(SummaryRunStep(
                run_id=self.run_id, step=step, status="failed", error=error[:2000],
                duration_ms=duration_ms, retry_count=retry_count,
            ))
            db.commit()


class SummarizationPipeline:
    def __init__(
        self,
        store: TranscriptStore,
        llm: InferenceBackend,
        actor_client,
        session_factory: sessionmaker,
        *,
        schedule_retry: Callable[..., Any] | None = None,
        max_step_retries: int = 3,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._llm = llm
        self._actor_client = actor_client
        self._session_factory = session_factory
        self._schedule_retry = schedule_retry
        self._max_step_retries = max_step_retries
        self._clock = clock

    # ── Run bookkeeping ────────────────────────────────────────────────────

    def _claim_run(self, run_id: str, conversation_id: str, max_messages: int, retry_count: int) -> SummaryRun | None:
        """Get-or-create the run row and mark it running; None if already finished."""
        with self._session_factory() as db:
            run = db.get(SummaryRun, run_id)
            if run is None:
                run = SummaryRun(
                    run_id=run_id, conversation_id=conversation_id,
                    max_messages=max_messages, status="pending",
                )
                db.add(run)
            elif run.status in FINISHED_STATUSES:
                logger.info("Summary run %s already %s, skipping", run_id, run.status)
                return None
            run.status = "running"
            run.retry_count = retry_count
            run.started_at = run.started_at or _utcnow()
            db.commit()
            db.refresh(run)
            return run

    def _finish_run(self, run_id: str, status: str, error: str = "", retry_count: int | None = None) -> None:
        with self._session_factory() as db:
            run = db.get(SummaryRun, run_id)
            if run is None:
                return
            run.status = status
            run.error_message = error[:2000]
            if retry_count is not None:
                run.retry_count = retry_count
            if status in FINISHED_STATUSES or status == "failed":
                run.completed_at = _utcnow()
            db.commit()

    # ── Entry point ────────────────────────────────────────────────────────

    def run(self, run_id: str, conversation_id: str, max_messages: int = 25, retry_count: int = 0) -> str:
        """Execute (or resume) one run. Returns the run's resulting status."""
        tokens = (
            conversation_id_var.set(conversation_id),
            run_id_var.set(run_id),
        )
        try:
            return self._run(run_id, conversation_id, max_messages, retry_count)
        finally:
            run_id_var.reset(tokens[1])
            conversation_id_var.reset(tokens[0])

    def _run(self, run_id: str, conversation_id: str, max_messages: int, retry_count: int) -> str:
        if self._claim_run(run_id, conversation_id, max_messages, retry_count) is None:
            return "skipped"

        log = StepLog(self._session_factory, run_id)
        checkpoints = log.completed()
        if checkpoints:
            logger.info("Resuming summary run %s after %s", run_id, ", ".join(sorted(checkpoints)))

        try:
            fetched = self._step(log, checkpoints, STEP_FETCH, retry_count,
                                 lambda: {"messages": self._store.recent_messages(conversation_id, max_messages)})
            messages = fetched["messages"]
            if not messages:
                logger.info("No messages for conversation %s, nothing to summarize", conversation_id)
                self._finish_run(run_id, "skipped")
                return "skipped"

            summarized = self._step(log, checkpoints, STEP_SUMMARIZE, retry_count,
                                    lambda: {"summary": self._summarize(messages)})
            summary = summarized["summary"]

            persisted = self._step(log, checkpoints, STEP_PERSIST, retry_count,
                                   lambda: self._persist(conversation_id, summary))
            updated_at = persisted["updated_at"]

            extracted = self._step(log, checkpoints, STEP_EXTRACT, retry_count,
                                   lambda: {"pinned_facts": extract_pinned_facts(summary)})
            pinned_facts = extracted["pinned_facts"]
        except PipelineStepError as exc:
            return self._handle_step_failure(run_id, conversation_id, max_messages, retry_count, exc)

        if STEP_SYNC not in checkpoints:
            try:
                self._step(log, checkpoints, STEP_SYNC, retry_count, lambda: self._sync(
                    conversation_id, summary, pinned_facts, iso_from_ms(updated_at),
                ))
            except PipelineStepError as exc:
                # Summary is already durable; the actor catches up on the next run
                logger.warning("Actor state sync failed for %s: %s", conversation_id, exc)
                self._finish_run(run_id, "partial", error=str(exc))
                return "partial"

        self._finish_run(run_id, "completed")
        logger.info("Summary run %s completed (%d pinned facts)", run_id, len(pinned_facts))
        return "completed"

    def _step(self, log: StepLog, checkpoints: dict, name: str, retry_count: int, fn: Callable[[], dict]) -> dict:
        if name in checkpoints:
            return checkpoints[name]

        token = step_var.set(name)
        start = time.monotonic()
        try:
            output = fn()
        except Exception as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            log.record_failure(name, f"{type(exc).__name__}: {exc}", duration_ms, retry_count)
            raise PipelineStepError(name, str(exc)) from exc
        finally:
            step_var.reset(token)

        output = log.record_success(name, output, int((time.monotonic() - start) * 1000), retry_count)
        checkpoints[name] = output
        return output

    def _handle_step_failure(
        self, run_id: str, conversation_id: str, max_messages: int, retry_count: int, exc: PipelineStepError,
    ) -> str:
        if retry_count < self._max_step_retries and self._schedule_retry is not None:
            delay = 2 ** retry_count
            logger.warning("Summary run %s failed at %s (attempt %d), retrying in %ds",
                           run_id, exc.step, retry_count + 1, delay)
            self._finish_run(run_id, "pending", error=str(exc), retry_count=retry_count + 1)
            try:
                self._schedule_retry(run_id, conversation_id, max_messages, retry_count + 1, delay)
                return "retrying"
            except Exception:
                logger.exception("Could not schedule retry for summary run %s", run_id)

        logger.error("Summary run %s abandoned at step %s: %s", run_id, exc.step, exc)
        self._finish_run(run_id, "failed", error=str(exc))
        return "failed"

    # ── Step bodies ────────────────────────────────────────────────────────

    def _summarize(self, messages: list[dict]) -> str:
        return self._llm.complete([
            {"role": "system", "content": SUMMARY_INSTRUCTIONS},
            {"role": "user", "content": format_transcript(messages)},
        ])

    def _persist(self, conversation_id: str, summary: str) -> dict:
        updated_at = self._clock()
        self._store.upsert_summary(conversation_id, summary, updated_at)
        return {"updated_at": updated_at}

    def _sync(self, conversation_id: str, summary: str, pinned_facts: list[str], last_updated: str) -> dict:
        self._actor_client.push_state(
            conversation_id,
            summary=summary,
            pinned_facts=pinned_facts,
            last_updated=last_updated,
        )
        return {"last_updated": last_updated}
