"""Tests for the checkpointed summarization pipeline."""

from __future__ import annotations

import os
import sys
from unittest.mock import MagicMock

from sqlalchemy.exc import IntegrityError

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from models.summary_run import SummaryRun, SummaryRunStep
from services.actor import iso_from_ms
from services.errors import InferenceError
from services.summarization import (
    PIPELINE_STEPS,
    STEP_FETCH,
    STEP_PERSIST,
    STEP_SUMMARIZE,
    STEP_SYNC,
    StepLog,
    SummarizationPipeline,
    extract_pinned_facts,
    format_transcript,
    make_run_id,
)

CID = "6f1c2a9b-4d3e-4a5b-9c8d-7e6f5a4b3c2d"
NOW = 1_718_000_000_000
RUN_ID = make_run_id(CID, NOW)

SUMMARY = "## Summary\nTrip planning.\n\n## Facts\n- Flies on Friday\n* Budget is 2k\nnot a fact"


class _ScriptedLLM:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def complete(self, messages):
        self.calls.append(messages)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def seeded(store):
    store.ensure_conversation(CID, 1)
    store.append(CID, "user", "We fly Friday", 10)
    store.append(CID, "assistant", "Noted!", 11)
    return store


@pytest.fixture
def actor_client():
    return MagicMock()


@pytest.fixture
def schedule_retry():
    return MagicMock()


@pytest.fixture
def make_pipeline(session_factory):
    def _make(store, llm, actor_client, schedule_retry=None, **kwargs):
        return SummarizationPipeline(
            store, llm, actor_client, session_factory,
            schedule_retry=schedule_retry, clock=lambda: NOW, **kwargs,
        )
    return _make


def _steps(db, status="completed"):
    rows = db.query(SummaryRunStep).filter_by(run_id=RUN_ID, status=status).all()
    return sorted(row.step for row in rows)


# ── Pure helpers ──────────────────────────────────────────────────────────


class TestExtractPinnedFacts:
    def test_bullets_only(self):
        assert extract_pinned_facts("- A\n* B\n- C\nplain") == ["A", "B", "C"]

    def test_indented_bullets(self):
        assert extract_pinned_facts("  - spaced\n\t* tabbed") == ["spaced", "tabbed"]

    def test_at_most_five(self):
        text = "\n".join(f"- fact {i}" for i in range(9))
        assert extract_pinned_facts(text) == [f"fact {i}" for i in range(5)]

    def test_no_bullets(self):
        assert extract_pinned_facts("Just prose.\n1. numbered") == []

    def test_marker_needs_whitespace(self):
        assert extract_pinned_facts("-nospace\n**bold**") == []

    def test_bullets_across_headings(self):
        text = "## Summary\nPlanning a trip.\n- A\n\n## Facts\n- B\n* C\n"
        assert extract_pinned_facts(text) == ["A", "B", "C"]


def test_format_transcript():
    messages = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]
    assert format_transcript(messages) == "USER: hi\n\nASSISTANT: hello"


def test_run_id_format():
    assert make_run_id("abc", 42) == "abc-42"


# ── Full runs ─────────────────────────────────────────────────────────────


class TestPipelineRun:
    def test_completed_run(self, make_pipeline, seeded, actor_client, db):
        llm = _ScriptedLLM(SUMMARY)
        status = make_pipeline(seeded, llm, actor_client).run(RUN_ID, CID, 25)

        assert status == "completed"
        assert seeded.get_summary(CID) == {"conversationId": CID, "summary": SUMMARY, "updatedAt": NOW}
        actor_client.push_state.assert_called_once_with(
            CID,
            summary=SUMMARY,
            pinned_facts=["Flies on Friday", "Budget is 2k"],
            last_updated=iso_from_ms(NOW),
        )
        assert _steps(db) == sorted(PIPELINE_STEPS)
        run = db.get(SummaryRun, RUN_ID)
        assert run.status == "completed"
        assert run.completed_at is not None

    def test_transcript_sent_to_model(self, make_pipeline, seeded, actor_client):
        llm = _ScriptedLLM(SUMMARY)
        make_pipeline(seeded, llm, actor_client).run(RUN_ID, CID, 25)

        prompt = llm.calls[0]
        assert prompt[0]["role"] == "system"
        assert prompt[1]["content"] == "USER: We fly Friday\n\nASSISTANT: Noted!"

    def test_empty_transcript_is_noop(self, make_pipeline, store, actor_client, db):
        llm = _ScriptedLLM()
        status = make_pipeline(store, llm, actor_client).run(RUN_ID, CID, 25)

        assert status == "skipped"
        assert llm.calls == []
        assert store.get_summary(CID) is None
        actor_client.push_state.assert_not_called()
        assert db.get(SummaryRun, RUN_ID).status == "skipped"

    def test_finished_run_is_not_repeated(self, make_pipeline, seeded, actor_client):
        pipeline = make_pipeline(seeded, _ScriptedLLM(SUMMARY), actor_client)
        pipeline.run(RUN_ID, CID, 25)

        assert pipeline.run(RUN_ID, CID, 25) == "skipped"
        actor_client.push_state.assert_called_once()

    def test_resume_reuses_checkpoints(self, make_pipeline, seeded, actor_client, db):
        db.add(SummaryRun(run_id=RUN_ID, conversation_id=CID, status="running", max_messages=25))
        db.add(SummaryRunStep(run_id=RUN_ID, step=STEP_FETCH, status="completed", output={
            "messages": [{"role": "user", "content": "checkpointed", "createdAt": 1}],
        }))
        db.add(SummaryRunStep(run_id=RUN_ID, step=STEP_SUMMARIZE, status="completed", output={
            "summary": "- From checkpoint",
        }))
        db.commit()

        llm = _ScriptedLLM()
        status = make_pipeline(seeded, llm, actor_client).run(RUN_ID, CID, 25)

        assert status == "completed"
        assert llm.calls == []
        assert seeded.get_summary(CID)["summary"] == "- From checkpoint"
        actor_client.push_state.assert_called_once()
        assert actor_client.push_state.call_args.kwargs["pinned_facts"] == ["From checkpoint"]


# ── Failures and retries ──────────────────────────────────────────────────


class TestPipelineFailures:
    def test_step_failure_schedules_backoff_retry(self, make_pipeline, seeded, actor_client, schedule_retry, db):
        llm = _ScriptedLLM(InferenceError("model down"))
        status = make_pipeline(seeded, llm, actor_client, schedule_retry).run(RUN_ID, CID, 25, retry_count=0)

        assert status == "retrying"
        schedule_retry.assert_called_once_with(RUN_ID, CID, 25, 1, 1)
        run = db.get(SummaryRun, RUN_ID)
        assert run.status == "pending"
        assert run.retry_count == 1
        assert _steps(db, "failed") == [STEP_SUMMARIZE]
        assert _steps(db) == [STEP_FETCH]

    def test_backoff_doubles(self, make_pipeline, seeded, actor_client, schedule_retry):
        llm = _ScriptedLLM(InferenceError("model down"))
        make_pipeline(seeded, llm, actor_client, schedule_retry).run(RUN_ID, CID, 25, retry_count=2)
        schedule_retry.assert_called_once_with(RUN_ID, CID, 25, 3, 4)

    def test_retries_exhausted_marks_failed(self, make_pipeline, seeded, actor_client, schedule_retry, db):
        llm = _ScriptedLLM(InferenceError("model down"))
        pipeline = make_pipeline(seeded, llm, actor_client, schedule_retry, max_step_retries=3)

        status = pipeline.run(RUN_ID, CID, 25, retry_count=3)

        assert status == "failed"
        schedule_retry.assert_not_called()
        run = db.get(SummaryRun, RUN_ID)
        assert run.status == "failed"
        assert "model down" in run.error_message

    def test_retry_resumes_after_failed_step(self, make_pipeline, seeded, actor_client, schedule_retry, db):
        llm = _ScriptedLLM(InferenceError("model down"), SUMMARY)
        pipeline = make_pipeline(seeded, llm, actor_client, schedule_retry)

        assert pipeline.run(RUN_ID, CID, 25) == "retrying"
        assert pipeline.run(RUN_ID, CID, 25, retry_count=1) == "completed"
        assert len(llm.calls) == 2
        assert db.query(SummaryRunStep).filter_by(run_id=RUN_ID, step=STEP_FETCH).count() == 1

    def test_persist_failure_retries(self, make_pipeline, seeded, actor_client, schedule_retry, db):
        seeded.upsert_summary = MagicMock(side_effect=RuntimeError("db locked"))
        status = make_pipeline(seeded, _ScriptedLLM(SUMMARY), actor_client, schedule_retry).run(RUN_ID, CID, 25)

        assert status == "retrying"
        assert _steps(db, "failed") == [STEP_PERSIST]
        actor_client.push_state.assert_not_called()

    def test_sync_failure_is_partial(self, make_pipeline, seeded, actor_client, schedule_retry, db):
        actor_client.push_state.side_effect = ConnectionError("actor unreachable")
        status = make_pipeline(seeded, _ScriptedLLM(SUMMARY), actor_client, schedule_retry).run(RUN_ID, CID, 25)

        assert status == "partial"
        schedule_retry.assert_not_called()
        assert seeded.get_summary(CID)["summary"] == SUMMARY
        assert _steps(db, "failed") == [STEP_SYNC]
        assert db.get(SummaryRun, RUN_ID).status == "partial"

    def test_no_scheduler_fails_immediately(self, make_pipeline, seeded, actor_client, db):
        llm = _ScriptedLLM(InferenceError("model down"))
        status = make_pipeline(seeded, llm, actor_client).run(RUN_ID, CID, 25)
        assert status == "failed"


# ── Step log checkpoints ──────────────────────────────────────────────────


class _StaleReadLog(StepLog):
    """Misses a competing worker's checkpoint on its first lookup."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reads = 0

    def _completed_output(self, db, step):
        self.reads += 1
        if self.reads == 1:
            return False, None
        return super()._completed_output(db, step)


@pytest.fixture
def run_row(db):
    db.add(SummaryRun(run_id=RUN_ID, conversation_id=CID, status="running"))
    db.commit()
    return RUN_ID


class TestStepLog:
    def test_second_completed_row_rejected(self, db, run_row):
        db.add(SummaryRunStep(run_id=run_row, step=STEP_PERSIST, status="completed", output={"updated_at": 1}))
        db.commit()
        db.add(SummaryRunStep(run_id=run_row, step=STEP_PERSIST, status="completed", output={"updated_at": 2}))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

        assert _steps(db) == [STEP_PERSIST]

    def test_failed_attempts_may_repeat(self, db, run_row):
        for _ in range(2):
            db.add(SummaryRunStep(run_id=run_row, step=STEP_SUMMARIZE, status="failed", error="timeout"))
            db.commit()
        db.add(SummaryRunStep(run_id=run_row, step=STEP_SUMMARIZE, status="completed", output={"summary": "S"}))
        db.commit()

        assert len(_steps(db, status="failed")) == 2
        assert _steps(db) == [STEP_SUMMARIZE]

    def test_record_success_keeps_first_checkpoint(self, db, session_factory, run_row):
        log = StepLog(session_factory, run_row)
        assert log.record_success(STEP_SUMMARIZE, {"summary": "first"}, 5) == {"summary": "first"}

        assert log.record_success(STEP_SUMMARIZE, {"summary": "second"}, 5) == {"summary": "first"}
        assert log.completed() == {STEP_SUMMARIZE: {"summary": "first"}}

    def test_concurrent_checkpoint_returns_winner(self, db, session_factory, run_row):
        StepLog(session_factory, run_row).record_success(STEP_SUMMARIZE, {"summary": "winner"}, 5)

        late = _StaleReadLog(session_factory, run_row)
        output = late.record_success(STEP_SUMMARIZE, {"summary": "loser"}, 5)

        assert output == {"summary": "winner"}
        assert late.reads == 2
        rows = db.query(SummaryRunStep).filter_by(run_id=run_row, step=STEP_SUMMARIZE).all()
        assert len(rows) == 1
        assert rows[0].output == {"summary": "winner"}
