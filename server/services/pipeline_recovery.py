"""Detect and resume summary runs stuck mid-pipeline.

A stalled run is one whose RQ worker died (OOM, host reboot, etc.) after it
marked the run ``running``, or whose retry was lost with the scheduler. The
step log already holds every completed checkpoint, so recovery just
re-enqueues the run and the worker picks up at the first missing step.

Two entry points:

- ``recover_stalled_runs()``: called on server startup
- ``recover_stalled_runs_job()`` in ``tasks/__init__.py``: periodic RQ watchdog

``on_summary_job_failure`` is the RQ ``on_failure`` hook for jobs that crash
outside the pipeline's own step handling.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_
from sqlalchemy.orm import sessionmaker

from config import settings
from models.summary_run import SummaryRun
from services.summarization import FINISHED_STATUSES

logger = logging.getLogger(__name__)

STALLED_STATUSES = ("pending", "running")


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def recover_stalled_runs(
    threshold_seconds: int | None = None,
    *,
    session_factory: sessionmaker | None = None,
    summary_queue=None,
) -> int:
    """Re-enqueue every run stuck in pending/running past *threshold_seconds*.

    Returns the number of runs re-enqueued.
    """
    if threshold_seconds is None:
        threshold_seconds = settings.SUMMARY_STALE_RUN_SECONDS
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal
    if summary_queue is None:
        from services.runtime import build_summary_queue
        summary_queue = build_summary_queue(settings)

    cutoff = _utcnow_naive() - timedelta(seconds=threshold_seconds)
    db = session_factory()
    try:
        stalled = (
            db.query(SummaryRun)
            .filter(
                SummaryRun.status.in_(STALLED_STATUSES),
                or_(
                    SummaryRun.started_at < cutoff,
                    and_(SummaryRun.started_at.is_(None), SummaryRun.created_at < cutoff),
                ),
            )
            .all()
        )
        recovered = 0
        for run in stalled:
            try:
                logger.warning("Resuming stalled summary run %s (status=%s)", run.run_id, run.status)
                summary_queue.resume(run.run_id, run.conversation_id, run.max_messages, run.retry_count)
                run.status = "pending"
                run.started_at = None
                db.commit()
                recovered += 1
            except Exception:
                db.rollback()
                logger.exception("Failed to resume summary run %s", run.run_id)
        return recovered
    except Exception:
        logger.exception("Error in recover_stalled_runs")
        return 0
    finally:
        db.close()


def on_summary_job_failure(job, connection, type, value, traceback):
    """RQ on_failure callback: mark the run failed when its job crashes."""
    run_id = job.args[0] if job.args else None
    if not run_id:
        return
    logger.error("Summary job %s crashed: %s", job.id, value)
    try:
        from database import SessionLocal

        db = SessionLocal()
        try:
            run = db.get(SummaryRun, run_id)
            if run and run.status not in FINISHED_STATUSES:
                run.status = "failed"
                run.error_message = f"Job crashed: {value}"[:2000]
                run.completed_at = _utcnow_naive()
                db.commit()
        finally:
            db.close()
    except Exception:
        logger.exception("Failed to mark summary run %s as failed", run_id)
