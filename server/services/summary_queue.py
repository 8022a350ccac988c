"""RQ-backed trigger for summarization runs."""

from __future__ import annotations

import logging
from datetime import timedelta

from rq import Queue

from services.summarization import make_run_id

logger = logging.getLogger(__name__)


class SummaryQueue:
    """Fire-and-forget enqueueing of summarization runs.

    ``enqueue`` is called from the turn path: it either pushes one job or
    drops the trigger with a warning when the queue is saturated. It never
    waits for the run itself.
    """

    def __init__(self, queue: Queue, *, max_pending: int = 1000):
        self._queue = queue
        self._max_pending = max_pending

    def enqueue(self, conversation_id: str, trigger_ms: int, max_messages: int) -> str | None:
        from services.pipeline_recovery import on_summary_job_failure
        from tasks import summarize_conversation_job

        run_id = make_run_id(conversation_id, trigger_ms)
        pending = self._queue.count
        if pending >= self._max_pending:
            logger.warning(
                "Summary queue saturated (%d pending), dropping trigger %s", pending, run_id,
            )
            return None

        self._queue.enqueue(
            summarize_conversation_job,
            run_id,
            conversation_id,
            max_messages,
            job_id=run_id,
            on_failure=on_summary_job_failure,
        )
        logger.debug("Enqueued summary run %s", run_id)
        return run_id

    def enqueue_retry(
        self, run_id: str, conversation_id: str, max_messages: int, retry_count: int, delay_seconds: int,
    ) -> None:
        from services.pipeline_recovery import on_summary_job_failure
        from tasks import summarize_conversation_job

        self._queue.enqueue_in(
            timedelta(seconds=delay_seconds),
            summarize_conversation_job,
            run_id,
            conversation_id,
            max_messages,
            retry_count,
            job_id=f"{run_id}-retry{retry_count}",
            on_failure=on_summary_job_failure,
        )

    def resume(self, run_id: str, conversation_id: str, max_messages: int, retry_count: int) -> None:
        """Re-enqueue an interrupted run; completed steps are skipped by the worker."""
        from services.pipeline_recovery import on_summary_job_failure
        from tasks import summarize_conversation_job

        self._queue.enqueue(
            summarize_conversation_job,
            run_id,
            conversation_id,
            max_messages,
            retry_count,
            job_id=f"{run_id}-resume{retry_count}",
            on_failure=on_summary_job_failure,
        )
