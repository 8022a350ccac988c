"""RQ task definitions.

All RQ enqueue calls MUST import from this module (not services.*)
so that the worker resolves functions as `tasks.<name>`.

We define thin wrappers here so that __module__ is 'tasks',
which is what RQ serializes for job lookup.
"""


def summarize_conversation_job(
    run_id: str, conversation_id: str, max_messages: int = 25, retry_count: int = 0,
) -> str:
    from services.runtime import get_worker_pipeline
    return get_worker_pipeline().run(run_id, conversation_id, max_messages, retry_count)


def recover_stalled_runs_job() -> int:
    from services.pipeline_recovery import recover_stalled_runs
    return recover_stalled_runs()
