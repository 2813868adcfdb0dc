# dreamstate/queue_client.py
"""
Consolidation dispatch for accepted queue entries.

QUEUE_MODE selects how a new entry reaches the Dreaming Engine:
- inline: run after the response as a Starlette background task (default)
- rq: enqueue a job on the Redis queue; run `rq worker consolidation`
- worker: do nothing here; the sweep worker picks pending entries up
"""
import logging
from typing import Optional

from redis import Redis
from rq import Queue
from starlette.background import BackgroundTasks

from dreamstate.core.config import settings
from dreamstate.core.documents import DocumentStore
from dreamstate.core.errors import ConsolidationFailure, TransientStoreError
from dreamstate.core.logging import log_event

logger = logging.getLogger("dreamstate")

CONSOLIDATION_JOB = "dreamstate.workers.consolidation_worker.process_entry"

_queue: Optional[Queue] = None


def get_queue() -> Queue:
    """Lazily connect to Redis; inline and worker modes never call this."""
    global _queue
    if _queue is None:
        redis_conn = Redis.from_url(settings.REDIS_URL)
        _queue = Queue(settings.RQ_QUEUE_NAME, connection=redis_conn)
    return _queue


def run_consolidation(entry_path: str, store: Optional[DocumentStore] = None) -> None:
    """Background-task entrypoint. A failed entry stays queued for the sweep worker."""
    from dreamstate.workers.consolidation_worker import process_entry

    try:
        process_entry(entry_path, store=store)
    except ConsolidationFailure:
        log_event("warning", "dispatch.inline_failed", entry_id=entry_path, error_code="consolidation_failed")
    except TransientStoreError:
        log_event("warning", "dispatch.inline_failed", entry_id=entry_path, error_code="store_unavailable")


def enqueue_consolidation(entry_path: str) -> str:
    """
    Enqueue a consolidation job to RQ.

    Returns:
        Job ID
    """
    job = get_queue().enqueue(
        CONSOLIDATION_JOB,
        entry_path,
        job_timeout="5m",
        result_ttl=3600,
        failure_ttl=86400,
    )
    return job.id


def dispatch_consolidation(
    entry_path: str,
    store: Optional[DocumentStore] = None,
    background_tasks: Optional[BackgroundTasks] = None,
    mode: Optional[str] = None,
) -> str:
    """Hand an accepted entry to the configured consolidation path; returns the mode used."""
    mode = (mode or settings.QUEUE_MODE or "inline").lower()

    if mode == "rq":
        job_id = enqueue_consolidation(entry_path)
        logger.info("dispatch.enqueued", extra={"entry_id": entry_path, "job_id": job_id})
        return mode

    if mode == "worker":
        return mode

    if background_tasks is not None:
        background_tasks.add_task(run_consolidation, entry_path, store)
    else:
        run_consolidation(entry_path, store)
    return "inline"
