"""Consolidation worker.

Usage:
    python -m dreamstate.workers.consolidation_worker --once
    python -m dreamstate.workers.consolidation_worker --loop

Sweeps every user's telemetry queue for pending entries and runs each
through the Dreaming Engine. Entries that fail stay in place and are retried
on the next sweep. Also the RQ job target (`process_entry`) in QUEUE_MODE=rq.

Environment flags:
- DREAMSTATE_SWEEP_LOOP_SECONDS (default 5)
"""
from __future__ import annotations

import argparse
import os
import time
from typing import Optional

from dreamstate.core.documents import DocumentStore, get_store
from dreamstate.core.errors import ConsolidationFailure, TransientStoreError
from dreamstate.core.logging import configure_logging, log_event
from dreamstate.core.metrics import queue_pending_entries
from dreamstate.features.consolidation.engine import ConsolidationResult, DreamingEngine
from dreamstate.models.telemetry import QUEUE_COLLECTION_ID


DEFAULT_LOOP_SECONDS = int(os.getenv("DREAMSTATE_SWEEP_LOOP_SECONDS", "5") or 5)


def process_entry(entry_path: str, store: Optional[DocumentStore] = None) -> Optional[ConsolidationResult]:
    """Consolidate one queue entry. Raises ConsolidationFailure on abort."""
    engine = DreamingEngine(store or get_store())
    return engine.process_queue_entry(entry_path)


def pending_entries(store: DocumentStore, limit: Optional[int] = None):
    pending = [
        snapshot.path
        for snapshot in store.list_collection_group(QUEUE_COLLECTION_ID)
        if not (snapshot.data or {}).get("processed")
    ]
    queue_pending_entries.set(len(pending))
    return pending[:limit] if limit else pending


def sweep(store: Optional[DocumentStore] = None, limit: int = 100) -> int:
    """Process pending entries once; returns the number consolidated."""
    store = store or get_store()
    acknowledged = 0
    for entry_path in pending_entries(store, limit=limit):
        try:
            result = process_entry(entry_path, store=store)
        except ConsolidationFailure:
            # Left in place with lastError recorded; next sweep retries
            continue
        except TransientStoreError as exc:
            log_event("warning", "worker.entry_skipped", entry_id=entry_path, error_code="store_unavailable", extra={"error": exc})
            continue
        if result is not None:
            acknowledged += 1
    return acknowledged


def main() -> None:
    parser = argparse.ArgumentParser(description="Telemetry consolidation worker")
    parser.add_argument("--once", action="store_true", help="Sweep pending entries once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=100, help="Batch size per iteration")
    parser.add_argument(
        "--sleep",
        type=int,
        default=DEFAULT_LOOP_SECONDS,
        help="Seconds to sleep between loops (when --loop)",
    )
    args = parser.parse_args()
    configure_logging(os.getenv("ENV", "development"))

    if args.once:
        acknowledged = sweep(limit=args.limit)
        log_event("info", "worker.sweep_complete", extra={"acknowledged": acknowledged})
        return

    # Default to loop mode when not explicitly once
    log_event("info", "worker.loop_started", extra={"sleep": args.sleep, "batch": args.limit})
    try:
        while True:
            acknowledged = sweep(limit=args.limit)
            if acknowledged:
                log_event("info", "worker.sweep_complete", extra={"acknowledged": acknowledged})
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        log_event("info", "worker.stopped")


if __name__ == "__main__":
    main()
