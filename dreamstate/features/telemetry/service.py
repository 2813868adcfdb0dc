"""
dreamstate/features/telemetry/service.py

Durable acceptance of a validated telemetry batch.

The rate-limit charge and the queue entry creation commit in one store
transaction: either both happen or neither does. A rejected batch re-writes
the unmodified rate-limit window and nothing else.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, List, Optional
from uuid import uuid4

from dreamstate.core.documents import DocumentStore, Transaction
from dreamstate.core.errors import RateLimitError
from dreamstate.core.logging import log_event
from dreamstate.core.metrics import ratelimit_block_total, telemetry_events_accepted_total
from dreamstate.features.ratelimit.service import RateLimiter, batch_weight
from dreamstate.features.stats.service import record_ingest_stats
from dreamstate.features.telemetry.validators import is_finite_number
from dreamstate.models.telemetry import QueueEntry, TelemetryEvent, queue_collection

logger = logging.getLogger("dreamstate")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class IngestResult:
    entry_path: str
    queued: int


def client_timestamp_or(value: Any, fallback: int) -> float:
    if is_finite_number(value):
        return value
    return fallback


def ingest_batch(
    store: DocumentStore,
    user_id: str,
    events: List[TelemetryEvent],
    *,
    surface: str = "simple",
    client_timestamp: Any = None,
    limiter: Optional[RateLimiter] = None,
    now: Optional[int] = None,
) -> IngestResult:
    """
    Charge the rate limit and persist a queue entry atomically.

    Raises:
        RateLimitError when the batch's generation weight exceeds the window
        TransientStoreError when the transaction cannot commit
    """
    now = _now_ms() if now is None else now
    limiter = limiter or RateLimiter(store)
    weight = batch_weight(events)

    entry = QueueEntry(
        user_id=user_id,
        events=events,
        client_timestamp=client_timestamp_or(client_timestamp, now),
        server_timestamp=now,
        surface=surface,
    )
    entry_path = f"{queue_collection(user_id)}/{uuid4().hex}"

    def _accept(txn: Transaction):
        decision = limiter.apply(txn, user_id, weight, now=now)
        if decision.allowed:
            txn.set(entry_path, entry.to_document())
        return decision

    decision = store.run_transaction(_accept)
    if not decision.allowed:
        ratelimit_block_total.inc(labels={"scope": "telemetry"})
        log_event("warning", "ingest.rate_limited", user_id=user_id, error_code="rate_limited", extra={"weight": weight})
        retry_after = max(1, math.ceil(decision.retry_after_ms / 1000))
        raise RateLimitError("Rate limit exceeded", retry_after=retry_after)

    telemetry_events_accepted_total.inc(labels={"surface": surface}, amount=len(events))
    log_event("info", "ingest.queued", user_id=user_id, entry_id=entry_path, extra={"events": len(events), "surface": surface})

    try:
        record_ingest_stats(store, user_id, events, now=now)
    except Exception as exc:
        # Stats are advisory; the batch is already durable
        log_event("warning", "ingest.stats_failed", user_id=user_id, entry_id=entry_path, extra={"error": exc})

    return IngestResult(entry_path=entry_path, queued=len(events))
