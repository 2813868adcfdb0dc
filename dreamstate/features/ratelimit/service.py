"""
dreamstate/features/ratelimit/service.py

Per-user weighted fixed-window rate limiter backed by the document store.

One window document per user (`users/{uid}/system/rate_limit`) is
read-modify-written inside a transaction. Only generation-class actions carry
weight; weight 0 is always allowed and never touches the store.

This is a fixed window, not a sliding one: a burst straddling a window
boundary can reach up to twice the cap within 60 seconds.
"""

import time
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from dreamstate.core.config import settings
from dreamstate.core.documents import DocumentStore, Transaction
from dreamstate.core.metrics import ratelimit_block_total
from dreamstate.models.telemetry import TelemetryEvent

# Action -> weighted cost against the per-user cap
ACTION_WEIGHTS: Dict[str, int] = {
    "generate": 1,
    "regenerate": 1,
}


def rate_limit_path(user_id: str) -> str:
    return f"users/{user_id}/system/rate_limit"


def batch_weight(events: Iterable[TelemetryEvent]) -> int:
    return sum(ACTION_WEIGHTS.get(e.action, 0) for e in events)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    window_start: int
    count: int
    retry_after_ms: int = 0


class RateLimiter:
    def __init__(self, store: DocumentStore, window_ms: Optional[int] = None, max_units: Optional[int] = None):
        self.store = store
        self.window_ms = window_ms or settings.RATE_LIMIT_WINDOW_MS
        self.max_units = max_units or settings.RATE_LIMIT_MAX_UNITS

    def apply(self, txn: Transaction, user_id: str, weight: int, now: Optional[int] = None) -> RateLimitDecision:
        """Charge `weight` units inside the caller's transaction."""
        if weight <= 0:
            return RateLimitDecision(allowed=True, window_start=0, count=0)

        now = _now_ms() if now is None else now
        path = rate_limit_path(user_id)
        window = txn.get(path).to_dict()

        window_start = window.get("windowStart")
        count = window.get("count")
        if not isinstance(window_start, (int, float)) or isinstance(window_start, bool):
            window_start, count = now, 0
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            count = 0
        if now - window_start >= self.window_ms:
            window_start, count = now, 0

        next_count = count + weight
        if next_count > self.max_units:
            # Persist the window unmodified so a rejection never extends it
            txn.set(path, {"windowStart": window_start, "count": count})
            retry_after = max(0, int(window_start + self.window_ms - now))
            return RateLimitDecision(allowed=False, window_start=int(window_start), count=count, retry_after_ms=retry_after)

        txn.set(path, {"windowStart": window_start, "count": next_count})
        return RateLimitDecision(allowed=True, window_start=int(window_start), count=next_count)

    def check(self, user_id: str, weight: int, now: Optional[int] = None) -> RateLimitDecision:
        decision = self.store.run_transaction(lambda txn: self.apply(txn, user_id, weight, now=now))
        if not decision.allowed:
            ratelimit_block_total.inc(labels={"scope": "telemetry"})
        return decision

    def allow(self, user_id: str, weight: int, now: Optional[int] = None) -> bool:
        return self.check(user_id, weight, now=now).allowed
