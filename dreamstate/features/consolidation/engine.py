"""
dreamstate/features/consolidation/engine.py

The Dreaming Engine: server-side heuristic analysis and memory consolidation.

For each queue entry:
    Pending -> Consolidating -> Acknowledged (entry deleted)
                             -> Failed (entry left in place, error recorded)

State is loaded, normalized, mutated in memory through pure functions and
merged back in a single store transaction. Every merge step is commutative:
scores accumulate, timestamps take the max and facts/insights deduplicate by
content. Numeric accumulators double-count when the same batch is delivered
twice; delivery is at-least-once and no dedupe token exists.
"""

import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from dreamstate.core.documents import DocumentStore, Transaction
from dreamstate.core.errors import ConsolidationFailure, TransientStoreError
from dreamstate.core.logging import log_event
from dreamstate.core.metrics import consolidation_total
from dreamstate.models.state import (
    BehavioralState,
    Insight,
    LearnedFact,
    MAX_INSIGHTS,
    evict_lowest_confidence,
    normalize_state,
)
from dreamstate.models.telemetry import QueueEntry, TelemetryEvent

SYSTEM_APP_ID = "SYSTEM"

# HVA scoring matrix
SCORES: Dict[str, int] = {
    "copy": 10,
    "download": 20,
    "success": 25,
    "dislike": -10,
    "install": 15,
    "install_app": 15,
    "completion": 5,
    "error": -5,
    "regenerate": -10,
}
DWELL_LONG_SCORE = 5
DWELL_LONG_SECONDS = 5
EDIT_SCORE = 5
EDIT_MAX_LENGTH_DELTA = 20

PATTERN_MIN_EVENTS = 5
HIGH_VELOCITY = 3.0
LOW_VELOCITY = 0.2
CONTEXT_SWITCH_APPS = 3
ERROR_ANOMALY_THRESHOLD = 2
INSIGHT_DEDUPE_WINDOW = 5

FREQUENT_APP_THRESHOLD = 5
FREQUENT_APP_CONFIDENCE = 0.8

MSG_HIGH_VELOCITY = "High-velocity interaction. User is in a hurry."
MSG_LOW_VELOCITY = "Low-velocity state. User is reading/thinking."
MSG_CONTEXT_SWITCH = "Rapid context switching observed."
MSG_ERRORS = "Multiple errors detected."


def core_memory_path(user_id: str) -> str:
    return f"users/{user_id}/system/core_memory"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _length(metadata: Dict[str, Any], text_key: str, length_key: str) -> Optional[float]:
    text = metadata.get(text_key)
    if isinstance(text, str) and text:
        return float(len(text))
    return _number(metadata.get(length_key))


def score_event(event: TelemetryEvent) -> int:
    """High-Value Action score for a single event."""
    metadata = event.metadata or {}

    if event.action == "dwell":
        duration = _number(metadata.get("duration")) or 0
        return DWELL_LONG_SCORE if duration > DWELL_LONG_SECONDS else 0

    if event.action == "edit":
        original = _length(metadata, "original", "originalLength")
        final = _length(metadata, "final", "finalLength")
        if original is not None and final is not None and abs(original - final) < EDIT_MAX_LENGTH_DELTA:
            return EDIT_SCORE
        return 0

    return SCORES.get(event.action, 0)


def _is_user_app(app_id: str) -> bool:
    return app_id.upper() != SYSTEM_APP_ID


def add_insight(state: BehavioralState, message: str, insight_type: str, confidence: float, now: int) -> bool:
    """Unshift an insight unless one of the most recent carries the same message."""
    if any(i.message == message for i in state.insights[:INSIGHT_DEDUPE_WINDOW]):
        return False
    insight = Insight(id=uuid4().hex, type=insight_type, message=message, confidence=confidence, timestamp=now)
    state.insights = [insight] + state.insights[:MAX_INSIGHTS - 1]
    return True


def add_fact(state: BehavioralState, content: str, scope: str, confidence: float, source: str, now: int) -> bool:
    if any(f.content == content for f in state.learned_facts):
        return False
    fact = LearnedFact(content=content, scope=scope, confidence=confidence, source=source, timestamp=now)
    state.learned_facts = evict_lowest_confidence(state.learned_facts + [fact])
    return True


def analyze_patterns(events: List[TelemetryEvent], state: BehavioralState, now: int) -> List[str]:
    """Velocity, context-switch and error-burst detection; returns messages added."""
    if len(events) < PATTERN_MIN_EVENTS:
        return []

    added: List[str] = []

    def _add(message: str, insight_type: str, confidence: float) -> None:
        if add_insight(state, message, insight_type, confidence, now):
            added.append(message)

    timestamps = [e.timestamp for e in events]
    duration_sec = (max(timestamps) - min(timestamps)) / 1000
    velocity = len(events) / (duration_sec or 1)

    if velocity > HIGH_VELOCITY:
        _add(MSG_HIGH_VELOCITY, "pattern", 0.85)
    elif velocity < LOW_VELOCITY:
        _add(MSG_LOW_VELOCITY, "behavior", 0.6)

    apps = {e.app_id for e in events if _is_user_app(e.app_id)}
    if len(apps) >= CONTEXT_SWITCH_APPS:
        _add(MSG_CONTEXT_SWITCH, "pattern", 0.9)

    errors = sum(1 for e in events if e.action == "error")
    if errors > ERROR_ANOMALY_THRESHOLD:
        _add(MSG_ERRORS, "anomaly", 0.95)

    return added


def consolidate_memories(events: List[TelemetryEvent], state: BehavioralState, now: int) -> List[str]:
    """Fold high-frequency app usage into long-term facts; returns contents added."""
    counts = Counter(e.app_id for e in events if _is_user_app(e.app_id))
    if not counts:
        return []

    # Highest count wins; ties go to the smallest app id
    top_app, top_count = min(counts.items(), key=lambda item: (-item[1], item[0]))
    if top_count <= FREQUENT_APP_THRESHOLD:
        return []

    content = f"Frequent user of {top_app}"
    if add_fact(state, content, "Global", FREQUENT_APP_CONFIDENCE, "dwell", now):
        return [content]
    return []


def aggregate_generation_metrics(events: List[TelemetryEvent], state: BehavioralState) -> None:
    for event in events:
        if event.action != "completion":
            continue
        metadata = event.metadata or {}
        input_length = _number(metadata.get("inputLength"))
        output_length = _number(metadata.get("outputLength"))
        if input_length is not None:
            state.total_input_chars += input_length
        if output_length is not None:
            state.total_output_chars += output_length
        state.last_generation_timestamp = max(state.last_generation_timestamp, event.timestamp)


@dataclass(frozen=True)
class ConsolidationResult:
    user_id: str
    processed: int
    batch_score: int
    insights_added: List[str]
    facts_added: List[str]


def apply_batch(state: BehavioralState, events: List[TelemetryEvent], now: int, user_id: str = "") -> ConsolidationResult:
    """Pure in-memory consolidation of one batch into `state`."""
    batch_score = 0
    scored: List[TelemetryEvent] = []
    for event in events:
        score = score_event(event)
        batch_score += score
        scored.append(event.model_copy(update={"score": score}))

    state.session_score += batch_score
    state.request_count += sum(1 for e in scored if e.action == "completion")

    insights_added = analyze_patterns(scored, state, now)
    facts_added = consolidate_memories(scored, state, now)
    aggregate_generation_metrics(scored, state)

    return ConsolidationResult(
        user_id=user_id,
        processed=len(scored),
        batch_score=batch_score,
        insights_added=insights_added,
        facts_added=facts_added,
    )


class DreamingEngine:
    def __init__(self, store: DocumentStore, clock: Optional[Callable[[], int]] = None):
        self.store = store
        self.clock = clock or _now_ms

    def process_events(self, user_id: str, events: List[TelemetryEvent], now: Optional[int] = None) -> ConsolidationResult:
        """Consolidate a batch into the user's state in one transaction."""
        path = core_memory_path(user_id)

        def _consolidate(txn: Transaction) -> ConsolidationResult:
            # Fresh state on every attempt; a retried transaction must not see
            # mutations from the attempt that lost the race
            state = normalize_state(txn.get(path).data)
            result = apply_batch(state, events, self.clock() if now is None else now, user_id=user_id)
            txn.set(path, state.to_document(), merge=True)
            return result

        return self.store.run_transaction(_consolidate)

    def _mark(self, entry_path: str, fields: Dict[str, Any]) -> None:
        try:
            self.store.run_transaction(
                lambda txn: txn.set(entry_path, fields, merge=True) if txn.get(entry_path).exists else None
            )
        except Exception as exc:
            log_event("warning", "dreaming.mark_failed", entry_id=entry_path, extra={"error": exc})

    def process_queue_entry(self, entry_path: str) -> Optional[ConsolidationResult]:
        """
        Consolidate and acknowledge one queue entry.

        Returns:
            The result, or None when the entry is gone or unusable

        Raises:
            ConsolidationFailure when consolidation aborted; the entry stays
            in place for redelivery
        """
        snapshot = self.store.get(entry_path)
        if not snapshot.exists:
            log_event("info", "dreaming.entry_missing", entry_id=entry_path)
            consolidation_total.inc(labels={"outcome": "missing"})
            return None

        try:
            entry = QueueEntry.model_validate(snapshot.data)
        except PydanticValidationError:
            log_event("warning", "dreaming.invalid_entry", entry_id=entry_path, error_code="invalid_entry")
            self._mark(entry_path, {"processed": True, "lastError": "invalid_entry", "failedAt": self.clock()})
            consolidation_total.inc(labels={"outcome": "invalid"})
            return None

        log_event(
            "info",
            "dreaming.consolidating",
            user_id=entry.user_id,
            entry_id=entry_path,
            extra={"events": len(entry.events)},
        )
        try:
            result = self.process_events(entry.user_id, entry.events)
        except Exception as exc:
            log_event(
                "error",
                "dreaming.failed",
                user_id=entry.user_id,
                entry_id=entry_path,
                error_code="consolidation_failed",
                extra={"error": exc},
            )
            self._mark(entry_path, {"lastError": type(exc).__name__, "failedAt": self.clock()})
            consolidation_total.inc(labels={"outcome": "failed"})
            raise ConsolidationFailure("Consolidation failed") from exc

        try:
            self.store.delete(entry_path)
        except TransientStoreError as exc:
            # State is committed; the entry stays pending and is redelivered
            log_event(
                "warning",
                "dreaming.ack_failed",
                user_id=entry.user_id,
                entry_id=entry_path,
                error_code="store_unavailable",
                extra={"error": exc},
            )
            consolidation_total.inc(labels={"outcome": "ack_failed"})
            return result

        consolidation_total.inc(labels={"outcome": "acknowledged"})
        log_event(
            "info",
            "dreaming.acknowledged",
            user_id=entry.user_id,
            entry_id=entry_path,
            extra={"processed": result.processed, "batch_score": result.batch_score},
        )
        return result
