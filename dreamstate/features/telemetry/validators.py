"""
dreamstate/features/telemetry/validators.py

Pure validation of incoming telemetry batches. No I/O.

Any malformed event rejects the whole batch: callers get either a complete
list of TelemetryEvent or an EventValidationError carrying a reason code.
"""

import math
from typing import Any, Dict, FrozenSet, List, Optional

from dreamstate.core.errors import EventValidationError
from dreamstate.models.telemetry import TelemetryEvent

MAX_BATCH_EVENTS = 50
MAX_METADATA_KEYS = 20
MAX_METADATA_STRING = 120
MAX_METADATA_ARRAY = 10
MAX_APP_ID_LENGTH = 120

METADATA_KEY_DENYLIST = ("password", "secret", "clipboard", "email", "content")

# Generic UI telemetry
SIMPLE_ACTIONS: FrozenSet[str] = frozenset({
    "open",
    "open_app",
    "generate",
    "regenerate",
    "edit",
    "copy",
    "download",
    "dwell",
    "abandon",
    "install_app",
    "sys_event",
})

# Scoring surface adds AI-generation outcomes
SCORING_ACTIONS: FrozenSet[str] = SIMPLE_ACTIONS | frozenset({
    "success",
    "dislike",
    "completion",
    "error",
    "install",
})

VOCABULARIES: Dict[str, FrozenSet[str]] = {
    "simple": SIMPLE_ACTIONS,
    "scoring": SCORING_ACTIONS,
}


def is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # int beyond float range
        return False


def _is_primitive(value: Any) -> bool:
    if value is None or isinstance(value, (bool, str)):
        return True
    return is_finite_number(value)


_DROP = object()


def _bound_value(value: Any) -> Any:
    """Truncate a metadata value; returns _DROP for values that cannot be kept."""
    if isinstance(value, str):
        return value[:MAX_METADATA_STRING]
    if isinstance(value, list):
        kept = [v[:MAX_METADATA_STRING] if isinstance(v, str) else v for v in value if _is_primitive(v)]
        return kept[:MAX_METADATA_ARRAY]
    if _is_primitive(value):
        return value
    return _DROP


def is_denied_metadata_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in METADATA_KEY_DENYLIST)


def sanitize_metadata(raw: Any) -> Dict[str, Any]:
    """Bound a metadata map or raise EventValidationError."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise EventValidationError("invalid_metadata", "Event metadata must be an object")
    if len(raw) > MAX_METADATA_KEYS:
        raise EventValidationError("too_many_metadata_keys", f"Event metadata may have at most {MAX_METADATA_KEYS} keys")

    bounded: Dict[str, Any] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            raise EventValidationError("invalid_metadata", "Event metadata keys must be strings")
        if is_denied_metadata_key(key):
            raise EventValidationError("forbidden_metadata_key", "Event metadata contains a forbidden key")
        kept = _bound_value(value)
        if kept is not _DROP:
            bounded[key] = kept
    return bounded


def validate_event(raw: Any, actions: FrozenSet[str]) -> TelemetryEvent:
    if not isinstance(raw, dict):
        raise EventValidationError("invalid_event", "Each event must be an object")

    app_id = raw.get("appId")
    if not isinstance(app_id, str) or not app_id.strip() or len(app_id) > MAX_APP_ID_LENGTH:
        raise EventValidationError("invalid_app_id", "Event appId must be a non-empty string")

    action = raw.get("action", raw.get("eventType"))
    if not isinstance(action, str) or action not in actions:
        raise EventValidationError("invalid_action", "Event action is not allowed")

    timestamp = raw.get("timestamp")
    if not is_finite_number(timestamp):
        raise EventValidationError("invalid_timestamp", "Event timestamp must be a finite number")

    # Client-supplied score is discarded; consolidation computes it
    return TelemetryEvent(
        app_id=app_id,
        action=action,
        timestamp=timestamp,
        metadata=sanitize_metadata(raw.get("metadata")),
    )


def validate_batch(raw: Any, vocabulary: str = "simple", actions: Optional[FrozenSet[str]] = None) -> List[TelemetryEvent]:
    """
    Validate a raw batch against a surface vocabulary.

    Args:
        raw: Decoded `events` value from the request body
        vocabulary: "simple" or "scoring"
        actions: Explicit allow-list (overrides `vocabulary`)

    Returns:
        Validated events in input order

    Raises:
        EventValidationError with `reason` set
    """
    allowed = actions if actions is not None else VOCABULARIES[vocabulary]

    if not isinstance(raw, list):
        raise EventValidationError("not_array", "'events' must be an array")
    if not raw:
        raise EventValidationError("empty_batch", "'events' must not be empty")
    if len(raw) > MAX_BATCH_EVENTS:
        raise EventValidationError("batch_too_large", f"At most {MAX_BATCH_EVENTS} events per batch")

    return [validate_event(item, allowed) for item in raw]
