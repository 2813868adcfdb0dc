"""
dreamstate/features/stats/service.py

Advisory aggregate statistics.

Ingest stats are cheap non-transactional increments bumped synchronously by
the gateway: they are approximate (a client retry double-counts) and are not
part of the behavioral state. Storage stats follow writes to a user's data
tree and are updated together in one transaction.
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dreamstate.core.documents import DocumentStore, Transaction
from dreamstate.models.telemetry import TelemetryEvent

ERROR_ACTIONS = {"error"}

# Raw storage-area name -> logical app
STORE_APP_MAP: Dict[str, str] = {
    "lyrics_ai_data": "lyrics_ai",
    "albums_ai_data": "albums_ai",
    "drama_tracker_data": "drama",
    "just_sell_it_data": "sell_it",
    "link_flipper_data": "link_flipper",
    "captions_ai_data": "captions_ai",
    "passwords_data": "passwords",
    "markup_ai_data": "markup_ai",
    "content_ai_data": "content_ai",
    "analytics_ai_data": "analytics_ai",
    "career_ai_data": "career_ai",
    "trends_ai_data": "trends_ai",
    "get_famous_data": "get_famous",
    "priority_ai_data": "priority_ai",
    "brand_kit_ai_data": "brand_kit_ai",
    "viral_plan_ai_data": "viral_plan_ai",
    "ai_playground_data": "ai_playground",
    "playlist_ai_data": "playlist_ai",
    "achievements_data": "achievements",
    "nsfw_ai_data": "nsfw_ai",
    "trap_ai_data": "trap_ai",
    "speech_ai_data": "speech_ai",
    "shorts_studio_data": "shorts_studio",
    "user_wallpapers_data": "wallpaper_ai",
    "system_settings": "settings",
}


def app_for_store(store_name: str) -> Optional[str]:
    return STORE_APP_MAP.get(store_name)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _stat_key(value: str) -> str:
    # App ids become document ids; slashes would change the path shape
    return value.replace("/", "_")


def record_ingest_stats(store: DocumentStore, user_id: str, events: List[TelemetryEvent], now: Optional[int] = None) -> None:
    """Bump daily, per-app and per-user counters for an accepted batch."""
    now = _now_ms() if now is None else now
    day = datetime.fromtimestamp(now / 1000, timezone.utc).date().isoformat()

    store.increment(f"stats_daily/{day}", {"eventCount": len(events)}, {"updatedAt": now})

    per_app: Dict[str, Dict[str, int]] = {}
    for event in events:
        counts = per_app.setdefault(event.app_id, {"eventCount": 0, "errorCount": 0})
        counts["eventCount"] += 1
        if event.action in ERROR_ACTIONS:
            counts["errorCount"] += 1
    for app_id, counts in per_app.items():
        store.increment(f"stats_apps/{_stat_key(app_id)}", counts, {"lastSeenAt": now})

    store.increment(f"stats_users/{user_id}", {"eventCount": len(events)}, {"uid": user_id, "lastSeenAt": now})


def estimate_size_bytes(data: Optional[Dict[str, Any]]) -> int:
    """UTF-8 size of the compact JSON encoding (0 for a missing document)."""
    if data is None:
        return 0
    return len(json.dumps(data, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8"))


def _bump(txn: Transaction, path: str, deltas: Dict[str, int], fields: Dict[str, Any]) -> None:
    current = txn.get(path).to_dict()
    for key, delta in deltas.items():
        value = current.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            value = 0
        current[key] = value + delta
    current.update(fields)
    txn.set(path, current)


def update_app_storage_stats(
    store: DocumentStore,
    user_id: str,
    store_name: str,
    before: Optional[Dict[str, Any]],
    after: Optional[Dict[str, Any]],
    now: Optional[int] = None,
) -> bool:
    """
    Apply one document write to the user/app, app-global and user summary
    storage stats. Unknown storage areas are ignored.

    Returns:
        True if stats were updated
    """
    app_id = app_for_store(store_name)
    if not app_id or not user_id:
        return False

    now = _now_ms() if now is None else now
    delta_bytes = estimate_size_bytes(after) - estimate_size_bytes(before)
    delta_count = 0
    if before is None and after is not None:
        delta_count = 1
    elif before is not None and after is None:
        delta_count = -1

    def _apply(txn: Transaction) -> None:
        fields = {"lastActiveAt": now, "updatedAt": now}
        deltas = {"count": delta_count, "sizeBytes": delta_bytes}
        _bump(txn, f"stats_user_apps/{user_id}/apps/{app_id}", deltas, fields)
        _bump(txn, f"stats_app_storage/{app_id}", deltas, fields)
        _bump(
            txn,
            f"stats_users/{user_id}",
            {"totalCount": delta_count, "totalSizeBytes": delta_bytes},
            {"uid": user_id, **fields},
        )

    store.run_transaction(_apply)
    return True
