"""
dreamstate/features/counters/service.py

Sharded per-user/per-store document counters.

Each logical counter is split over COUNTER_SHARDS documents. A document id
always maps to the same shard, so repeated operations on one item serialize
through one shard while distinct items spread their writes. Reading the
logical value fans out over every shard.

The shard hash must stay byte-for-byte compatible with existing data:
a 32-bit signed polynomial hash (h = h*31 + unit) over UTF-16 code units.
"""

import logging
from typing import Optional

from dreamstate.core.documents import DocumentStore
from dreamstate.core.metrics import counter_shard_updates_total
from dreamstate.features.stats.service import app_for_store

logger = logging.getLogger("dreamstate")

COUNTER_SHARDS = 20


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def shard_id_for(doc_id: str, shards: int = COUNTER_SHARDS) -> int:
    h = 0
    encoded = doc_id.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = _to_int32(h * 31 + unit)
    return abs(h) % shards


def shard_collection(user_id: str, store_name: str) -> str:
    return f"store_counters/{user_id}/stores/{store_name}/shards"


def shard_path(user_id: str, store_name: str, doc_id: str) -> str:
    return f"{shard_collection(user_id, store_name)}/{shard_id_for(doc_id)}"


def increment(store: DocumentStore, user_id: str, store_name: str, doc_id: str, delta: int) -> int:
    """Add `delta` to the shard owning `doc_id`; returns the shard id."""
    shard_id = shard_id_for(doc_id)
    store.increment(
        f"{shard_collection(user_id, store_name)}/{shard_id}",
        {"count": delta},
        {"shardId": shard_id},
    )
    counter_shard_updates_total.inc(labels={"store": store_name})
    return shard_id


def get_count(store: DocumentStore, user_id: str, store_name: str) -> int:
    """Logical counter value: the sum over every shard."""
    total = 0
    for shard_id in range(COUNTER_SHARDS):
        data = store.get(f"{shard_collection(user_id, store_name)}/{shard_id}").data or {}
        count = data.get("count", 0)
        if isinstance(count, (int, float)) and not isinstance(count, bool):
            total += int(count)
    return total


def _tracked(user_id: Optional[str], store_name: Optional[str], doc_id: Optional[str]) -> bool:
    if not user_id or not store_name or not doc_id:
        return False
    if app_for_store(store_name) is None:
        logger.debug(f"counters.untracked_store store={store_name}")
        return False
    return True


def on_document_created(store: DocumentStore, user_id: str, store_name: str, doc_id: str) -> bool:
    if not _tracked(user_id, store_name, doc_id):
        return False
    increment(store, user_id, store_name, doc_id, 1)
    return True


def on_document_deleted(store: DocumentStore, user_id: str, store_name: str, doc_id: str) -> bool:
    if not _tracked(user_id, store_name, doc_id):
        return False
    increment(store, user_id, store_name, doc_id, -1)
    return True
