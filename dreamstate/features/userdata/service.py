"""
dreamstate/features/userdata/service.py

Writes to a user's data tree (`users/{uid}/{store}/{doc}`) and the
derived bookkeeping that follows each write:
- create -> shard counter +1, delete -> shard counter -1
- any change -> per-app storage stats (count delta, size delta)

The document write commits first; counters and stats are applied afterwards
and only for storage areas listed in STORE_APP_MAP.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dreamstate.core.documents import DocumentStore, Transaction
from dreamstate.core.errors import ValidationError
from dreamstate.features.counters import service as counters
from dreamstate.features.stats.service import update_app_storage_stats

logger = logging.getLogger("dreamstate")

RESERVED_STORES = frozenset({"system", "telemetry_queue"})
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


@dataclass(frozen=True)
class WriteResult:
    path: str
    before: Optional[Dict[str, Any]]
    after: Optional[Dict[str, Any]]

    @property
    def created(self) -> bool:
        return self.before is None and self.after is not None

    @property
    def deleted(self) -> bool:
        return self.before is not None and self.after is None


def _check_segment(value: str, label: str) -> None:
    if not _SEGMENT_RE.match(value or "") or value in (".", ".."):
        raise ValidationError(f"Invalid {label}")


def document_path(user_id: str, store_name: str, doc_id: str) -> str:
    _check_segment(store_name, "store name")
    _check_segment(doc_id, "document id")
    if store_name in RESERVED_STORES:
        raise ValidationError(f"Store '{store_name}' is reserved")
    return f"users/{user_id}/{store_name}/{doc_id}"


def _after_write(store: DocumentStore, user_id: str, store_name: str, doc_id: str, result: WriteResult) -> None:
    if result.created:
        counters.on_document_created(store, user_id, store_name, doc_id)
    elif result.deleted:
        counters.on_document_deleted(store, user_id, store_name, doc_id)

    if result.before is None and result.after is None:
        return
    update_app_storage_stats(store, user_id, store_name, result.before, result.after)


def save_document(store: DocumentStore, user_id: str, store_name: str, doc_id: str, data: Dict[str, Any]) -> WriteResult:
    """Create or replace a document in the user's data tree."""
    if not isinstance(data, dict):
        raise ValidationError("Document body must be a JSON object")
    path = document_path(user_id, store_name, doc_id)

    def _write(txn: Transaction) -> WriteResult:
        before = txn.get(path).data
        txn.set(path, data)
        return WriteResult(path=path, before=before, after=data)

    result = store.run_transaction(_write)
    _after_write(store, user_id, store_name, doc_id, result)
    logger.info(
        "userdata.saved",
        extra={"user_id": user_id, "path": path, "created": result.created},
    )
    return result


def delete_document(store: DocumentStore, user_id: str, store_name: str, doc_id: str) -> WriteResult:
    """Delete a document; deleting a missing document is a no-op."""
    path = document_path(user_id, store_name, doc_id)

    def _delete(txn: Transaction) -> WriteResult:
        before = txn.get(path).data
        if before is not None:
            txn.delete(path)
        return WriteResult(path=path, before=before, after=None)

    result = store.run_transaction(_delete)
    _after_write(store, user_id, store_name, doc_id, result)
    logger.info(
        "userdata.deleted",
        extra={"user_id": user_id, "path": path, "existed": result.deleted},
    )
    return result


def count_documents(store: DocumentStore, user_id: str, store_name: str) -> int:
    """Sharded counter value for a storage area."""
    _check_segment(store_name, "store name")
    return counters.get_count(store, user_id, store_name)
