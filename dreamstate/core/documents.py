"""
dreamstate/core/documents.py

Transactional JSON document store.

Documents live at slash-separated paths with an even number of segments
(`collection/doc[/collection/doc...]`), e.g. `users/u1/system/core_memory`.

Two implementations share one interface:
- InMemoryDocumentStore: default when DATABASE_URL is unset (dev, tests)
- SqlDocumentStore: SQLAlchemy Core over the `documents` table

Transactions are optimistic. Reads record the version they saw, commit
re-validates those versions and the whole callback is retried on conflict.
After `max_attempts` conflicts a TransientStoreError is raised and nothing
has been written.
"""

import copy
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
from uuid import uuid4

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from dreamstate.core.config import settings
from dreamstate.core.errors import TransientStoreError


logger = logging.getLogger("dreamstate")

T = TypeVar("T")


class TransactionConflict(Exception):
    """A document read inside a transaction changed before commit."""


def split_path(path: str) -> Tuple[str, str]:
    """Split a document path into (collection path, document id)."""
    segments = path.split("/")
    if len(segments) < 2 or len(segments) % 2 != 0 or any(not s for s in segments):
        raise ValueError(f"Invalid document path: {path!r}")
    return "/".join(segments[:-1]), segments[-1]


def collection_id_of(collection: str) -> str:
    return collection.rsplit("/", 1)[-1]


def merge_data(base: Optional[Dict[str, Any]], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge-write: top-level fields in `updates` replace those in `base`."""
    merged = dict(base or {})
    merged.update(updates)
    return merged


def _apply_increments(data: Optional[Dict[str, Any]], deltas: Dict[str, float], fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    result = dict(data or {})
    for key, delta in deltas.items():
        current = result.get(key)
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            current = 0
        result[key] = current + delta
    if fields:
        result.update(fields)
    return result


@dataclass(frozen=True)
class DocumentSnapshot:
    path: str
    data: Optional[Dict[str, Any]]
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy of the document data ({} when missing)."""
        return copy.deepcopy(self.data) if self.data is not None else {}


class Transaction:
    """Buffered read-modify-write unit; created by DocumentStore.run_transaction."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self.reads: Dict[str, int] = {}
        self.writes: Dict[str, Optional[Dict[str, Any]]] = {}

    def get(self, path: str) -> DocumentSnapshot:
        split_path(path)
        if path in self.writes:
            # Read-your-writes within the same transaction
            return DocumentSnapshot(path, copy.deepcopy(self.writes[path]), self.reads.get(path, 0))
        snapshot = self._store.get(path)
        self.reads.setdefault(path, snapshot.version)
        return snapshot

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        split_path(path)
        if merge:
            data = merge_data(self.get(path).data, data)
        self.writes[path] = copy.deepcopy(data)

    def delete(self, path: str) -> None:
        split_path(path)
        self.writes[path] = None


class DocumentStore(ABC):
    """Common interface; subclasses implement raw reads, commit and listings."""

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or settings.STORE_TRANSACTION_ATTEMPTS

    @abstractmethod
    def get(self, path: str) -> DocumentSnapshot:
        ...

    @abstractmethod
    def _commit(self, reads: Dict[str, int], writes: Dict[str, Optional[Dict[str, Any]]]) -> None:
        """Validate read versions and apply writes atomically or raise TransactionConflict."""

    @abstractmethod
    def list_documents(self, collection: str, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        ...

    @abstractmethod
    def list_collection_group(self, collection_id: str, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        """All documents whose parent collection is named `collection_id`, at any depth."""

    @abstractmethod
    def increment(self, path: str, deltas: Dict[str, float], fields: Optional[Dict[str, Any]] = None) -> None:
        """Atomically add `deltas` to numeric fields (missing = 0) and set `fields`."""

    def run_transaction(self, fn: Callable[[Transaction], T], max_attempts: Optional[int] = None) -> T:
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            txn = Transaction(self)
            result = fn(txn)
            try:
                self._commit(txn.reads, txn.writes)
                return result
            except TransactionConflict as exc:
                logger.info(f"store.transaction.conflict attempt={attempt} path={exc}")
        raise TransientStoreError("Transaction could not be committed")

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        self.run_transaction(lambda txn: txn.set(path, data, merge=merge))

    def delete(self, path: str) -> None:
        self.run_transaction(lambda txn: txn.delete(path))

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Create a document with a generated id; returns its path."""
        path = f"{collection}/{uuid4().hex}"
        split_path(path)
        self.set(path, data)
        return path

    def count(self, collection: str) -> int:
        return len(self.list_documents(collection))


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store. Versions come from one global sequence so a deleted
    and re-created document never reuses a version.
    """

    def __init__(self, max_attempts: Optional[int] = None):
        super().__init__(max_attempts)
        self._docs: Dict[str, Tuple[Dict[str, Any], int]] = {}
        self._sequence = 0
        self._lock = threading.RLock()

    def _next_version(self) -> int:
        self._sequence += 1
        return self._sequence

    def get(self, path: str) -> DocumentSnapshot:
        split_path(path)
        with self._lock:
            entry = self._docs.get(path)
            if entry is None:
                return DocumentSnapshot(path, None, 0)
            return DocumentSnapshot(path, copy.deepcopy(entry[0]), entry[1])

    def _commit(self, reads, writes) -> None:
        with self._lock:
            for path, version in reads.items():
                entry = self._docs.get(path)
                current = entry[1] if entry else 0
                if current != version:
                    raise TransactionConflict(path)
            for path, data in writes.items():
                if data is None:
                    self._docs.pop(path, None)
                else:
                    self._docs[path] = (copy.deepcopy(data), self._next_version())

    def list_documents(self, collection: str, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        with self._lock:
            paths = sorted(p for p in self._docs if split_path(p)[0] == collection)
            if limit is not None:
                paths = paths[:limit]
            return [DocumentSnapshot(p, copy.deepcopy(self._docs[p][0]), self._docs[p][1]) for p in paths]

    def list_collection_group(self, collection_id: str, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        with self._lock:
            paths = sorted(p for p in self._docs if collection_id_of(split_path(p)[0]) == collection_id)
            if limit is not None:
                paths = paths[:limit]
            return [DocumentSnapshot(p, copy.deepcopy(self._docs[p][0]), self._docs[p][1]) for p in paths]

    def increment(self, path: str, deltas: Dict[str, float], fields: Optional[Dict[str, Any]] = None) -> None:
        split_path(path)
        with self._lock:
            entry = self._docs.get(path)
            data = _apply_increments(entry[0] if entry else None, deltas, fields)
            self._docs[path] = (data, self._next_version())

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._lock:
            self._docs.clear()


class SqlDocumentStore(DocumentStore):
    """
    SQLAlchemy-backed store (PostgreSQL in production, SQLite in tests).

    Writes to documents that were read are conditional on the version seen;
    inserts of documents read as missing rely on the primary key to detect
    a concurrent creator.
    """

    def __init__(self, engine=None, max_attempts: Optional[int] = None):
        super().__init__(max_attempts)
        from dreamstate.core.database import documents, get_engine
        self._engine = engine or get_engine()
        self._table = documents

    def _row_to_snapshot(self, row) -> DocumentSnapshot:
        return DocumentSnapshot(row.path, dict(row.data) if row.data is not None else {}, row.version)

    def get(self, path: str) -> DocumentSnapshot:
        split_path(path)
        t = self._table
        try:
            with self._engine.connect() as conn:
                row = conn.execute(select(t.c.path, t.c.data, t.c.version).where(t.c.path == path)).first()
        except SQLAlchemyError as exc:
            logger.error(f"store.read.failed path={path}: {exc}")
            raise TransientStoreError("Document store unavailable") from exc
        if row is None:
            return DocumentSnapshot(path, None, 0)
        return self._row_to_snapshot(row)

    def _commit(self, reads, writes) -> None:
        t = self._table
        try:
            with self._engine.begin() as conn:
                for path, version in reads.items():
                    if path in writes:
                        continue
                    row = conn.execute(
                        select(t.c.version).where(t.c.path == path).with_for_update()
                    ).first()
                    if (row.version if row else 0) != version:
                        raise TransactionConflict(path)

                for path, data in writes.items():
                    self._write_row(conn, path, data, reads.get(path))
        except TransactionConflict:
            raise
        except IntegrityError as exc:
            raise TransactionConflict(str(exc.params)) from exc
        except SQLAlchemyError as exc:
            logger.error(f"store.commit.failed: {exc}")
            raise TransientStoreError("Document store unavailable") from exc

    def _write_row(self, conn, path: str, data: Optional[Dict[str, Any]], read_version: Optional[int]) -> None:
        t = self._table
        collection, _ = split_path(path)

        if data is None:
            stmt = delete(t).where(t.c.path == path)
            if read_version:
                stmt = stmt.where(t.c.version == read_version)
                if conn.execute(stmt).rowcount != 1:
                    raise TransactionConflict(path)
            else:
                conn.execute(stmt)
            return

        if read_version == 0:
            # Read as missing: a concurrent insert trips the primary key
            conn.execute(insert(t).values(
                path=path, collection=collection, collection_id=collection_id_of(collection), data=data, version=1,
            ))
            return

        stmt = update(t).where(t.c.path == path).values(data=data, version=t.c.version + 1)
        if read_version is not None:
            stmt = stmt.where(t.c.version == read_version)
            if conn.execute(stmt).rowcount != 1:
                raise TransactionConflict(path)
            return

        # Blind write: update in place or create
        if conn.execute(stmt).rowcount == 0:
            conn.execute(insert(t).values(
                path=path, collection=collection, collection_id=collection_id_of(collection), data=data, version=1,
            ))

    def _list(self, where, limit: Optional[int]) -> List[DocumentSnapshot]:
        t = self._table
        query = select(t.c.path, t.c.data, t.c.version).where(where).order_by(t.c.path)
        if limit is not None:
            query = query.limit(limit)
        try:
            with self._engine.connect() as conn:
                return [self._row_to_snapshot(row) for row in conn.execute(query)]
        except SQLAlchemyError as exc:
            raise TransientStoreError("Document store unavailable") from exc

    def list_documents(self, collection: str, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        return self._list(self._table.c.collection == collection, limit)

    def list_collection_group(self, collection_id: str, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        return self._list(self._table.c.collection_id == collection_id, limit)

    def increment(self, path: str, deltas: Dict[str, float], fields: Optional[Dict[str, Any]] = None) -> None:
        def _increment(txn: Transaction) -> None:
            snapshot = txn.get(path)
            txn.set(path, _apply_increments(snapshot.data, deltas, fields))

        # Hot documents contend; give increments a wider retry budget
        self.run_transaction(_increment, max_attempts=self.max_attempts * 4)

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with self._engine.begin() as conn:
            conn.execute(delete(self._table))


# ============================================================================
# Store selection
# ============================================================================

def get_document_store() -> DocumentStore:
    """
    Get the appropriate document store implementation.

    - SQL store when DATABASE_URL (or TEST_DATABASE_URL) is configured
    - In-memory otherwise
    """
    from dreamstate.core.database import get_database_url, get_engine, create_all_tables

    if get_database_url() or os.getenv("DATABASE_URL"):
        engine = get_engine()
        create_all_tables(engine)
        return SqlDocumentStore(engine)

    logger.info("DATABASE_URL not configured, using in-memory document store")
    return InMemoryDocumentStore()


# Global store instance (lazy initialization)
_store_instance: Optional[DocumentStore] = None
_store_lock = threading.Lock()


def get_store() -> DocumentStore:
    """
    Get the singleton document store instance.

    Also used as a FastAPI dependency so tests can override it.
    """
    global _store_instance
    with _store_lock:
        if _store_instance is None:
            _store_instance = get_document_store()
        return _store_instance


def reset_store() -> None:
    """
    Reset the store instance.

    FOR TESTING ONLY - forces re-initialization on next get_store() call.
    """
    global _store_instance
    with _store_lock:
        _store_instance = None
