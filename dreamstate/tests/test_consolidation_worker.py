"""Tests for the consolidation sweep worker and dispatch modes."""

from unittest.mock import MagicMock

import pytest

from dreamstate import queue_client
from dreamstate.core.errors import TransientStoreError
from dreamstate.core.metrics import queue_pending_entries
from dreamstate.features.consolidation.engine import core_memory_path
from dreamstate.models.telemetry import QueueEntry, TelemetryEvent, queue_collection
from dreamstate.workers import consolidation_worker
from dreamstate.workers.consolidation_worker import pending_entries, sweep

T = 1_700_000_000_000


def enqueue(store, uid, action="copy"):
    entry = QueueEntry(
        user_id=uid,
        events=[TelemetryEvent(app_id="X", action=action, timestamp=T)],
        client_timestamp=T,
        server_timestamp=T,
    )
    return store.add(queue_collection(uid), entry.to_document())


class TestSweep:
    def test_sweep_processes_every_users_queue(self, store):
        enqueue(store, "u1")
        enqueue(store, "u1", action="download")
        enqueue(store, "u2")

        assert sweep(store) == 3
        assert store.get(core_memory_path("u1")).data["sessionScore"] == 30
        assert store.get(core_memory_path("u2")).data["sessionScore"] == 10
        assert store.list_collection_group("telemetry_queue") == []

    def test_processed_entries_are_skipped(self, store):
        store.set("users/u1/telemetry_queue/bad", {"userId": "u1", "events": [], "processed": True})
        enqueue(store, "u1")
        assert len(pending_entries(store)) == 1
        assert queue_pending_entries.value() == 1
        assert sweep(store) == 1
        # Poison entry stays for inspection
        assert store.get("users/u1/telemetry_queue/bad").exists

    def test_failed_entry_stays_for_next_sweep(self, store, monkeypatch):
        path = enqueue(store, "u1")
        original = consolidation_worker.DreamingEngine.process_events

        def _fail_once(self, *args, **kwargs):
            monkeypatch.setattr(consolidation_worker.DreamingEngine, "process_events", original)
            raise RuntimeError("transient")

        monkeypatch.setattr(consolidation_worker.DreamingEngine, "process_events", _fail_once)
        assert sweep(store) == 0
        assert store.get(path).data["lastError"] == "RuntimeError"

        assert sweep(store) == 1
        assert store.get(path).exists is False

    def test_failed_acknowledgement_does_not_abort_sweep(self, store, monkeypatch):
        stuck = enqueue(store, "u1")
        enqueue(store, "u2")
        real_delete = store.delete

        def _delete(path):
            if path == stuck:
                raise TransientStoreError("Transaction could not be committed")
            real_delete(path)

        monkeypatch.setattr(store, "delete", _delete)
        assert sweep(store) == 2
        assert store.get(core_memory_path("u2")).data["sessionScore"] == 10
        # Redelivered on the next sweep
        assert pending_entries(store) == [stuck]

    def test_unreadable_entry_is_skipped(self, store, monkeypatch):
        broken = enqueue(store, "u1")
        enqueue(store, "u2")
        real_get = store.get

        def _get(path):
            if path == broken:
                raise TransientStoreError("Document store unavailable")
            return real_get(path)

        monkeypatch.setattr(store, "get", _get)
        assert sweep(store) == 1
        assert store.get(core_memory_path("u2")).exists

    def test_limit_bounds_batch(self, store):
        for _ in range(5):
            enqueue(store, "u1")
        assert sweep(store, limit=2) == 2
        assert len(pending_entries(store)) == 3


class TestDispatch:
    def test_worker_mode_does_nothing(self, store):
        path = enqueue(store, "u1")
        assert queue_client.dispatch_consolidation(path, store=store, mode="worker") == "worker"
        assert store.get(path).exists

    def test_inline_mode_without_background_tasks_runs_now(self, store):
        path = enqueue(store, "u1")
        assert queue_client.dispatch_consolidation(path, store=store, mode="inline") == "inline"
        assert store.get(path).exists is False

    def test_inline_failure_is_logged_not_raised(self, store, monkeypatch, caplog):
        path = enqueue(store, "u1")

        def _boom(self, *args, **kwargs):
            raise RuntimeError("down")

        monkeypatch.setattr(consolidation_worker.DreamingEngine, "process_events", _boom)
        queue_client.run_consolidation(path, store)
        assert store.get(path).exists
        assert any(r.getMessage() == "dispatch.inline_failed" for r in caplog.records)

    def test_rq_mode_enqueues_job(self, monkeypatch):
        fake_queue = MagicMock()
        fake_queue.enqueue.return_value.id = "job-1"
        monkeypatch.setattr(queue_client, "get_queue", lambda: fake_queue)

        assert queue_client.dispatch_consolidation("users/u1/telemetry_queue/e1", mode="rq") == "rq"
        args, kwargs = fake_queue.enqueue.call_args
        assert args == (queue_client.CONSOLIDATION_JOB, "users/u1/telemetry_queue/e1")
        assert kwargs["job_timeout"] == "5m"


@pytest.mark.parametrize("argv", [["--once"], ["--once", "--limit", "10"]])
def test_cli_once(monkeypatch, store, argv):
    enqueue(store, "u1")
    monkeypatch.setattr(consolidation_worker, "get_store", lambda: store)
    monkeypatch.setattr("sys.argv", ["consolidation_worker", *argv])
    consolidation_worker.main()
    assert store.list_collection_group("telemetry_queue") == []
