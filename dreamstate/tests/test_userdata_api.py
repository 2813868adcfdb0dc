"""
dreamstate/tests/test_userdata_api.py

Tests for user data tree writes and the counters/stats that follow them.
"""

import pytest

from dreamstate.core.errors import ValidationError
from dreamstate.features.stats.service import estimate_size_bytes, update_app_storage_stats
from dreamstate.features.userdata.service import delete_document, document_path, save_document

TRACKED = "lyrics_ai_data"


class TestService:
    def test_create_update_delete_bookkeeping(self, store):
        first = save_document(store, "u1", TRACKED, "song-1", {"title": "a"})
        assert first.created
        save_document(store, "u1", TRACKED, "song-1", {"title": "abc"})
        save_document(store, "u1", TRACKED, "song-2", {"title": "b"})

        stats = store.get("stats_user_apps/u1/apps/lyrics_ai").data
        assert stats["count"] == 2
        assert stats["sizeBytes"] == estimate_size_bytes({"title": "abc"}) + estimate_size_bytes({"title": "b"})
        assert store.get("stats_app_storage/lyrics_ai").data["count"] == 2
        assert store.get("stats_users/u1").data["totalCount"] == 2

        removed = delete_document(store, "u1", TRACKED, "song-1")
        assert removed.deleted
        assert store.get("stats_user_apps/u1/apps/lyrics_ai").data["count"] == 1
        assert store.get("stats_user_apps/u1/apps/lyrics_ai").data["sizeBytes"] == estimate_size_bytes({"title": "b"})

    def test_deleting_missing_document_changes_nothing(self, store):
        result = delete_document(store, "u1", TRACKED, "nope")
        assert result.deleted is False
        assert store.get("stats_user_apps/u1/apps/lyrics_ai").exists is False

    def test_untracked_store_skips_counters_and_stats(self, store):
        save_document(store, "u1", "scratch", "n1", {"x": 1})
        assert store.get("users/u1/scratch/n1").data == {"x": 1}
        assert store.list_collection_group("shards") == []
        assert store.get("stats_users/u1").exists is False

    @pytest.mark.parametrize("store_name", ["system", "telemetry_queue"])
    def test_reserved_stores_rejected(self, store_name):
        with pytest.raises(ValidationError):
            document_path("u1", store_name, "core_memory")

    @pytest.mark.parametrize("doc_id", ["..", "a/b", "", "x" * 200])
    def test_unsafe_ids_rejected(self, doc_id):
        with pytest.raises(ValidationError):
            document_path("u1", TRACKED, doc_id)

    def test_unknown_store_stats_ignored(self, store):
        assert update_app_storage_stats(store, "u1", "unknown_data", None, {"a": 1}) is False


class TestApi:
    def test_put_count_delete(self, client, auth_headers):
        headers = auth_headers("u1")
        resp = client.put(f"/v1/me/stores/{TRACKED}/song-1", json={"title": "a"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "id": "song-1", "created": True}
        client.put(f"/v1/me/stores/{TRACKED}/song-2", json={"title": "b"}, headers=headers)

        assert client.get(f"/v1/me/stores/{TRACKED}/count", headers=headers).json()["count"] == 2
        assert client.get(f"/v1/me/stores/{TRACKED}/count", headers=auth_headers("u2")).json()["count"] == 0

        resp = client.delete(f"/v1/me/stores/{TRACKED}/song-1", headers=headers)
        assert resp.json()["deleted"] is True
        assert client.get(f"/v1/me/stores/{TRACKED}/count", headers=headers).json()["count"] == 1

    def test_reserved_store_via_api_is_400(self, client, auth_headers):
        resp = client.put("/v1/me/stores/system/core_memory", json={"sessionScore": 1e9}, headers=auth_headers("u1"))
        assert resp.status_code == 400

    def test_requires_auth(self, client):
        assert client.put(f"/v1/me/stores/{TRACKED}/song-1", json={}).status_code == 401
