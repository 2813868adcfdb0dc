"""Tests for reading and patching per-user behavioral state."""

from dreamstate.features.consolidation.engine import core_memory_path


def test_fresh_user_gets_defaults(client, auth_headers):
    resp = client.get("/v1/me/state", headers=auth_headers("u1"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["userArchetype"] == "General User"
    assert body["learnedFacts"] == []
    assert body["telemetryEnabled"] is True
    assert body["credits"]["count"] == 20


def test_patch_client_owned_fields(client, store, auth_headers):
    store.set(core_memory_path("u1"), {"sessionScore": 40, "requestCount": 3})
    resp = client.patch(
        "/v1/me/state",
        json={"userArchetype": "Producer", "telemetryEnabled": False, "keywordWeights": {"trap": 1.5}},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 200
    stored = store.get(core_memory_path("u1")).data
    assert stored["userArchetype"] == "Producer"
    assert stored["telemetryEnabled"] is False
    assert stored["keywordWeights"] == {"trap": 1.5}
    # Engine-owned accumulators untouched
    assert stored["sessionScore"] == 40
    assert stored["requestCount"] == 3


def test_engine_owned_fields_are_not_writable(client, store, auth_headers):
    resp = client.patch("/v1/me/state", json={"sessionScore": 1_000_000}, headers=auth_headers("u1"))
    assert resp.status_code == 422
    assert store.get(core_memory_path("u1")).exists is False


def test_invalid_prompt_variant_rejected(client, auth_headers):
    resp = client.patch("/v1/me/state", json={"activePromptVariant": "C"}, headers=auth_headers("u1"))
    assert resp.status_code == 422


def test_state_requires_auth(client):
    assert client.get("/v1/me/state").status_code == 401
