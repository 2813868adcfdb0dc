import dreamstate.api.health as health_api


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_memory_mode(client, monkeypatch):
    monkeypatch.setattr(health_api, "get_database_url", lambda: None)

    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "store": "memory"}


def test_readyz_ok_with_mocked_db(client, monkeypatch):
    monkeypatch.setattr(health_api, "get_database_url", lambda: "postgresql://u:p@db:5432/dreamstate")
    monkeypatch.setattr(health_api, "check_connection", lambda: True)

    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("store") == "sql"


def test_readyz_handles_db_down(client, monkeypatch):
    monkeypatch.setattr(health_api, "get_database_url", lambda: "postgresql://u:p@db:5432/dreamstate")
    monkeypatch.setattr(health_api, "check_connection", lambda: False)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")
    assert "u:p" not in resp.text


def test_metrics_endpoint_exports_prometheus_text(client, auth_headers):
    client.post(
        "/api/telemetry/ingest",
        json={"events": [{"appId": "X", "action": "copy", "timestamp": 1_700_000_000_000}]},
        headers=auth_headers("u1"),
    )
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert "# TYPE http_requests_total counter" in resp.text
    assert 'telemetry_events_accepted_total{surface="simple"} 1.0' in resp.text
