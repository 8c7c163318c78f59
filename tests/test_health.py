import time


def test_health_reports_connected_services(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["services"] == {"primaryStore": "connected", "cacheStore": "connected"}
    assert body["uptime"] >= 0
    assert body["timestamp"]
    assert response.headers["Cache-Control"].startswith("no-store")


def test_health_degrades_when_a_check_fails(client, runtime, monkeypatch):
    def _down():
        raise ConnectionError("connection refused")

    monkeypatch.setattr(runtime.cache, "verify_connection", _down)
    body = client.get("/health").json()

    assert body["status"] == "degraded"
    assert body["services"]["cacheStore"] == "disconnected"
    assert body["services"]["primaryStore"] == "connected"


def test_health_check_is_bounded(client, runtime, monkeypatch):
    from sakalsense import app as app_module

    monkeypatch.setattr(app_module, "HEALTH_CHECK_TIMEOUT_SECONDS", 0.05)
    monkeypatch.setattr(runtime.store, "verify_connection", lambda: time.sleep(0.5))
    body = client.get("/health").json()

    assert body["status"] == "degraded"
    assert body["services"]["primaryStore"] == "disconnected"
