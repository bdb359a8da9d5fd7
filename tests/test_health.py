from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from ratewarden.app.core.config import Settings
from ratewarden.app.exceptions import BackendUnavailableError
from ratewarden.app.main import create_app


def make_settings(monkeypatch, **env) -> Settings:
    monkeypatch.setenv("REDIS_ENABLED", "false")
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    return Settings(_env_file=None)


def test_health(monkeypatch):
    with TestClient(create_app(make_settings(monkeypatch))) as client:
        resp = client.get("/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["components"]["backend"]["type"] == "memory"
    assert data["components"]["backend"]["stats"] == {"total_identities": 0, "total_requests": 0}


def test_health_is_exempt_from_rate_limiting(monkeypatch):
    app = create_app(make_settings(monkeypatch, TIERS="free=1,guest=1"))
    with TestClient(app) as client:
        for _ in range(5):
            resp = client.get("/health")
            assert resp.status_code == 200
            assert "RateLimit-Limit" not in resp.headers


def test_ping_is_rate_limited(monkeypatch):
    app = create_app(make_settings(monkeypatch, TIERS="free=5,guest=1"))
    with TestClient(app) as client:
        first = client.get("/api/ping")
        second = client.get("/api/ping")
        authed = client.get("/api/ping", headers={"Authorization": "Bearer tok"})

    assert first.status_code == 200
    assert first.json() == {"status": "ok", "tier": "guest", "identity_source": "network", "remaining": 0}
    assert second.status_code == 429
    assert second.json()["tier"] == "guest"
    assert authed.status_code == 200
    assert authed.json()["tier"] == "free"
    assert authed.headers["RateLimit-Remaining"] == "4"


def test_health_degraded_when_backend_fails(monkeypatch):
    app = create_app(make_settings(monkeypatch))
    with TestClient(app) as client:
        guard = app.state.rate_guard
        guard.backend.is_ready = AsyncMock(side_effect=BackendUnavailableError("ping", "down"))
        resp = client.get("/health")

    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["backend"]["status"] == "error"
    assert "ping" in data["components"]["backend"]["error"]


def test_guard_closed_on_shutdown(monkeypatch):
    app = create_app(make_settings(monkeypatch))
    with TestClient(app):
        guard = app.state.rate_guard
        assert guard.sweeper.running is True

    assert guard.sweeper.running is False
