"""
test_api.py — HTTP surface: notify routes, channel status and health probes.

The application lifespan (database + real providers) is not started; the
engine and database health check are swapped in through dependency overrides.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from backend.app.alerts.notification_service import NotificationEngine
from backend.app.alerts.stats import RetryConfig
from backend.app.alerts.stores import InMemoryAlertStore, InMemoryUserStore
from backend.app.api.deps import get_db_probe, get_notification_engine
from backend.app.main import app

from conftest import BENGALURU, _make_alert, _make_user

ALERT_ID = "ALT-1719826200000-TEST00001"


async def _db_up() -> None:
    return None


async def _db_down() -> None:
    raise ConnectionError("could not connect to server")


@pytest.fixture
def engine(sms_provider, email_provider):
    users = InMemoryUserStore([
        _make_user("near", sms={"enabled": True, "alerts": True}),
        _make_user("vol", role="volunteer", location=BENGALURU),
    ])
    alerts = InMemoryAlertStore([
        _make_alert(),
        _make_alert(alert_id="ALT-1719826200000-CANCELLED", status="cancel"),
    ])
    return NotificationEngine(
        users, alerts,
        sms_provider=sms_provider,
        email_provider=email_provider,
        stats_retry=RetryConfig(backoff_base_seconds=0),
    )


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_notification_engine] = lambda: engine
    app.dependency_overrides[get_db_probe] = lambda: _db_up
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestNotify:

    def test_broad_dispatch_response_shape(self, client, engine):
        response = client.post(f"/api/v1/alerts/{ALERT_ID}/notify")

        assert response.status_code == 200
        assert response.json() == {
            "alert_id": ALERT_ID,
            "recipient_count": 1,
            "results": {
                "sms": {"sent": 1, "failed": 0, "errors": []},
                "email": {"sent": 1, "failed": 0, "errors": []},
            },
        }
        alert = engine.alert_store._alerts[ALERT_ID]
        assert alert.notifications.sent == 2

    def test_radius_and_roles(self, client):
        response = client.post(
            f"/api/v1/alerts/{ALERT_ID}/notify",
            json={"roles": ["volunteer"], "radius_km": 400},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["recipient_count"] == 1
        assert body["results"]["email"]["sent"] == 1
        assert body["results"]["sms"]["sent"] == 0

    def test_failures_listed_per_user(self, client, sms_provider):
        sms_provider.fail_for.add("+15550-near")
        body = client.post(f"/api/v1/alerts/{ALERT_ID}/notify").json()
        assert body["results"]["sms"] == {
            "sent": 0,
            "failed": 1,
            "errors": [{
                "user": "user_near",
                "user_id": "near",
                "error": "carrier rejected +15550-near",
            }],
        }
        assert body["results"]["email"]["sent"] == 1

    def test_targeted(self, client, email_provider):
        response = client.post(
            f"/api/v1/alerts/{ALERT_ID}/notify/targeted",
            json={"user_ids": ["vol", " "]},
        )
        assert response.status_code == 200
        assert [to for to, _ in email_provider.sent] == ["vol@example.com"]

    def test_role(self, client):
        response = client.post(
            f"/api/v1/alerts/{ALERT_ID}/notify/role", json={"role": "volunteer"},
        )
        assert response.status_code == 200
        assert response.json()["recipient_count"] == 1


class TestNotifyErrors:

    def test_unknown_alert(self, client):
        response = client.post("/api/v1/alerts/ALT-0-NOPE/notify")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_cancelled_alert(self, client, email_provider):
        response = client.post("/api/v1/alerts/ALT-1719826200000-CANCELLED/notify")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ALERT_NOT_DISPATCHABLE"
        assert email_provider.sent == []

    @pytest.mark.parametrize("path,payload", [
        ("notify", {"radius_km": 0}),
        ("notify", {"roles": ["mayor"]}),
        ("notify/targeted", {"user_ids": []}),
        ("notify/targeted", {"user_ids": ["", "  "]}),
        ("notify/role", {"role": "mayor"}),
    ])
    def test_invalid_bodies(self, client, path, payload):
        response = client.post(f"/api/v1/alerts/{ALERT_ID}/{path}", json=payload)
        assert response.status_code == 422

    def test_engine_missing(self):
        app.dependency_overrides.clear()
        response = TestClient(app).post(f"/api/v1/alerts/{ALERT_ID}/notify")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"


class TestChannels:

    def test_channel_status(self, client, email_provider):
        email_provider.verify_error = TimeoutError("smtp timeout")
        body = client.get("/api/v1/notifications/channels").json()
        assert body["channels"]["sms"]["status"] == "connected"
        assert body["channels"]["email"]["status"] == "error"
        assert body["channels"]["email"]["error"] == "smtp timeout"


class TestHealth:

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_healthy(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        names = [c["name"] for c in body["components"]]
        assert names == ["database", "channel:sms", "channel:email"]

    def test_degraded_channel(self, client, sms_provider):
        sms_provider.verify_error = ConnectionError("twilio unreachable")
        assert client.get("/health").json()["status"] == "degraded"

    def test_database_down_not_ready(self, client):
        app.dependency_overrides[get_db_probe] = lambda: _db_down
        response = client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_no_channel_connected_not_ready(self, client, sms_provider, email_provider):
        sms_provider.verify_error = ConnectionError("down")
        email_provider.verify_error = ConnectionError("down")
        response = client.get("/health/ready")
        assert response.status_code == 503
        assert "notification_delivery" in [c["name"] for c in response.json()["components"]]
