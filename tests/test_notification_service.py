"""
test_notification_service.py — End-to-end engine behaviour over in-memory stores.

Covers:
    • Broad, targeted and role-based dispatch
    • Status guard (no I/O for cancelled/expired/draft alerts)
    • Counter write once per dispatch, resends accumulate
    • Resolution failure aborts without a write
    • Counter write failure keeps the dispatch result
    • Channel connectivity report and provider factory

Run with:
    pytest tests/test_notification_service.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.alerts.channels.email_alert import SimulatedEmailProvider
from backend.app.alerts.channels.sms_gateway import SimulatedSmsProvider
from backend.app.alerts.models import AlertSource, NotificationChannel, UserRole
from backend.app.alerts.notification_service import NotificationEngine, build_engine
from backend.app.alerts.stats import RetryConfig
from backend.app.alerts.stores import InMemoryAlertStore, InMemoryUserStore
from backend.app.core.config import Settings
from backend.app.core.errors import AlertNotDispatchableError, ResolutionError

from conftest import BENGALURU

NO_WAIT = RetryConfig(max_attempts=3, backoff_base_seconds=0)


def _engine(users, alerts, sms_provider=None, email_provider=None, **kwargs):
    user_store = users if isinstance(users, InMemoryUserStore) else InMemoryUserStore(users)
    alert_store = alerts if isinstance(alerts, InMemoryAlertStore) else InMemoryAlertStore(alerts)
    kwargs.setdefault("stats_retry", NO_WAIT)
    return NotificationEngine(
        user_store, alert_store,
        sms_provider=sms_provider, email_provider=email_provider,
        **kwargs,
    )


def _settings(**overrides):
    return Settings(_env_file=None, **overrides)


# ═══════════════════════════════════════════════════════════════════════════
# Scenarios
# ═══════════════════════════════════════════════════════════════════════════

class TestScenarios:

    def test_emergency_reaches_responder_outside_radius(
        self, make_user, make_alert, sms_provider, email_provider,
    ):
        alert = make_alert(
            type="earthquake", severity="extreme", urgency="immediate", certainty="observed",
            title="Earthquake", source=AlertSource(organization="IMD"),
        )
        responder = make_user(
            "r1", role="responder", location=BENGALURU,
            sms={"enabled": True, "alerts": False, "emergencies": True},
        )
        engine = _engine([responder], [alert], sms_provider, email_provider)

        result = asyncio.run(engine.send_alert_notifications(alert))

        assert alert.priority_score == 100
        assert result.sms.sent == 1
        assert result.email.sent == 1
        assert sms_provider.sent[0][1].startswith("URGENT EXTREME ALERT: Earthquake")

    def test_area_fallback_on_moderate_alert(
        self, make_user, make_alert, sms_provider, email_provider,
    ):
        alert = make_alert(areas=["Riverside"])
        member = make_user(
            "m1", location=BENGALURU, organization="Riverside",
            sms={"enabled": True, "alerts": True},
        )
        engine = _engine([member], [alert], sms_provider, email_provider)

        result = asyncio.run(engine.send_alert_notifications(alert))

        assert result.recipient_count == 1
        assert result.sms.sent == 1
        assert "Location: Riverside" in sms_provider.sent[0][1]

    def test_targeted_resend_honours_preferences(
        self, make_user, make_alert, sms_provider, email_provider,
    ):
        alert = make_alert()
        user = make_user("t1", sms={"enabled": False}, email_prefs={"enabled": True, "alerts": True})
        engine = _engine([user], [alert], sms_provider, email_provider)

        result = asyncio.run(engine.send_targeted_notifications(["t1"], alert))

        assert result.to_dict()["sms"] == {"sent": 0, "failed": 0, "errors": []}
        assert result.email.sent == 1
        assert email_provider.sent[0][0] == "t1@example.com"

    def test_role_based_resend(self, make_user, make_alert, email_provider):
        alert = make_alert()
        users = [
            make_user("v1", role="volunteer", location=BENGALURU),
            make_user("c1", role="citizen"),
        ]
        engine = _engine(users, [alert], email_provider=email_provider)

        result = asyncio.run(engine.send_role_based_notifications(UserRole.VOLUNTEER, alert))

        assert result.recipient_count == 1
        assert [to for to, _ in email_provider.sent] == ["v1@example.com"]

    def test_role_filter_and_radius_on_broad_dispatch(self, make_user, make_alert, email_provider):
        alert = make_alert(severity="info")
        users = [
            make_user("v_far", role="volunteer", location=BENGALURU),
            make_user("c_far", role="citizen", location=BENGALURU),
        ]
        engine = _engine(users, [alert], email_provider=email_provider)

        result = asyncio.run(engine.send_alert_notifications(
            alert, roles=[UserRole.VOLUNTEER], radius_km=400,
        ))

        assert result.recipient_count == 1
        assert email_provider.sent[0][0] == "v_far@example.com"


# ═══════════════════════════════════════════════════════════════════════════
# Status guard
# ═══════════════════════════════════════════════════════════════════════════

class _CountingUserStore(InMemoryUserStore):
    def __init__(self, users=()):
        super().__init__(users)
        self.calls = 0

    async def find_eligible_by_radius(self, *args, **kwargs):
        self.calls += 1
        return await super().find_eligible_by_radius(*args, **kwargs)

    async def find_by_ids(self, ids):
        self.calls += 1
        return await super().find_by_ids(ids)


class TestStatusGuard:

    @pytest.mark.parametrize("status", ["cancel", "expired", "draft"])
    def test_refused_before_any_io(self, make_user, make_alert, email_provider, status):
        alert = make_alert(status=status)
        store = _CountingUserStore([make_user()])
        engine = _engine(store, [alert], email_provider=email_provider)

        with pytest.raises(AlertNotDispatchableError) as exc_info:
            asyncio.run(engine.send_alert_notifications(alert))
        with pytest.raises(AlertNotDispatchableError):
            asyncio.run(engine.send_targeted_notifications([make_user().id], alert))

        assert exc_info.value.status_code == 409
        assert store.calls == 0
        assert email_provider.sent == []
        assert alert.notifications.sent == 0

    def test_update_status_is_dispatchable(self, make_user, make_alert, email_provider):
        alert = make_alert(status="update")
        engine = _engine([make_user()], [alert], email_provider=email_provider)
        assert asyncio.run(engine.send_alert_notifications(alert)).email.sent == 1


# ═══════════════════════════════════════════════════════════════════════════
# Counters
# ═══════════════════════════════════════════════════════════════════════════

class _FlakyAlertStore(InMemoryAlertStore):
    def __init__(self, alerts=(), failures=0, error=ConnectionError("database went away")):
        super().__init__(alerts)
        self.failures = failures
        self.error = error
        self.increments = 0

    async def increment_notification_counters(self, *args, **kwargs):
        self.increments += 1
        if self.failures:
            self.failures -= 1
            raise self.error
        await super().increment_notification_counters(*args, **kwargs)


class TestCounters:

    def test_written_once_per_dispatch(self, make_user, make_alert, sms_provider, email_provider):
        alert = make_alert()
        users = [make_user("a", sms={"enabled": True, "alerts": True}), make_user("b")]
        store = _FlakyAlertStore([alert])
        engine = _engine(users, store, sms_provider, email_provider)

        result = asyncio.run(engine.send_alert_notifications(alert))

        assert store.increments == 1
        assert result.total_sent == 3
        assert alert.notifications.sent == 3
        assert alert.notifications.delivered == 3
        assert alert.notifications.channels == {NotificationChannel.SMS, NotificationChannel.EMAIL}

    def test_resends_accumulate(self, make_user, make_alert, email_provider):
        alert = make_alert()
        engine = _engine([make_user("a")], [alert], email_provider=email_provider)

        asyncio.run(engine.send_alert_notifications(alert))
        asyncio.run(engine.send_targeted_notifications(["a"], alert))

        assert alert.notifications.sent == 2
        assert alert.notifications.channels == {NotificationChannel.EMAIL}

    def test_failed_channel_not_recorded(self, make_user, make_alert, sms_provider, email_provider):
        alert = make_alert()
        user = make_user("a", sms={"enabled": True, "alerts": True})
        sms_provider.fail_for.add(user.phone)
        engine = _engine([user], [alert], sms_provider, email_provider)

        asyncio.run(engine.send_alert_notifications(alert))

        assert alert.notifications.channels == {NotificationChannel.EMAIL}
        assert alert.notifications.sent == 1

    def test_nothing_sent_nothing_written(self, make_alert):
        alert = make_alert()
        store = _FlakyAlertStore([alert])
        engine = _engine([], store)

        asyncio.run(engine.send_alert_notifications(alert))

        assert store.increments == 0

    def test_transient_write_failure_retried(self, make_user, make_alert, email_provider):
        alert = make_alert()
        store = _FlakyAlertStore([alert], failures=2)
        engine = _engine([make_user()], store, email_provider=email_provider)

        asyncio.run(engine.send_alert_notifications(alert))

        assert store.increments == 3
        assert alert.notifications.sent == 1

    def test_write_failure_keeps_result(self, make_user, make_alert, email_provider, caplog):
        alert = make_alert()
        store = _FlakyAlertStore([alert], failures=10)
        engine = _engine([make_user()], store, email_provider=email_provider)

        result = asyncio.run(engine.send_alert_notifications(alert))

        assert result.email.sent == 1
        assert store.increments == NO_WAIT.max_attempts
        assert alert.notifications.sent == 0
        assert "counters were not updated" in caplog.text

    def test_non_connection_error_written_at_most_once(
        self, make_user, make_alert, email_provider, caplog,
    ):
        alert = make_alert()
        store = _FlakyAlertStore([alert], failures=10, error=ValueError("constraint violated"))
        engine = _engine([make_user()], store, email_provider=email_provider)

        result = asyncio.run(engine.send_alert_notifications(alert))

        assert result.email.sent == 1
        assert store.increments == 1
        assert "not retried" in caplog.text

    def test_unknown_alert_not_retried(self, make_user, make_alert, email_provider):
        alert = make_alert()
        store = _FlakyAlertStore([])
        engine = _engine([make_user()], store, email_provider=email_provider)

        result = asyncio.run(engine.send_alert_notifications(alert))

        assert result.email.sent == 1
        assert store.increments == 1


class _BrokenUserStore(InMemoryUserStore):
    async def find_eligible_by_radius(self, *args, **kwargs):
        raise ConnectionError("user store offline")


class TestResolutionFailure:

    def test_aborts_without_sends_or_writes(self, make_alert, email_provider):
        alert = make_alert()
        alerts = _FlakyAlertStore([alert])
        engine = _engine(_BrokenUserStore(), alerts, email_provider=email_provider)

        with pytest.raises(ResolutionError):
            asyncio.run(engine.send_alert_notifications(alert))

        assert email_provider.sent == []
        assert alerts.increments == 0


# ═══════════════════════════════════════════════════════════════════════════
# Channels and factory
# ═══════════════════════════════════════════════════════════════════════════

class TestCheckChannels:

    def test_connected_and_error(self, sms_provider, email_provider):
        email_provider.verify_error = ConnectionRefusedError("smtp down")
        engine = _engine([], [], sms_provider, email_provider)

        report = asyncio.run(engine.check_channels())

        assert report["sms"] == {"available": True, "status": "connected", "provider": "recording"}
        assert report["email"]["status"] == "error"
        assert report["email"]["error"] == "smtp down"

    def test_unavailable_reason(self):
        engine = _engine([], [], unavailable={NotificationChannel.SMS: "SMS disabled"})
        report = asyncio.run(engine.check_channels())
        assert report["sms"] == {"available": False, "status": "unavailable", "error": "SMS disabled"}
        assert report["email"] == {"available": False, "status": "unavailable"}

    def test_aclose_closes_providers(self, sms_provider, email_provider):
        engine = _engine([], [], sms_provider, email_provider)
        asyncio.run(engine.aclose())
        assert sms_provider.closed and email_provider.closed


class TestBuildEngine:

    def test_simulation_providers(self):
        engine = build_engine(
            InMemoryUserStore(), InMemoryAlertStore(),
            _settings(SMS_PROVIDER="simulation", EMAIL_PROVIDER="simulation",
                      DISPATCH_MAX_CONCURRENCY=5),
        )
        assert isinstance(engine.dispatcher.sms_provider, SimulatedSmsProvider)
        assert isinstance(engine.dispatcher.email_provider, SimulatedEmailProvider)
        assert engine.dispatcher.max_concurrency == 5

    def test_missing_credentials_leave_channel_unavailable(self):
        engine = build_engine(
            InMemoryUserStore(), InMemoryAlertStore(),
            _settings(SMS_PROVIDER="twilio", EMAIL_PROVIDER="disabled"),
        )
        report = asyncio.run(engine.check_channels())
        assert engine.dispatcher.sms_provider is None
        assert "TWILIO_ACCOUNT_SID" in report["sms"]["error"]
        assert report["email"]["error"] == "Email disabled"

    def test_simulated_dispatch_end_to_end(self, make_user, make_alert):
        alert = make_alert(severity="severe")
        user = make_user(sms={"enabled": True, "emergencies": True})
        engine = build_engine(
            InMemoryUserStore([user]), InMemoryAlertStore([alert]),
            _settings(SMS_PROVIDER="simulation", EMAIL_PROVIDER="simulation"),
        )

        result = asyncio.run(engine.send_alert_notifications(alert))

        assert result.sms.sent == 1 and result.email.sent == 1
        assert alert.notifications.sent == 2
