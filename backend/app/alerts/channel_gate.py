"""
channel_gate.py — Per-user, per-channel eligibility.

    Channel   Requires
    ───────   ────────────────────────────────────────────────────────────
    sms       configured, phone on file, sms.enabled, and
              sms.emergencies (severe/extreme) or sms.alerts (otherwise)
    email     configured, address on file, email.enabled and email.alerts

Email has no emergency tier: an alert-opted-out user stays opted out even
for extreme alerts, whereas SMS has a separate emergency opt-in.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from backend.app.alerts.models import Alert, NotifiableUser, NotificationChannel


class ChannelGate:
    """Pure eligibility predicate; knows which channels have a provider."""

    def __init__(self, configured: Optional[Iterable[NotificationChannel]] = None) -> None:
        self.configured = frozenset(
            NotificationChannel(c)
            for c in (NotificationChannel if configured is None else configured)
        )

    def eligible(
        self,
        user: NotifiableUser,
        alert: Alert,
        channel: NotificationChannel,
    ) -> bool:
        channel = NotificationChannel(channel)
        if channel not in self.configured:
            return False
        if channel is NotificationChannel.SMS:
            return self._sms_ok(user, alert)
        return self._email_ok(user)

    def eligible_channels(
        self, user: NotifiableUser, alert: Alert,
    ) -> List[NotificationChannel]:
        return [c for c in NotificationChannel if self.eligible(user, alert, c)]

    @staticmethod
    def _sms_ok(user: NotifiableUser, alert: Alert) -> bool:
        prefs = user.preferences.sms
        if not (user.phone and prefs.enabled):
            return False
        if alert.severity.is_emergency:
            return prefs.emergencies
        return prefs.alerts

    @staticmethod
    def _email_ok(user: NotifiableUser) -> bool:
        prefs = user.preferences.email
        return bool(user.email) and prefs.enabled and prefs.alerts
