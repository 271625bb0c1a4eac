"""
Shared fixtures for the notification engine tests.

Factories build users and alerts with sensible defaults (active, verified,
located in Chennai). The recording providers capture every send and can be
told to fail or stall for particular addresses.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Set, Tuple

import pytest

from backend.app.alerts.channels.base import EmailProvider, SendReceipt, SmsProvider
from backend.app.alerts.formatter import EmailMessage
from backend.app.alerts.models import (
    AffectedArea,
    Alert,
    EmailPreferences,
    NotifiableUser,
    NotificationPreferences,
    SmsPreferences,
)
from backend.app.alerts.stores import InMemoryAlertStore, InMemoryUserStore
from backend.app.core.errors import ChannelSendError
from backend.app.spatial.radius_utils import Coordinate

# Chennai central (13.0827°N, 80.2707°E)
CHENNAI = Coordinate(13.0827, 80.2707)
# Bengaluru, ~290 km from Chennai
BENGALURU = Coordinate(12.9716, 77.5946)

FIXED_NOW = datetime(2024, 7, 1, 9, 30, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Recording providers
# ═══════════════════════════════════════════════════════════════════════════

class RecordingSmsProvider(SmsProvider):
    name = "recording"

    def __init__(self) -> None:
        super().__init__()
        self.sent: List[Tuple[str, str]] = []
        self.fail_for: Set[str] = set()
        self.stall_for: Set[str] = set()
        self.verify_error: Exception | None = None
        self.closed = False

    async def send(self, to: str, body: str) -> SendReceipt:
        if to in self.stall_for:
            await asyncio.sleep(60)
        if to in self.fail_for:
            raise ChannelSendError("sms", f"carrier rejected {to}")
        self.sent.append((to, body))
        return SendReceipt(id=f"SM{len(self.sent)}")

    async def verify(self) -> None:
        if self.verify_error:
            raise self.verify_error

    async def aclose(self) -> None:
        self.closed = True


class RecordingEmailProvider(EmailProvider):
    name = "recording"

    def __init__(self) -> None:
        super().__init__()
        self.sent: List[Tuple[str, EmailMessage]] = []
        self.fail_for: Set[str] = set()
        self.stall_for: Set[str] = set()
        self.verify_error: Exception | None = None
        self.closed = False

    async def send(self, to: str, message: EmailMessage) -> SendReceipt:
        if to in self.stall_for:
            await asyncio.sleep(60)
        if to in self.fail_for:
            raise RuntimeError(f"mailbox unavailable: {to}")
        self.sent.append((to, message))
        return SendReceipt(id=f"<{len(self.sent)}@test>")

    async def verify(self) -> None:
        if self.verify_error:
            raise self.verify_error

    async def aclose(self) -> None:
        self.closed = True


# ═══════════════════════════════════════════════════════════════════════════
# Factories
# ═══════════════════════════════════════════════════════════════════════════

def _make_user(
    uid: str = "u1",
    *,
    sms: Dict[str, bool] | None = None,
    email_prefs: Dict[str, bool] | None = None,
    **overrides: Any,
) -> NotifiableUser:
    fields: Dict[str, Any] = dict(
        id=uid,
        username=f"user_{uid}",
        email=f"{uid}@example.com",
        first_name=uid.upper(),
        phone=f"+15550-{uid}",
        role="citizen",
        status="active",
        email_verified=True,
        location=CHENNAI,
    )
    fields.update(overrides)
    fields["preferences"] = NotificationPreferences(
        sms=SmsPreferences(**(sms or {})),
        email=EmailPreferences(**(email_prefs or {})),
    )
    return NotifiableUser(**fields)


def _make_alert(**overrides: Any) -> Alert:
    fields: Dict[str, Any] = dict(
        alert_id="ALT-1719826200000-TEST00001",
        type="flood",
        severity="moderate",
        urgency="expected",
        certainty="likely",
        title="Flood Warning",
        description="River levels rising near Adyar bridge.",
        location=CHENNAI,
        effective_time=FIXED_NOW,
        expiration_time=FIXED_NOW + timedelta(hours=24),
        status="active",
    )
    fields.update(overrides)
    if "areas" in fields:
        fields["affected_areas"] = [AffectedArea(name=n) for n in fields.pop("areas")]
    return Alert(**fields)


@pytest.fixture
def make_user():
    return _make_user


@pytest.fixture
def make_alert():
    return _make_alert


@pytest.fixture
def sms_provider() -> RecordingSmsProvider:
    return RecordingSmsProvider()


@pytest.fixture
def email_provider() -> RecordingEmailProvider:
    return RecordingEmailProvider()


@pytest.fixture
def user_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()
