"""
base.py — Provider interfaces for outbound notification channels.

A provider delivers one message to one address and either returns a
SendReceipt or raises. It never decides *who* gets a message; that is the
ChannelGate's job. Failures surface as ChannelSendError (with ``retryable``
set for rate limits and transient transport errors); the dispatcher turns
any exception into a per-user failure record.

    Provider                 Channel   Transport
    ──────────────────────   ───────   ──────────────────────────
    TwilioSmsProvider        sms       httpx → Twilio REST API
    SimulatedSmsProvider     sms       log line only
    SmtpEmailProvider        email     aiosmtplib (STARTTLS)
    SimulatedEmailProvider   email     log line only
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

from backend.app.alerts.formatter import EmailMessage
from backend.app.alerts.models import NotificationChannel


@dataclass(frozen=True)
class SendReceipt:
    """Provider acknowledgement for one accepted message."""
    id: str
    status: str = "sent"
    metadata: Dict[str, Any] = field(default_factory=dict)


def simulated_receipt(**metadata: Any) -> SendReceipt:
    return SendReceipt(
        id=f"SIM-{uuid.uuid4().hex[:12]}",
        status="simulated",
        metadata=metadata,
    )


class _Provider(ABC):
    channel: NotificationChannel
    name: str = "provider"

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def verify(self) -> None:
        """Check connectivity/credentials; raise on failure."""

    async def aclose(self) -> None:
        """Release network resources. Safe to call more than once."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


class SmsProvider(_Provider):
    channel = NotificationChannel.SMS

    @abstractmethod
    async def send(self, to: str, body: str) -> SendReceipt:
        """Deliver ``body`` to the E.164 number ``to``."""


class EmailProvider(_Provider):
    channel = NotificationChannel.EMAIL

    @abstractmethod
    async def send(self, to: str, message: EmailMessage) -> SendReceipt:
        """Deliver a rendered email to ``to``."""
