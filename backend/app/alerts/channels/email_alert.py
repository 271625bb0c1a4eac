"""
email_alert.py — Email alert delivery channel.

Delivery mechanism:
    • Async SMTP (aiosmtplib) with STARTTLS and optional login
    • multipart/alternative: plain-text part first, HTML part second
    • Explicit timeout on connect and on every SMTP command

═══════════════════════════════════════════════════════════════════════════
FAILURE MAPPING
═══════════════════════════════════════════════════════════════════════════

    aiosmtplib error                     ChannelSendError.retryable
    ─────────────────────────────────    ──────────────────────────
    SMTPRecipientsRefused                False  (bad address)
    SMTPAuthenticationError              False  (credentials)
    SMTPTimeoutError / connect errors    True
    other SMTPException                  True

Provider selection (EMAIL_PROVIDER):
    smtp        — real delivery; needs SMTP_HOST and a sender address
    simulation  — log only, for development
    disabled    — no email provider; the channel is skipped
"""

from __future__ import annotations

from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

import aiosmtplib

from backend.app.alerts.channels.base import EmailProvider, SendReceipt, simulated_receipt
from backend.app.alerts.formatter import EmailMessage
from backend.app.core.config import Settings
from backend.app.core.errors import ChannelSendError, ConfigurationError


class SmtpEmailProvider(EmailProvider):
    """One SMTP session per message via ``aiosmtplib.send``."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        from_address: str,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout_seconds: float = 15.0,
        from_name: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.from_address = from_address
        self.from_name = from_name
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout = timeout_seconds

    def _build_mime(self, to: str, message: EmailMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["From"] = (
            f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address
        )
        mime["To"] = to
        mime["Subject"] = message.subject
        mime["Message-ID"] = make_msgid(domain=self.from_address.split("@")[-1])
        mime.attach(MIMEText(message.text, "plain", "utf-8"))
        mime.attach(MIMEText(message.html, "html", "utf-8"))
        return mime

    async def send(self, to: str, message: EmailMessage) -> SendReceipt:
        mime = self._build_mime(to, message)
        try:
            _, response = await aiosmtplib.send(
                mime,
                hostname=self.host,
                port=self.port,
                username=self._username,
                password=self._password,
                start_tls=self._use_tls,
                timeout=self._timeout,
            )
        except aiosmtplib.SMTPRecipientsRefused as exc:
            raise ChannelSendError("email", f"Recipient refused: {to}") from exc
        except aiosmtplib.SMTPAuthenticationError as exc:
            raise ChannelSendError("email", f"SMTP authentication failed: {exc.message}") from exc
        except aiosmtplib.SMTPException as exc:
            raise ChannelSendError("email", f"SMTP error: {exc}", retryable=True) from exc
        except OSError as exc:
            raise ChannelSendError("email", f"SMTP unreachable: {exc}", retryable=True) from exc

        self.logger.debug("[EMAIL/SMTP] %s accepted for %s", mime["Message-ID"], to)
        return SendReceipt(id=mime["Message-ID"], status="sent", metadata={"smtp": response})

    async def verify(self) -> None:
        client = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            start_tls=self._use_tls,
            timeout=self._timeout,
        )
        try:
            async with client:
                if self._username and self._password:
                    await client.login(self._username, self._password)
                await client.noop()
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise ChannelSendError("email", f"SMTP check failed: {exc}") from exc


class SimulatedEmailProvider(EmailProvider):
    """Logs the message instead of sending it."""

    name = "simulation"

    async def send(self, to: str, message: EmailMessage) -> SendReceipt:
        self.logger.info("[EMAIL] → %s: Subject='%s'", to, message.subject)
        return simulated_receipt(
            to=to,
            subject=message.subject,
            html_size=len(message.html),
        )

    async def verify(self) -> None:
        return None


def build_email_provider(settings: Settings) -> Optional[EmailProvider]:
    """
    Build the configured email provider.

    Returns None when email is disabled; raises ConfigurationError when the
    selected provider is unknown or incompletely configured.
    """
    kind = settings.EMAIL_PROVIDER.lower()
    if kind == "disabled":
        return None
    if kind == "simulation":
        return SimulatedEmailProvider()
    if kind != "smtp":
        raise ConfigurationError("Email provider", f"unknown provider '{settings.EMAIL_PROVIDER}'")

    from_address = settings.EMAIL_FROM_ADDRESS or settings.SMTP_USER
    if not settings.SMTP_HOST:
        raise ConfigurationError("Email provider", "missing SMTP_HOST")
    if not from_address:
        raise ConfigurationError("Email provider", "missing EMAIL_FROM_ADDRESS or SMTP_USER")

    return SmtpEmailProvider(
        settings.SMTP_HOST,
        settings.SMTP_PORT,
        from_address,
        username=settings.SMTP_USER,
        password=settings.SMTP_PASSWORD,
        use_tls=settings.SMTP_USE_TLS,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        from_name=settings.ALERT_SYSTEM_NAME,
    )
