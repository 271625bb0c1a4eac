"""
sms_gateway.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • HTTP API to the SMS gateway (Twilio REST)
    • Payload: ≤160 chars (GSM 7-bit), already truncated by the formatter
    • Basic auth with account SID / auth token, explicit per-call timeout

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    App  →  HTTP POST  →  SMS Gateway API  →  Carrier  →  Handset

    Twilio:  POST {base}/Accounts/{SID}/Messages.json
             form: To, From, Body          → 201 {"sid": ..., "status": ...}
             429                           → rate limited (retryable)
             4xx/5xx {"code", "message"}   → rejected

    Provider selection (SMS_PROVIDER):
        twilio      — real delivery; needs SID, token and sender number
        simulation  — log only, for development
        disabled    — no SMS provider; the channel is skipped
"""

from __future__ import annotations

from typing import Optional

import httpx

from backend.app.alerts.channels.base import SendReceipt, SmsProvider, simulated_receipt
from backend.app.core.config import Settings
from backend.app.core.errors import ChannelSendError, ConfigurationError

SMS_MAX_GSM7 = 160


class TwilioSmsProvider(SmsProvider):
    """Twilio Messages API over a shared httpx.AsyncClient."""

    name = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        base_url: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__()
        self.account_sid = account_sid
        self.from_number = from_number
        self._auth = (account_sid, auth_token)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy-init a shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(self, to: str, body: str) -> SendReceipt:
        client = await self._get_client()
        try:
            response = await client.post(
                f"/Accounts/{self.account_sid}/Messages.json",
                data={"To": to, "From": self.from_number, "Body": body},
            )
        except httpx.TimeoutException as exc:
            raise ChannelSendError("sms", f"Twilio timed out: {exc}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise ChannelSendError("sms", f"Twilio unreachable: {exc}", retryable=True) from exc

        if response.status_code == 429:
            raise ChannelSendError(
                "sms", "Twilio rate limit exceeded", retryable=True, status_code=429,
            )
        if response.is_error:
            raise ChannelSendError(
                "sms",
                _error_message(response),
                retryable=response.status_code >= 500,
                status_code=response.status_code,
            )

        data = response.json()
        self.logger.debug("[SMS/Twilio] %s accepted for %s", data.get("sid"), to)
        return SendReceipt(
            id=data.get("sid", ""),
            status=data.get("status", "queued"),
            metadata={"segments": int(data.get("num_segments") or 1)},
        )

    async def verify(self) -> None:
        client = await self._get_client()
        response = await client.get(f"/Accounts/{self.account_sid}.json")
        if response.is_error:
            raise ChannelSendError(
                "sms", _error_message(response), status_code=response.status_code,
            )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"Twilio HTTP {response.status_code}"
    message = payload.get("message") or f"Twilio HTTP {response.status_code}"
    code = payload.get("code")
    return f"{code}: {message}" if code else message


class SimulatedSmsProvider(SmsProvider):
    """Logs the message instead of sending it."""

    name = "simulation"

    async def send(self, to: str, body: str) -> SendReceipt:
        self.logger.info(
            "[SMS] → %s: %d chars → '%s'",
            to, len(body), body[:80] + ("..." if len(body) > 80 else ""),
        )
        return simulated_receipt(
            phone=to,
            message_length=len(body),
            segments=1 + (len(body) - 1) // SMS_MAX_GSM7 if body else 1,
        )

    async def verify(self) -> None:
        return None


def build_sms_provider(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[SmsProvider]:
    """
    Build the configured SMS provider.

    Returns None when SMS is disabled; raises ConfigurationError when the
    selected provider is unknown or lacks credentials.
    """
    kind = settings.SMS_PROVIDER.lower()
    if kind == "disabled":
        return None
    if kind == "simulation":
        return SimulatedSmsProvider()
    if kind != "twilio":
        raise ConfigurationError("SMS provider", f"unknown provider '{settings.SMS_PROVIDER}'")

    missing = [
        name for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER")
        if not getattr(settings, name)
    ]
    if missing:
        raise ConfigurationError("SMS provider", f"missing {', '.join(missing)}")

    return TwilioSmsProvider(
        settings.TWILIO_ACCOUNT_SID,
        settings.TWILIO_AUTH_TOKEN,
        settings.TWILIO_PHONE_NUMBER,
        base_url=settings.TWILIO_API_BASE_URL,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        transport=transport,
    )
