"""
notification_service.py — NotificationEngine: the dispatch entry points.

Pipeline (per call):

    1. Guard      alert.status ∈ {active, update}, else AlertNotDispatchableError
    2. Resolve    RecipientResolver → RecipientSet     (ResolutionError propagates)
    3. Dispatch   DispatchCoordinator → DispatchResult (never raises per user)
    4. Stats      StatsUpdater.apply once               (StatsWriteError logged)

Entry points:

    send_alert_notifications(alert, roles, radius_km)   broad dispatch
    send_targeted_notifications(user_ids, alert)        resend to explicit users
    send_role_based_notifications(role, alert)          resend to a role cohort

The engine holds no module-level state. Build one with ``build_engine``
(providers from settings) or construct it directly with test doubles.

═══════════════════════════════════════════════════════════════════════════
FAILURE DOMAINS
═══════════════════════════════════════════════════════════════════════════

    Dispatch and the counter write are separate: when the write fails the
    users were still notified, so the DispatchResult is returned and the
    failure is logged. A failed resolution aborts before any send and
    writes nothing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from backend.app.alerts.channels.base import EmailProvider, SmsProvider
from backend.app.alerts.channels.email_alert import build_email_provider
from backend.app.alerts.channels.sms_gateway import build_sms_provider
from backend.app.alerts.dispatcher import DispatchCoordinator
from backend.app.alerts.formatter import DEFAULT_SIGNATURE
from backend.app.alerts.models import (
    Alert,
    DispatchResult,
    NotificationChannel,
    RecipientFilters,
    RecipientSet,
    UserRole,
)
from backend.app.alerts.recipients import RecipientResolver
from backend.app.alerts.stats import RetryConfig, StatsUpdater
from backend.app.alerts.stores import AlertStore, UserStore
from backend.app.core.config import Settings, get_settings
from backend.app.core.errors import (
    AlertNotDispatchableError,
    ConfigurationError,
    StatsWriteError,
)

logger = logging.getLogger(__name__)

CHANNEL_CHECK_TIMEOUT_SECONDS = 10.0


class NotificationEngine:
    """Resolves, dispatches and records notifications for one alert at a time."""

    def __init__(
        self,
        user_store: UserStore,
        alert_store: AlertStore,
        *,
        sms_provider: Optional[SmsProvider] = None,
        email_provider: Optional[EmailProvider] = None,
        max_concurrency: int = 20,
        provider_timeout: Optional[float] = 15.0,
        dispatch_timeout: Optional[float] = None,
        max_error_records: int = 100,
        stats_retry: RetryConfig = RetryConfig(),
        signature: str = DEFAULT_SIGNATURE,
        unavailable: Optional[Dict[NotificationChannel, str]] = None,
    ) -> None:
        self.user_store = user_store
        self.alert_store = alert_store
        self.dispatch_timeout = dispatch_timeout
        self.resolver = RecipientResolver(user_store)
        self.dispatcher = DispatchCoordinator(
            sms_provider=sms_provider,
            email_provider=email_provider,
            max_concurrency=max_concurrency,
            provider_timeout=provider_timeout,
            max_error_records=max_error_records,
            signature=signature,
        )
        self.stats = StatsUpdater(alert_store, stats_retry)
        # Reasons a channel has no provider, surfaced by check_channels()
        self._unavailable: Dict[NotificationChannel, str] = dict(unavailable or {})

    @property
    def providers(self) -> Dict[NotificationChannel, Any]:
        return {
            NotificationChannel.SMS: self.dispatcher.sms_provider,
            NotificationChannel.EMAIL: self.dispatcher.email_provider,
        }

    # ── Entry points ──

    async def send_alert_notifications(
        self,
        alert: Alert,
        roles: Optional[Iterable[UserRole]] = None,
        radius_km: Optional[float] = None,
    ) -> DispatchResult:
        """Broad dispatch: geo/area/emergency resolution, then fan-out."""
        filters = RecipientFilters(
            roles=frozenset(roles) if roles is not None else None,
            radius_km=radius_km,
        )
        return await self._run(alert, lambda: self.resolver.resolve(alert, filters))

    async def send_targeted_notifications(
        self, user_ids: Iterable[str], alert: Alert,
    ) -> DispatchResult:
        """Resend to an explicit list of users."""
        user_ids = list(user_ids)
        return await self._run(alert, lambda: self.resolver.resolve_user_ids(user_ids))

    async def send_role_based_notifications(
        self, role: UserRole, alert: Alert,
    ) -> DispatchResult:
        """Resend to every eligible user holding ``role``."""
        role = UserRole(role)
        return await self._run(alert, lambda: self.resolver.resolve_roles([role]))

    async def _run(
        self,
        alert: Alert,
        resolve: Callable[[], Awaitable[RecipientSet]],
    ) -> DispatchResult:
        if not alert.is_dispatchable:
            logger.warning(
                "Refusing to dispatch %s with status %s",
                alert.alert_id, alert.status.value,
                extra={"alert_id": alert.alert_id},
            )
            raise AlertNotDispatchableError(alert.alert_id, alert.status.value)

        recipients = await resolve()
        result = await self.dispatcher.dispatch(
            alert, recipients, timeout=self.dispatch_timeout,
        )

        try:
            await self.stats.apply(alert.alert_id, result)
        except StatsWriteError as exc:
            logger.error(
                "Dispatch of %s succeeded but counters were not updated: %s",
                alert.alert_id, exc.message,
                extra={"alert_id": alert.alert_id, "sent": result.total_sent},
            )

        return result

    # ── Connectivity ──

    async def check_channels(self) -> Dict[str, Dict[str, Any]]:
        """
        Check each channel provider.

        Returns ``{"sms": {...}, "email": {...}}`` where each entry has
        ``available``, ``status`` (connected | error | unavailable) and, on
        failure, ``error``.
        """
        report: Dict[str, Dict[str, Any]] = {}
        for channel, provider in self.providers.items():
            if provider is None:
                entry: Dict[str, Any] = {"available": False, "status": "unavailable"}
                if channel in self._unavailable:
                    entry["error"] = self._unavailable[channel]
                report[channel.value] = entry
                continue
            try:
                await asyncio.wait_for(provider.verify(), CHANNEL_CHECK_TIMEOUT_SECONDS)
            except Exception as exc:
                logger.warning("%s channel check failed: %s", channel.value, exc)
                report[channel.value] = {
                    "available": True,
                    "status": "error",
                    "error": str(exc) or type(exc).__name__,
                    "provider": provider.name,
                }
            else:
                report[channel.value] = {
                    "available": True,
                    "status": "connected",
                    "provider": provider.name,
                }
        return report

    async def aclose(self) -> None:
        for provider in self.providers.values():
            if provider is not None:
                await provider.aclose()


def build_engine(
    user_store: UserStore,
    alert_store: AlertStore,
    settings: Optional[Settings] = None,
    **provider_kwargs: Any,
) -> NotificationEngine:
    """
    Build an engine with providers chosen by configuration.

    A provider that cannot be configured is left out and its channel is
    reported as unavailable; dispatch then makes zero attempts on it.
    ``provider_kwargs`` are forwarded to the SMS builder (e.g. an httpx
    transport in tests).
    """
    settings = settings or get_settings()
    unavailable: Dict[NotificationChannel, str] = {}

    sms_provider: Optional[SmsProvider] = None
    try:
        sms_provider = build_sms_provider(settings, **provider_kwargs)
    except ConfigurationError as exc:
        logger.warning("SMS channel unavailable: %s", exc.message)
        unavailable[NotificationChannel.SMS] = exc.message
    if sms_provider is None and NotificationChannel.SMS not in unavailable:
        unavailable[NotificationChannel.SMS] = "SMS disabled"

    email_provider: Optional[EmailProvider] = None
    try:
        email_provider = build_email_provider(settings)
    except ConfigurationError as exc:
        logger.warning("Email channel unavailable: %s", exc.message)
        unavailable[NotificationChannel.EMAIL] = exc.message
    if email_provider is None and NotificationChannel.EMAIL not in unavailable:
        unavailable[NotificationChannel.EMAIL] = "Email disabled"

    logger.info(
        "Notification engine ready (sms=%s, email=%s)",
        sms_provider.name if sms_provider else "off",
        email_provider.name if email_provider else "off",
    )

    return NotificationEngine(
        user_store,
        alert_store,
        sms_provider=sms_provider,
        email_provider=email_provider,
        max_concurrency=settings.DISPATCH_MAX_CONCURRENCY,
        provider_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        dispatch_timeout=settings.DISPATCH_TIMEOUT_SECONDS,
        max_error_records=settings.MAX_ERROR_RECORDS,
        stats_retry=RetryConfig(
            max_attempts=settings.STATS_WRITE_RETRIES,
            backoff_base_seconds=settings.STATS_RETRY_BACKOFF_SECONDS,
        ),
        signature=settings.ALERT_SYSTEM_NAME,
        unavailable=unavailable,
    )
