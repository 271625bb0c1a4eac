"""
dispatcher.py — Concurrent multi-channel fan-out with partial-failure isolation.

═══════════════════════════════════════════════════════════════════════════
EXECUTION MODEL
═══════════════════════════════════════════════════════════════════════════

    recipients × channels ──ChannelGate──► attempts (user, channel)
                                              │
                       asyncio.Semaphore(max_concurrency)
                                              │
                          wait_for(provider call, provider_timeout)
                                              │
                                    AttemptOutcome (immutable)
                                              │
                        merged into DispatchResult after all finish

Every attempt catches its own errors and turns them into an outcome, so
one failed user/channel never affects another and nothing escapes the
batch. Outcomes are merged in attempt order once the batch is complete;
there are no shared counters while attempts run.

═══════════════════════════════════════════════════════════════════════════
BATCH TIMEOUT
═══════════════════════════════════════════════════════════════════════════

With ``timeout`` set, the batch stops waiting when it elapses:
    • finished attempts keep their outcome
    • in-flight and queued attempts are cancelled and counted as failed
      with a timeout error

If the caller cancels ``dispatch`` itself (e.g. ``asyncio.wait_for`` around
it, or a dropped request), every outstanding attempt is cancelled before
the CancelledError propagates. No send continues after the caller is gone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from backend.app.alerts.channel_gate import ChannelGate
from backend.app.alerts.channels.base import EmailProvider, SmsProvider
from backend.app.alerts.formatter import DEFAULT_SIGNATURE, format_email, format_sms
from backend.app.alerts.models import (
    Alert,
    DeliveryError,
    DispatchResult,
    NotifiableUser,
    NotificationChannel,
)

logger = logging.getLogger(__name__)

BATCH_TIMEOUT_ERROR = "Dispatch timed out before delivery completed"


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one (user, channel) delivery attempt."""
    index: int
    channel: NotificationChannel
    user_id: str
    username: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DispatchCoordinator:
    """
    Fans an alert out to recipients over every configured channel.

    Parameters
    ----------
    sms_provider, email_provider
        Channel providers; a missing provider means the channel is off.
    gate
        Eligibility predicate. Defaults to a gate over the configured
        channels.
    max_concurrency
        Upper bound on simultaneous provider calls.
    provider_timeout
        Seconds allowed per provider call (None = unbounded).
    max_error_records
        Per-channel cap on stored error records; counts are never capped.
    """

    def __init__(
        self,
        *,
        sms_provider: Optional[SmsProvider] = None,
        email_provider: Optional[EmailProvider] = None,
        gate: Optional[ChannelGate] = None,
        max_concurrency: int = 20,
        provider_timeout: Optional[float] = 15.0,
        max_error_records: int = 100,
        signature: str = DEFAULT_SIGNATURE,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.sms_provider = sms_provider
        self.email_provider = email_provider
        self.gate = gate or ChannelGate(self.configured_channels)
        self.max_concurrency = max_concurrency
        self.provider_timeout = provider_timeout
        self.max_error_records = max_error_records
        self.signature = signature

    @property
    def configured_channels(self) -> List[NotificationChannel]:
        channels = []
        if self.sms_provider is not None:
            channels.append(NotificationChannel.SMS)
        if self.email_provider is not None:
            channels.append(NotificationChannel.EMAIL)
        return channels

    # ── Public API ──

    async def dispatch(
        self,
        alert: Alert,
        recipients: Iterable[NotifiableUser],
        *,
        timeout: Optional[float] = None,
    ) -> DispatchResult:
        recipients = list(recipients)
        result = DispatchResult(
            recipient_count=len(recipients),
            started_at=datetime.now(timezone.utc),
        )
        t0 = time.perf_counter()

        configured = set(self.configured_channels)
        jobs = [
            (user, channel)
            for user in recipients
            for channel in self.gate.eligible_channels(user, alert)
            if channel in configured
        ]

        if jobs:
            sms_body = format_sms(alert)
            semaphore = asyncio.Semaphore(self.max_concurrency)
            tasks = [
                asyncio.create_task(
                    self._attempt(semaphore, index, alert, user, channel, sms_body)
                )
                for index, (user, channel) in enumerate(jobs)
            ]
            outcomes = await self._collect(tasks, jobs, timeout)
            self._merge(result, outcomes)

        result.completed_at = datetime.now(timezone.utc)
        duration_ms = round((time.perf_counter() - t0) * 1000, 1)

        logger.info(
            "Dispatched %s to %d recipients: sms %d/%d, email %d/%d in %.1fms",
            alert.alert_id, len(recipients),
            result.sms.sent, result.sms.attempted,
            result.email.sent, result.email.attempted,
            duration_ms,
            extra={
                "alert_id": alert.alert_id,
                "recipient_count": len(recipients),
                "sent": result.total_sent,
                "failed": result.total_failed,
                "duration_ms": duration_ms,
            },
        )
        return result

    # ── Internals ──

    async def _collect(
        self,
        tasks: List["asyncio.Task[AttemptOutcome]"],
        jobs: List[tuple],
        timeout: Optional[float],
    ) -> List[AttemptOutcome]:
        try:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
        except asyncio.CancelledError:
            # Caller gave up: no attempt may outlive the dispatch
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning("Dispatch cancelled; aborted %d attempts", len(tasks))
            raise

        if pending:
            logger.warning(
                "Batch timeout after %.1fs; cancelling %d attempts",
                timeout, len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: List[AttemptOutcome] = []
        for index, task in enumerate(tasks):
            if task.cancelled():
                user, channel = jobs[index]
                outcomes.append(AttemptOutcome(
                    index, channel, user.id, user.username, BATCH_TIMEOUT_ERROR,
                ))
            else:
                outcomes.append(task.result())
        return outcomes

    async def _attempt(
        self,
        semaphore: asyncio.Semaphore,
        index: int,
        alert: Alert,
        user: NotifiableUser,
        channel: NotificationChannel,
        sms_body: str,
    ) -> AttemptOutcome:
        async with semaphore:
            error: Optional[str] = None
            try:
                await asyncio.wait_for(
                    self._send(alert, user, channel, sms_body),
                    timeout=self.provider_timeout,
                )
            except asyncio.TimeoutError:
                error = f"{channel.value} provider timed out after {self.provider_timeout}s"
            except Exception as exc:
                error = str(exc) or type(exc).__name__

        if error is not None:
            logger.warning(
                "[%s] Delivery to %s failed: %s",
                channel.value.upper(), user.username, error,
                extra={"alert_id": alert.alert_id, "channel": channel.value, "user_id": user.id},
            )
        return AttemptOutcome(index, channel, user.id, user.username, error)

    async def _send(
        self,
        alert: Alert,
        user: NotifiableUser,
        channel: NotificationChannel,
        sms_body: str,
    ) -> None:
        if channel is NotificationChannel.SMS:
            await self.sms_provider.send(user.phone, sms_body)
        else:
            message = format_email(alert, user, signature=self.signature)
            await self.email_provider.send(user.email, message)

    def _merge(self, result: DispatchResult, outcomes: List[AttemptOutcome]) -> None:
        for outcome in sorted(outcomes, key=lambda o: o.index):
            tally = result.tally(outcome.channel)
            if outcome.ok:
                tally.sent += 1
                continue
            tally.failed += 1
            if len(tally.errors) < self.max_error_records:
                tally.errors.append(
                    DeliveryError(outcome.username, outcome.user_id, outcome.error)
                )
