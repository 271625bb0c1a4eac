"""
stats.py — Persist aggregate delivery counters after a dispatch.

One dispatch produces exactly one atomic increment on the alert:

    sent       += result.total_sent
    delivered  += result.total_sent     (no delivery receipts, so equal)
    channels   |= channels with ≥1 success

Increments are not idempotent: a resend adds to the totals. Nothing is
written when nothing was sent.

Only connection-level failures (dropped socket, timeout, SQLAlchemy
OperationalError/InterfaceError) are retried. Any other store error
fails at once, so a write that may already have been applied is not
repeated. A connection lost after the server committed can still be
counted twice; the write is at-least-once, not exactly-once.

Retries use exponential backoff:

    delay(attempt) = backoff_base × 2^(attempt − 1)

    attempt   delay (base 0.5s)
    ───────   ─────────────────
    1         0.5s
    2         1.0s
    3         (give up → StatsWriteError)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.exc import InterfaceError, OperationalError

from backend.app.alerts.models import DispatchResult
from backend.app.alerts.stores import AlertStore
from backend.app.core.errors import NotFoundError, StatsWriteError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
    OperationalError,
    InterfaceError,
)


@dataclass(frozen=True)
class RetryConfig:
    """Retry parameters for the counter write."""
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5


def _compute_backoff(config: RetryConfig, attempt: int) -> float:
    return config.backoff_base_seconds * (2 ** (attempt - 1))


class StatsUpdater:
    """Applies a DispatchResult to the alert's counters via the AlertStore."""

    def __init__(self, alert_store: AlertStore, retry: RetryConfig = RetryConfig()) -> None:
        self._alerts = alert_store
        self.retry = retry

    async def apply(self, alert_id: str, result: DispatchResult) -> bool:
        """
        Write the counters for one dispatch.

        Returns False when there was nothing to write. Raises
        StatsWriteError once retries are exhausted; an unknown alert id
        or a non-connection error is not retried.
        """
        sent = result.total_sent
        if sent == 0:
            logger.debug("No successful deliveries for %s; counters unchanged", alert_id)
            return False

        channels = sorted(result.successful_channels, key=lambda c: c.value)
        attempts = max(1, self.retry.max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                await self._alerts.increment_notification_counters(
                    alert_id, sent, sent, channels,
                )
            except NotFoundError as exc:
                raise StatsWriteError(alert_id, exc.message, attempts=attempt) from exc
            except TRANSIENT_ERRORS as exc:
                if attempt == attempts:
                    logger.error(
                        "Counter write for %s failed after %d attempts: %s",
                        alert_id, attempt, exc,
                        extra={"alert_id": alert_id},
                    )
                    raise StatsWriteError(alert_id, str(exc), attempts=attempt) from exc

                delay = _compute_backoff(self.retry, attempt)
                logger.info(
                    "Retry %d/%d for counters of %s in %.1fs: %s",
                    attempt, attempts - 1, alert_id, delay, exc,
                )
                await asyncio.sleep(delay)
            except Exception as exc:
                logger.error(
                    "Counter write for %s failed, not retried: %s",
                    alert_id, exc,
                    extra={"alert_id": alert_id},
                )
                raise StatsWriteError(
                    alert_id, str(exc) or type(exc).__name__, attempts=attempt,
                ) from exc
            else:
                logger.info(
                    "Counters for %s incremented by %d on %s",
                    alert_id, sent, [c.value for c in channels],
                    extra={"alert_id": alert_id, "sent": sent},
                )
                return True

        return False
