"""
Shared FastAPI dependencies.

The notification engine is built once in the application lifespan and
kept on ``app.state``; routes receive it through ``get_notification_engine``
so tests can swap in an engine over in-memory stores with
``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Request

from backend.app.alerts.notification_service import NotificationEngine
from backend.app.core.database import ping_db
from backend.app.core.errors import ConfigurationError


def get_notification_engine(request: Request) -> NotificationEngine:
    engine = getattr(request.app.state, "notification_engine", None)
    if engine is None:
        raise ConfigurationError("Notification engine", "not initialised")
    return engine


def get_db_probe() -> Callable[[], Awaitable[None]]:
    """Database round-trip used by the health report."""
    return ping_db
