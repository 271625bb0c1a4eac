"""
stores.py — Persistence interfaces for users and alerts.

The notification engine never talks to a database directly. It depends on
two narrow async interfaces:

    UserStore    — read-only recipient lookups (geo, area, role, id)
    AlertStore   — alert fetch/save + atomic counter increment

Every UserStore query returns only *eligible* users (status active and
email verified). The resolver re-applies the check, so a lax adapter
cannot leak inactive accounts into a dispatch.

In-memory adapters live here; the SQLAlchemy adapters are in
repository.py.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, FrozenSet, Iterable, List, Optional

from backend.app.alerts.geo_fence import filter_users_within_radius
from backend.app.alerts.models import Alert, NotifiableUser, NotificationChannel, UserRole
from backend.app.core.errors import NotFoundError
from backend.app.spatial.radius_utils import Coordinate

logger = logging.getLogger(__name__)

RoleFilter = Optional[FrozenSet[UserRole]]


# ═══════════════════════════════════════════════════════════════════════════
# Interfaces
# ═══════════════════════════════════════════════════════════════════════════

class UserStore(ABC):
    """Recipient lookups. All methods exclude ineligible users."""

    @abstractmethod
    async def find_eligible(self, role_filter: RoleFilter = None) -> List[NotifiableUser]:
        """All eligible users, optionally restricted to ``role_filter``."""

    @abstractmethod
    async def find_eligible_by_radius(
        self,
        point: Coordinate,
        radius_km: float,
        role_filter: RoleFilter = None,
    ) -> List[NotifiableUser]:
        """Eligible users located within ``radius_km`` of ``point``."""

    @abstractmethod
    async def find_by_area_names(
        self,
        names: Iterable[str],
        role_filter: RoleFilter = None,
    ) -> List[NotifiableUser]:
        """Eligible users whose city, state or organization is in ``names``."""

    @abstractmethod
    async def find_by_roles(self, roles: Iterable[UserRole]) -> List[NotifiableUser]:
        """Eligible users holding any of ``roles``."""

    @abstractmethod
    async def find_by_ids(self, ids: Iterable[str]) -> List[NotifiableUser]:
        """Eligible users among ``ids``; unknown ids are ignored."""


class AlertStore(ABC):
    """Alert persistence used by the engine and the HTTP layer."""

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Alert:
        """Fetch an alert; raises NotFoundError when absent."""

    @abstractmethod
    async def save_alert(self, alert: Alert) -> Alert:
        """Insert or replace an alert."""

    @abstractmethod
    async def increment_notification_counters(
        self,
        alert_id: str,
        sent_delta: int,
        delivered_delta: int,
        channels_to_add: Iterable[NotificationChannel],
    ) -> None:
        """
        Atomically add to the sent/delivered counters and union the channel
        set. Raises NotFoundError for an unknown alert id.
        """


# ═══════════════════════════════════════════════════════════════════════════
# In-memory adapters
# ═══════════════════════════════════════════════════════════════════════════

def _role_ok(user: NotifiableUser, role_filter: RoleFilter) -> bool:
    return not role_filter or user.role in role_filter


class InMemoryUserStore(UserStore):
    """Dict-backed user store for tests and local runs."""

    def __init__(self, users: Iterable[NotifiableUser] = ()) -> None:
        self._users: Dict[str, NotifiableUser] = {}
        for user in users:
            self.add(user)

    def add(self, user: NotifiableUser) -> None:
        self._users[user.id] = user

    def _eligible(self, role_filter: RoleFilter = None) -> List[NotifiableUser]:
        return [
            u for u in self._users.values()
            if u.is_eligible and _role_ok(u, role_filter)
        ]

    async def find_eligible(self, role_filter: RoleFilter = None) -> List[NotifiableUser]:
        return self._eligible(role_filter)

    async def find_eligible_by_radius(
        self,
        point: Coordinate,
        radius_km: float,
        role_filter: RoleFilter = None,
    ) -> List[NotifiableUser]:
        return filter_users_within_radius(point, radius_km, self._eligible(role_filter))

    async def find_by_area_names(
        self,
        names: Iterable[str],
        role_filter: RoleFilter = None,
    ) -> List[NotifiableUser]:
        names = list(names)
        return [u for u in self._eligible(role_filter) if u.matches_area(names)]

    async def find_by_roles(self, roles: Iterable[UserRole]) -> List[NotifiableUser]:
        wanted = frozenset(UserRole(r) for r in roles)
        return [u for u in self._eligible() if u.role in wanted]

    async def find_by_ids(self, ids: Iterable[str]) -> List[NotifiableUser]:
        return [
            self._users[i] for i in dict.fromkeys(ids)
            if i in self._users and self._users[i].is_eligible
        ]


class InMemoryAlertStore(AlertStore):
    """Dict-backed alert store; increments happen without an await so they are atomic on the loop."""

    def __init__(self, alerts: Iterable[Alert] = ()) -> None:
        self._alerts: Dict[str, Alert] = {a.alert_id: a for a in alerts}

    async def get_alert(self, alert_id: str) -> Alert:
        try:
            return self._alerts[alert_id]
        except KeyError:
            raise NotFoundError("Alert", alert_id=alert_id) from None

    async def save_alert(self, alert: Alert) -> Alert:
        self._alerts[alert.alert_id] = alert
        return alert

    async def increment_notification_counters(
        self,
        alert_id: str,
        sent_delta: int,
        delivered_delta: int,
        channels_to_add: Iterable[NotificationChannel],
    ) -> None:
        alert = await self.get_alert(alert_id)
        counters = alert.notifications
        counters.sent += sent_delta
        counters.delivered += delivered_delta
        counters.channels.update(NotificationChannel(c) for c in channels_to_add)
        logger.debug(
            "Counters for %s now sent=%d delivered=%d channels=%s",
            alert_id, counters.sent, counters.delivered,
            sorted(c.value for c in counters.channels),
        )
