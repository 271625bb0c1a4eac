"""
recipients.py — Turn an alert (plus optional filters) into a recipient set.

═══════════════════════════════════════════════════════════════════════════
RESOLUTION PRECEDENCE
═══════════════════════════════════════════════════════════════════════════

    Step  Source                 Applies when
    ────  ─────────────────────  ───────────────────────────────────────
    1     eligible users         always (role filter narrows)
    2     geo radius             alert has a location
    3     area-name match        steps 1–2 found nobody, alert has areas
    4     emergency personnel    severity is severe or extreme

Step 1 and 2 are one query: with a location the base population is
restricted to the radius, without one it is every eligible user.
Results from all steps are unioned and deduplicated by user id.

Step 4 adds coordinators, responders and admins wherever they are and
ignores the caller's role filter: emergency staff are always told.

The direct paths ``resolve_user_ids`` and ``resolve_roles`` skip steps
2–4 entirely.

Any exception raised by the user store is wrapped in ResolutionError.
An empty set is a valid result.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Iterable, List, Optional, TypeVar

from backend.app.alerts.geo_fence import radius_for_severity
from backend.app.alerts.models import (
    EMERGENCY_PERSONNEL_ROLES,
    Alert,
    NotifiableUser,
    RecipientFilters,
    RecipientSet,
    UserRole,
)
from backend.app.alerts.stores import UserStore
from backend.app.core.errors import ResolutionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecipientResolver:
    """Resolves deduplicated, eligible recipients from a UserStore."""

    def __init__(self, user_store: UserStore) -> None:
        self._users = user_store

    async def _query(self, step: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except Exception as exc:
            logger.error("User store query failed during %s: %s", step, exc)
            raise ResolutionError(str(exc) or type(exc).__name__, step=step) from exc

    @staticmethod
    def _eligible_only(users: Iterable[NotifiableUser]) -> List[NotifiableUser]:
        return [u for u in users if u.is_eligible]

    # ── Broad dispatch ──

    async def resolve(
        self,
        alert: Alert,
        filters: Optional[RecipientFilters] = None,
    ) -> RecipientSet:
        filters = filters or RecipientFilters()
        recipients = RecipientSet()

        if alert.location is not None:
            radius_km = filters.radius_km or radius_for_severity(alert.severity)
            base = await self._query(
                "geo",
                self._users.find_eligible_by_radius(
                    alert.location, radius_km, filters.roles,
                ),
            )
        else:
            radius_km = None
            base = await self._query(
                "base", self._users.find_eligible(filters.roles),
            )
        recipients.update(self._eligible_only(base))

        if not recipients and alert.area_names:
            matched = await self._query(
                "area",
                self._users.find_by_area_names(alert.area_names, filters.roles),
            )
            added = recipients.update(self._eligible_only(matched))
            logger.info(
                "Area fallback for %s matched %d users on %s",
                alert.alert_id, added, alert.area_names,
                extra={"alert_id": alert.alert_id},
            )

        if alert.severity.is_emergency:
            personnel = await self._query(
                "emergency", self._users.find_by_roles(EMERGENCY_PERSONNEL_ROLES),
            )
            added = recipients.update(self._eligible_only(personnel))
            if added:
                logger.info(
                    "Emergency override added %d personnel to %s",
                    added, alert.alert_id,
                    extra={"alert_id": alert.alert_id},
                )

        logger.info(
            "Resolved %d recipients for %s (severity=%s, radius=%s km)",
            len(recipients), alert.alert_id, alert.severity.value, radius_km,
            extra={"alert_id": alert.alert_id, "recipient_count": len(recipients)},
        )
        return recipients

    # ── Direct paths ──

    async def resolve_user_ids(self, user_ids: Iterable[str]) -> RecipientSet:
        users = await self._query("ids", self._users.find_by_ids(list(user_ids)))
        return RecipientSet(self._eligible_only(users))

    async def resolve_roles(self, roles: Iterable[UserRole]) -> RecipientSet:
        roles = frozenset(UserRole(r) for r in roles)
        users = await self._query("roles", self._users.find_by_roles(roles))
        return RecipientSet(u for u in self._eligible_only(users) if u.role in roles)
