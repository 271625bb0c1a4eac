"""
geo_fence.py — Spatial targeting for alert broadcasting.

Determines which users fall within an alert's geographic zone using the
Haversine mathematics from the radius utilities.

═══════════════════════════════════════════════════════════════════════════
GEO-FENCE DESIGN
═══════════════════════════════════════════════════════════════════════════

An alert with a primary location defines a circular geo-fence:

    centre:  alert.location                       — event epicentre
    radius:  caller radius, else severity radius  — impact zone

A user is targeted if:

    haversine(alert.location, user.location) ≤ radius_km

For large user lists, a bounding-box pre-filter eliminates most candidates
before running the trig in Haversine:

    Step 1 — Compute bounding box (lat_min, lat_max, lon_min, lon_max)
    Step 2 — Reject users outside the box (simple float comparison)
    Step 3 — Run Haversine only on candidates inside the box

The SQL store pushes step 1–2 into the WHERE clause and calls
``filter_users_within_radius`` for step 3.

═══════════════════════════════════════════════════════════════════════════
SEVERITY RADIUS
═══════════════════════════════════════════════════════════════════════════

    Severity      Radius (km)
    ──────────    ───────────
    info              10
    minor             20
    moderate          50
    severe           100
    extreme          200
    (other)           50
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, List, Optional, Union

from backend.app.alerts.models import NotifiableUser
from backend.app.spatial.radius_utils import (
    Coordinate,
    bounding_box,
    haversine,
    inside_bbox,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════════════════

SEVERITY_RADIUS_KM = {
    "info": 10.0,
    "minor": 20.0,
    "moderate": 50.0,
    "severe": 100.0,
    "extreme": 200.0,
}

DEFAULT_RADIUS_KM = 50.0


def radius_for_severity(severity: Optional[Union[str, Enum]]) -> float:
    """Impact radius in km for a severity level (enum or string)."""
    key = severity.value if isinstance(severity, Enum) else severity
    return SEVERITY_RADIUS_KM.get(key, DEFAULT_RADIUS_KM)


# ═══════════════════════════════════════════════════════════════════════════
# Core Geo-fence Filtering
# ═══════════════════════════════════════════════════════════════════════════

def filter_users_within_radius(
    center: Coordinate,
    radius_km: float,
    users: Iterable[NotifiableUser],
) -> List[NotifiableUser]:
    """
    Keep the users whose location lies within ``radius_km`` of ``center``.

    Users without a location are never inside a geo-fence. Input order is
    preserved.

    Examples
    --------
    >>> centre = Coordinate(13.08, 80.27)
    >>> near = NotifiableUser("u1", "near", "n@x.io", location=Coordinate(13.08, 80.27))
    >>> far = NotifiableUser("u2", "far", "f@x.io", location=Coordinate(20.0, 70.0))
    >>> [u.id for u in filter_users_within_radius(centre, 10, [near, far])]
    ['u1']
    """
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    bbox = bounding_box(center, radius_km)

    targeted: List[NotifiableUser] = []
    excluded = 0

    for user in users:
        if user.location is None or not inside_bbox(user.location, bbox):
            excluded += 1
            continue

        if haversine(center, user.location) <= radius_km:
            targeted.append(user)
        else:
            excluded += 1

    logger.debug(
        "Geo-fence filter: %d targeted, %d excluded (radius=%.1f km)",
        len(targeted), excluded, radius_km,
    )

    return targeted
