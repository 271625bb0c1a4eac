"""
radius_utils.py — Great-circle distance and radius checks for alert targeting.

Provides:
    - Haversine distance calculation between two (lat, lon) points
    - Point-in-radius check
    - Bounding-box computation used as a cheap pre-filter (in Python and
      pushed down into SQL by the store adapters)

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where φ is latitude and λ longitude in radians, R ≈ 6,371 km.
Haversine is accurate to ~0.5%, which is well inside the granularity of
severity-based alert radii (10–200 km).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0088  # IAU mean radius


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @classmethod
    def from_lon_lat(cls, lon_lat: Tuple[float, float]) -> "Coordinate":
        """Build from a GeoJSON-ordered ``(lon, lat)`` pair."""
        lon, lat = lon_lat
        return cls(latitude=lat, longitude=lon)

    @property
    def lat_rad(self) -> float:
        """Latitude in radians."""
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        """Longitude in radians."""
        return math.radians(self.longitude)

    def to_lon_lat(self) -> Tuple[float, float]:
        return (self.longitude, self.latitude)


BoundingBox = Tuple[float, float, float, float]


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine(point1: Coordinate, point2: Coordinate) -> float:
    """
    Compute the great-circle distance between two points using the
    Haversine formula.

    Parameters
    ----------
    point1 : Coordinate
        Origin point (e.g. alert epicentre).
    point2 : Coordinate
        Target point (e.g. user location).

    Returns
    -------
    float
        Distance in kilometers, rounded to 4 decimal places.

    Examples
    --------
    >>> haversine(Coordinate(13.0827, 80.2707), Coordinate(12.9716, 77.5946))
    290.2122

    >>> haversine(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))

    return round(EARTH_RADIUS_KM * c, 4)


# ---------------------------------------------------------------------------
# Bounding-box pre-filter (fast rejection before expensive Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinate, radius_km: float) -> BoundingBox:
    """
    Compute a lat/lon bounding box that fully contains the circle defined
    by (center, radius_km).

    Returns (min_lat, max_lat, min_lon, max_lon) in degrees.

    A circle crossing the antimeridian yields a wrapped box with
    ``min_lon > max_lon``; it covers [min_lon, 180] and [-180, max_lon].
    Use ``lon_wraps`` / ``inside_bbox`` rather than a plain range check.
    """
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    # Longitude delta shrinks toward the poles
    lat_rad = math.radians(center.latitude)
    if math.cos(lat_rad) > 1e-10:
        delta_lon = math.degrees(angular / math.cos(lat_rad))
    else:
        delta_lon = 180.0

    min_lat = max(min_lat, -90.0)
    max_lat = min(max_lat, 90.0)

    if delta_lon >= 180.0:
        return (min_lat, max_lat, -180.0, 180.0)

    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180.0:
        min_lon += 360.0
    elif max_lon > 180.0:
        max_lon -= 360.0

    return (min_lat, max_lat, min_lon, max_lon)


def lon_wraps(bbox: BoundingBox) -> bool:
    """True when the box straddles the antimeridian."""
    return bbox[2] > bbox[3]


def inside_bbox(point: Coordinate, bbox: BoundingBox) -> bool:
    """Quick rectangular check."""
    min_lat, max_lat, min_lon, max_lon = bbox
    if not min_lat <= point.latitude <= max_lat:
        return False
    if lon_wraps(bbox):
        return point.longitude >= min_lon or point.longitude <= max_lon
    return min_lon <= point.longitude <= max_lon


# ---------------------------------------------------------------------------
# Radius check
# ---------------------------------------------------------------------------

def is_inside_radius(
    center: Coordinate,
    point: Coordinate,
    radius_km: float,
) -> tuple[bool, float]:
    """
    Check whether ``point`` falls within ``radius_km`` of ``center``.

    Returns
    -------
    (inside, distance_km) : tuple[bool, float]

    Examples
    --------
    >>> loc = Coordinate(13.0827, 80.2707)   # Chennai
    >>> near = Coordinate(13.10, 80.30)      # ~4 km away
    >>> is_inside_radius(loc, near, radius_km=5.0)
    (True, 3.7266)
    """
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    dist = haversine(center, point)
    return (dist <= radius_km, dist)
