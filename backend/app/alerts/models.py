"""
models.py — Shared data structures for the notification engine.

Defines:
    • Severity / Urgency / Certainty — the three priority axes
    • AlertStatus — lifecycle with an explicit transition table
    • UserRole / UserStatus — recipient classification
    • NotificationChannel — SMS and email delivery media
    • Alert — the alert being dispatched (priority score derived, never stored)
    • NotifiableUser + NotificationPreferences — a potential recipient
    • RecipientSet / RecipientFilters — resolution input and output
    • DeliveryError / ChannelTally / DispatchResult — per-dispatch outcome

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    draft ──► active ──► update ──► active        (re-dispatch allowed)
                 │          │
                 │          ├──► cancel           (terminal)
                 │          └──► expired          (terminal)
                 ├──► cancel
                 └──► expired                      (set by sweep)

Only ``active`` and ``update`` alerts may be dispatched.

═══════════════════════════════════════════════════════════════════════════
NOTIFICATION PREFERENCES
═══════════════════════════════════════════════════════════════════════════

    Channel   enabled   alerts   emergencies
    ───────   ───────   ──────   ───────────
    sms       False     False    True          (severe/extreme use emergencies)
    email     True      True     —             (no emergency tier)

Defaults are applied at construction so the gate never null-checks.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntFlag
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Set

from backend.app.alerts import priority
from backend.app.core.errors import InvalidStatusTransitionError, ValidationError
from backend.app.spatial.radius_utils import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    """Alert severity — ordered from least to most severe."""
    INFO     = "info"
    MINOR    = "minor"
    MODERATE = "moderate"
    SEVERE   = "severe"
    EXTREME  = "extreme"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @property
    def is_emergency(self) -> bool:
        """Severe and extreme alerts use the emergency preference tier."""
        return self in (Severity.SEVERE, Severity.EXTREME)


_SEVERITY_ORDER = [
    Severity.INFO,
    Severity.MINOR,
    Severity.MODERATE,
    Severity.SEVERE,
    Severity.EXTREME,
]


class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    EXPECTED  = "expected"
    FUTURE    = "future"
    PAST      = "past"


class Certainty(str, Enum):
    OBSERVED = "observed"
    LIKELY   = "likely"
    POSSIBLE = "possible"
    UNLIKELY = "unlikely"
    UNKNOWN  = "unknown"


class AlertType(str, Enum):
    WEATHER    = "weather"
    EARTHQUAKE = "earthquake"
    FLOOD      = "flood"
    FIRE       = "fire"
    TSUNAMI    = "tsunami"
    LANDSLIDE  = "landslide"
    VOLCANIC   = "volcanic"
    HEALTH     = "health"
    SECURITY   = "security"
    OTHER      = "other"


class AlertStatus(str, Enum):
    DRAFT   = "draft"
    ACTIVE  = "active"
    UPDATE  = "update"
    CANCEL  = "cancel"
    EXPIRED = "expired"


ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.DRAFT: frozenset({AlertStatus.ACTIVE, AlertStatus.CANCEL}),
    AlertStatus.ACTIVE: frozenset(
        {AlertStatus.UPDATE, AlertStatus.CANCEL, AlertStatus.EXPIRED}
    ),
    AlertStatus.UPDATE: frozenset(
        {AlertStatus.ACTIVE, AlertStatus.CANCEL, AlertStatus.EXPIRED}
    ),
    AlertStatus.CANCEL: frozenset(),
    AlertStatus.EXPIRED: frozenset(),
}

DISPATCHABLE_STATUSES: FrozenSet[AlertStatus] = frozenset(
    {AlertStatus.ACTIVE, AlertStatus.UPDATE}
)


class UserRole(str, Enum):
    ADMIN       = "admin"
    COORDINATOR = "coordinator"
    RESPONDER   = "responder"
    VOLUNTEER   = "volunteer"
    CITIZEN     = "citizen"


# Always notified for severe/extreme alerts, wherever they are
EMERGENCY_PERSONNEL_ROLES: FrozenSet[UserRole] = frozenset(
    {UserRole.COORDINATOR, UserRole.RESPONDER, UserRole.ADMIN}
)


class UserStatus(str, Enum):
    ACTIVE    = "active"
    INACTIVE  = "inactive"
    SUSPENDED = "suspended"
    PENDING   = "pending"


class NotificationChannel(str, Enum):
    """Delivery media handled by the dispatcher."""
    SMS   = "sms"
    EMAIL = "email"

    @property
    def flag(self) -> "ChannelFlag":
        return ChannelFlag[self.name]


class ChannelFlag(IntFlag):
    """Bit representation used for atomic set-union in SQL stores."""
    SMS   = 1
    EMAIL = 2


def channels_to_mask(channels: Iterable[NotificationChannel]) -> int:
    mask = 0
    for channel in channels:
        mask |= int(channel.flag)
    return mask


def mask_to_channels(mask: int) -> Set[NotificationChannel]:
    return {c for c in NotificationChannel if mask & int(c.flag)}


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_alert_id() -> str:
    millis = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"ALT-{millis}-{uuid.uuid4().hex[:9].upper()}"


DEFAULT_ALERT_LIFETIME = timedelta(hours=24)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# Alert
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AffectedArea:
    """A named area touched by the alert (polygon, point or circle)."""
    name: str
    geometry_type: str = "Point"
    coordinates: Any = None
    population: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "geometry_type": self.geometry_type,
            "coordinates": self.coordinates,
            "population": self.population,
        }


@dataclass
class AlertSource:
    """Issuing organisation and optional point of contact."""
    organization: str = "Unknown Organization"
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    website: Optional[str] = None

    @property
    def has_contact(self) -> bool:
        return bool(self.contact_name or self.contact_email)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "organization": self.organization,
            "contact": {
                "name": self.contact_name,
                "email": self.contact_email,
                "phone": self.contact_phone,
            } if self.has_contact or self.contact_phone else None,
            "website": self.website,
        }


@dataclass
class NotificationCounters:
    """Aggregate delivery counters persisted on the alert."""
    sent: int = 0
    delivered: int = 0
    acknowledged: int = 0
    channels: Set[NotificationChannel] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "delivered": self.delivered,
            "acknowledged": self.acknowledged,
            "channels": sorted(c.value for c in self.channels),
        }


# Fields that apply_update() may change
_UPDATABLE_FIELDS = frozenset({
    "type", "severity", "urgency", "certainty", "title", "description",
    "instructions", "location", "affected_areas", "effective_time",
    "expiration_time", "category", "source",
})


@dataclass
class Alert:
    """
    An emergency alert as seen by the notification engine.

    ``priority_score`` is derived from severity/urgency/certainty on every
    read, so it is always consistent with the current field values.
    """
    title: str
    description: str
    type: AlertType = AlertType.OTHER
    severity: Severity = Severity.INFO
    urgency: Urgency = Urgency.EXPECTED
    certainty: Certainty = Certainty.POSSIBLE
    instructions: Optional[str] = None
    location: Optional[Coordinate] = None
    affected_areas: List[AffectedArea] = field(default_factory=list)
    effective_time: datetime = field(default_factory=_now)
    expiration_time: Optional[datetime] = None  # defaults to effective_time + 24h
    status: AlertStatus = AlertStatus.ACTIVE
    source: AlertSource = field(default_factory=AlertSource)
    category: str = "other"
    notifications: NotificationCounters = field(default_factory=NotificationCounters)
    version: int = 1
    created_by: str = "system"
    last_updated_by: Optional[str] = None
    alert_id: str = field(default_factory=_generate_alert_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        self.type = AlertType(self.type)
        self.severity = Severity(self.severity)
        self.urgency = Urgency(self.urgency)
        self.certainty = Certainty(self.certainty)
        self.status = AlertStatus(self.status)
        if self.expiration_time is None:
            self.expiration_time = self.effective_time + DEFAULT_ALERT_LIFETIME

    # ── Derived ──

    @property
    def priority_score(self) -> int:
        return priority.score(self.severity, self.urgency, self.certainty)

    @property
    def is_dispatchable(self) -> bool:
        return self.status in DISPATCHABLE_STATUSES

    @property
    def area_names(self) -> List[str]:
        return [area.name for area in self.affected_areas if area.name]

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """True if active and inside its effective window."""
        now = _aware(now or _now())
        return (
            self.status == AlertStatus.ACTIVE
            and _aware(self.effective_time) <= now < _aware(self.expiration_time)
        )

    def location_string(self) -> str:
        names = self.area_names
        if names:
            return ", ".join(names)
        return "Location not specified"

    # ── Mutation ──

    def apply_update(self, updated_by: str, **changes: Any) -> "Alert":
        """
        Change content fields in place and bump the version.

        Raises ValidationError for fields that cannot be changed this way
        (status goes through transition_to, counters through the store).
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields not updatable: {sorted(unknown)}",
                field=sorted(unknown)[0],
            )
        for name, value in changes.items():
            setattr(self, name, value)
        self.__post_init__()
        self._touch(updated_by)
        return self

    def transition_to(
        self, status: AlertStatus, updated_by: Optional[str] = None,
    ) -> "Alert":
        """Move along the lifecycle; terminal states reject every move."""
        target = AlertStatus(status)
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransitionError(
                self.alert_id, self.status.value, target.value,
            )
        self.status = target
        self._touch(updated_by or self.last_updated_by or self.created_by)
        return self

    def _touch(self, updated_by: str) -> None:
        self.version += 1
        self.last_updated_by = updated_by
        self.updated_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "urgency": self.urgency.value,
            "certainty": self.certainty.value,
            "priority_score": self.priority_score,
            "title": self.title,
            "description": self.description,
            "instructions": self.instructions,
            "location": (
                {
                    "latitude": self.location.latitude,
                    "longitude": self.location.longitude,
                }
                if self.location else None
            ),
            "affected_areas": [a.to_dict() for a in self.affected_areas],
            "effective_time": self.effective_time.isoformat(),
            "expiration_time": self.expiration_time.isoformat(),
            "status": self.status.value,
            "source": self.source.to_dict(),
            "category": self.category,
            "notifications": self.notifications.to_dict(),
            "version": self.version,
            "created_by": self.created_by,
            "last_updated_by": self.last_updated_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SmsPreferences:
    enabled: bool = False
    alerts: bool = False
    emergencies: bool = True


@dataclass(frozen=True)
class EmailPreferences:
    enabled: bool = True
    alerts: bool = True


@dataclass(frozen=True)
class NotificationPreferences:
    sms: SmsPreferences = field(default_factory=SmsPreferences)
    email: EmailPreferences = field(default_factory=EmailPreferences)


@dataclass
class NotifiableUser:
    """A user record as needed for targeting and delivery."""
    id: str
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    role: UserRole = UserRole.CITIZEN
    status: UserStatus = UserStatus.ACTIVE
    email_verified: bool = False
    location: Optional[Coordinate] = None
    city: Optional[str] = None
    state: Optional[str] = None
    organization: Optional[str] = None
    preferences: NotificationPreferences = field(default_factory=NotificationPreferences)

    def __post_init__(self) -> None:
        self.role = UserRole(self.role)
        self.status = UserStatus(self.status)

    @property
    def is_eligible(self) -> bool:
        """Active, verified accounts are the only notifiable ones."""
        return self.status == UserStatus.ACTIVE and self.email_verified

    @property
    def display_name(self) -> str:
        return self.first_name or self.username

    def matches_area(self, names: Iterable[str]) -> bool:
        wanted = set(names)
        return any(
            value in wanted
            for value in (self.city, self.state, self.organization)
            if value
        )


# ═══════════════════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RecipientFilters:
    """Caller-supplied narrowing for broad dispatch."""
    roles: Optional[FrozenSet[UserRole]] = None
    radius_km: Optional[float] = None

    def __post_init__(self) -> None:
        if self.roles is not None:
            object.__setattr__(
                self, "roles", frozenset(UserRole(r) for r in self.roles) or None,
            )
        if self.radius_km is not None and self.radius_km <= 0:
            raise ValidationError(
                f"Radius must be positive, got {self.radius_km}",
                field="radius_km",
            )


class RecipientSet:
    """Insertion-ordered users, at most one entry per user id."""

    def __init__(self, users: Iterable[NotifiableUser] = ()) -> None:
        self._users: Dict[str, NotifiableUser] = {}
        self.update(users)

    def add(self, user: NotifiableUser) -> bool:
        """Add ``user``; returns False if the id was already present."""
        if user.id in self._users:
            return False
        self._users[user.id] = user
        return True

    def update(self, users: Iterable[NotifiableUser]) -> int:
        return sum(1 for user in users if self.add(user))

    @property
    def ids(self) -> List[str]:
        return list(self._users)

    def __iter__(self) -> Iterator[NotifiableUser]:
        return iter(list(self._users.values()))

    def __len__(self) -> int:
        return len(self._users)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, NotifiableUser):
            return item.id in self._users
        return item in self._users

    def __repr__(self) -> str:
        return f"RecipientSet({len(self)} users)"


# ═══════════════════════════════════════════════════════════════════════════
# Dispatch outcome
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DeliveryError:
    """Who was not reached on a channel, and why."""
    user: str
    user_id: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"user": self.user, "user_id": self.user_id, "error": self.error}


@dataclass
class ChannelTally:
    """Per-channel counters for one dispatch."""
    sent: int = 0
    failed: int = 0
    errors: List[DeliveryError] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.sent + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class DispatchResult:
    """Aggregated result of one dispatch call (not persisted)."""
    sms: ChannelTally = field(default_factory=ChannelTally)
    email: ChannelTally = field(default_factory=ChannelTally)
    recipient_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def tally(self, channel: NotificationChannel) -> ChannelTally:
        return getattr(self, NotificationChannel(channel).value)

    @property
    def total_sent(self) -> int:
        return sum(self.tally(c).sent for c in NotificationChannel)

    @property
    def total_failed(self) -> int:
        return sum(self.tally(c).failed for c in NotificationChannel)

    @property
    def successful_channels(self) -> Set[NotificationChannel]:
        return {c for c in NotificationChannel if self.tally(c).sent > 0}

    @property
    def duration_seconds(self) -> float:
        if not (self.started_at and self.completed_at):
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {c.value: self.tally(c).to_dict() for c in NotificationChannel}

