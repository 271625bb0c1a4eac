"""
repository.py — SQLAlchemy 2.0 async adapters for the user and alert stores.

Tables:

    notifiable_users   one row per user; preferences flattened into
                       boolean columns, location as latitude/longitude
    alerts             one row per alert; areas and source as JSON,
                       notified channels as a bitmask (sms=1, email=2)

Radius queries push the bounding box into the WHERE clause and finish
with Haversine in Python. Counter updates are a single statement:

    UPDATE alerts
       SET sent = sent + :n,
           delivered = delivered + :n,
           channel_mask = channel_mask | :bits
     WHERE alert_id = :id

so concurrent resends never lose an increment.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.alerts.geo_fence import filter_users_within_radius
from backend.app.alerts.models import (
    AffectedArea,
    Alert,
    AlertSource,
    EmailPreferences,
    NotifiableUser,
    NotificationChannel,
    NotificationCounters,
    NotificationPreferences,
    SmsPreferences,
    UserRole,
    UserStatus,
    channels_to_mask,
    mask_to_channels,
)
from backend.app.alerts.stores import AlertStore, RoleFilter, UserStore
from backend.app.core.database import Base
from backend.app.core.errors import NotFoundError
from backend.app.spatial.radius_utils import Coordinate, bounding_box, lon_wraps

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ORM rows
# ═══════════════════════════════════════════════════════════════════════════

class UserRow(Base):
    __tablename__ = "notifiable_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(30), unique=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    first_name: Mapped[str] = mapped_column(String(50), default="")
    last_name: Mapped[str] = mapped_column(String(50), default="")
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.CITIZEN.value, index=True)
    status: Mapped[str] = mapped_column(String(20), default=UserStatus.PENDING.value, index=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True, index=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True, index=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    organization: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    sms_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    sms_alerts: Mapped[bool] = mapped_column(Boolean, default=False)
    sms_emergencies: Mapped[bool] = mapped_column(Boolean, default=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    email_alerts: Mapped[bool] = mapped_column(Boolean, default=True)

    @classmethod
    def from_domain(cls, user: NotifiableUser) -> "UserRow":
        prefs = user.preferences
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            role=user.role.value,
            status=user.status.value,
            email_verified=user.email_verified,
            latitude=user.location.latitude if user.location else None,
            longitude=user.location.longitude if user.location else None,
            city=user.city,
            state=user.state,
            organization=user.organization,
            sms_enabled=prefs.sms.enabled,
            sms_alerts=prefs.sms.alerts,
            sms_emergencies=prefs.sms.emergencies,
            email_enabled=prefs.email.enabled,
            email_alerts=prefs.email.alerts,
        )

    def to_domain(self) -> NotifiableUser:
        location = None
        if self.latitude is not None and self.longitude is not None:
            location = Coordinate(self.latitude, self.longitude)
        return NotifiableUser(
            id=self.id,
            username=self.username,
            email=self.email,
            first_name=self.first_name or "",
            last_name=self.last_name or "",
            phone=self.phone,
            role=UserRole(self.role),
            status=UserStatus(self.status),
            email_verified=bool(self.email_verified),
            location=location,
            city=self.city,
            state=self.state,
            organization=self.organization,
            preferences=NotificationPreferences(
                sms=SmsPreferences(
                    enabled=bool(self.sms_enabled),
                    alerts=bool(self.sms_alerts),
                    emergencies=bool(self.sms_emergencies),
                ),
                email=EmailPreferences(
                    enabled=bool(self.email_enabled),
                    alerts=bool(self.email_alerts),
                ),
            ),
        )


class AlertRow(Base):
    __tablename__ = "alerts"

    alert_id: Mapped[str] = mapped_column(String(40), primary_key=True)
    type: Mapped[str] = mapped_column(String(20))
    severity: Mapped[str] = mapped_column(String(20), index=True)
    urgency: Mapped[str] = mapped_column(String(20))
    certainty: Mapped[str] = mapped_column(String(20))
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text)
    instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    affected_areas: Mapped[List[Any]] = mapped_column(JSON, default=list)
    effective_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expiration_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), index=True)
    source: Mapped[dict] = mapped_column(JSON, default=dict)
    category: Mapped[str] = mapped_column(String(30), default="other")

    sent: Mapped[int] = mapped_column(Integer, default=0)
    delivered: Mapped[int] = mapped_column(Integer, default=0)
    acknowledged: Mapped[int] = mapped_column(Integer, default=0)
    channel_mask: Mapped[int] = mapped_column(Integer, default=0)

    version: Mapped[int] = mapped_column(Integer, default=1)
    created_by: Mapped[str] = mapped_column(String(64))
    last_updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    @classmethod
    def from_domain(cls, alert: Alert) -> "AlertRow":
        source = alert.source
        counters = alert.notifications
        return cls(
            alert_id=alert.alert_id,
            type=alert.type.value,
            severity=alert.severity.value,
            urgency=alert.urgency.value,
            certainty=alert.certainty.value,
            title=alert.title,
            description=alert.description,
            instructions=alert.instructions,
            latitude=alert.location.latitude if alert.location else None,
            longitude=alert.location.longitude if alert.location else None,
            affected_areas=[a.to_dict() for a in alert.affected_areas],
            effective_time=alert.effective_time,
            expiration_time=alert.expiration_time,
            status=alert.status.value,
            source={
                "organization": source.organization,
                "contact_name": source.contact_name,
                "contact_email": source.contact_email,
                "contact_phone": source.contact_phone,
                "website": source.website,
            },
            category=alert.category,
            sent=counters.sent,
            delivered=counters.delivered,
            acknowledged=counters.acknowledged,
            channel_mask=channels_to_mask(counters.channels),
            version=alert.version,
            created_by=alert.created_by,
            last_updated_by=alert.last_updated_by,
            created_at=alert.created_at,
            updated_at=alert.updated_at,
        )

    def to_domain(self) -> Alert:
        location = None
        if self.latitude is not None and self.longitude is not None:
            location = Coordinate(self.latitude, self.longitude)
        return Alert(
            alert_id=self.alert_id,
            type=self.type,
            severity=self.severity,
            urgency=self.urgency,
            certainty=self.certainty,
            title=self.title,
            description=self.description,
            instructions=self.instructions,
            location=location,
            affected_areas=[AffectedArea(**a) for a in (self.affected_areas or [])],
            effective_time=_as_utc(self.effective_time),
            expiration_time=_as_utc(self.expiration_time),
            status=self.status,
            source=AlertSource(**(self.source or {})),
            category=self.category,
            notifications=NotificationCounters(
                sent=self.sent,
                delivered=self.delivered,
                acknowledged=self.acknowledged,
                channels=mask_to_channels(self.channel_mask),
            ),
            version=self.version,
            created_by=self.created_by,
            last_updated_by=self.last_updated_by,
            created_at=_as_utc(self.created_at),
            updated_at=_as_utc(self.updated_at),
        )


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

def _eligible_clause():
    return (UserRow.status == UserStatus.ACTIVE.value) & UserRow.email_verified.is_(True)


class SqlUserStore(UserStore):
    """UserStore over the ``notifiable_users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _fetch(self, stmt) -> List[NotifiableUser]:
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [row.to_domain() for row in rows]

    @staticmethod
    def _eligible_select(role_filter: RoleFilter = None):
        stmt = select(UserRow).where(_eligible_clause())
        if role_filter:
            stmt = stmt.where(UserRow.role.in_([r.value for r in role_filter]))
        return stmt.order_by(UserRow.id)

    async def add_users(self, users: Iterable[NotifiableUser]) -> None:
        async with self._session_factory() as session:
            for user in users:
                await session.merge(UserRow.from_domain(user))
            await session.commit()

    async def find_eligible(self, role_filter: RoleFilter = None) -> List[NotifiableUser]:
        return await self._fetch(self._eligible_select(role_filter))

    async def find_eligible_by_radius(
        self,
        point: Coordinate,
        radius_km: float,
        role_filter: RoleFilter = None,
    ) -> List[NotifiableUser]:
        bbox = bounding_box(point, radius_km)
        min_lat, max_lat, min_lon, max_lon = bbox
        if lon_wraps(bbox):
            lon_clause = or_(UserRow.longitude >= min_lon, UserRow.longitude <= max_lon)
        else:
            lon_clause = UserRow.longitude.between(min_lon, max_lon)
        stmt = self._eligible_select(role_filter).where(
            UserRow.latitude.between(min_lat, max_lat),
            lon_clause,
        )
        candidates = await self._fetch(stmt)
        return filter_users_within_radius(point, radius_km, candidates)

    async def find_by_area_names(
        self,
        names: Iterable[str],
        role_filter: RoleFilter = None,
    ) -> List[NotifiableUser]:
        names = list(names)
        if not names:
            return []
        stmt = self._eligible_select(role_filter).where(
            or_(
                UserRow.city.in_(names),
                UserRow.state.in_(names),
                UserRow.organization.in_(names),
            )
        )
        return await self._fetch(stmt)

    async def find_by_roles(self, roles: Iterable[UserRole]) -> List[NotifiableUser]:
        roles = frozenset(UserRole(r) for r in roles)
        if not roles:
            return []
        return await self._fetch(self._eligible_select(roles))

    async def find_by_ids(self, ids: Iterable[str]) -> List[NotifiableUser]:
        ids = list(dict.fromkeys(ids))
        if not ids:
            return []
        users = await self._fetch(
            select(UserRow).where(_eligible_clause(), UserRow.id.in_(ids))
        )
        by_id = {u.id: u for u in users}
        return [by_id[i] for i in ids if i in by_id]


class SqlAlertStore(AlertStore):
    """AlertStore over the ``alerts`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_alert(self, alert_id: str) -> Alert:
        async with self._session_factory() as session:
            row = await session.get(AlertRow, alert_id)
        if row is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return row.to_domain()

    async def save_alert(self, alert: Alert) -> Alert:
        async with self._session_factory() as session:
            await session.merge(AlertRow.from_domain(alert))
            await session.commit()
        return alert

    async def increment_notification_counters(
        self,
        alert_id: str,
        sent_delta: int,
        delivered_delta: int,
        channels_to_add: Iterable[NotificationChannel],
    ) -> None:
        bits = channels_to_mask(NotificationChannel(c) for c in channels_to_add)
        stmt = (
            update(AlertRow)
            .where(AlertRow.alert_id == alert_id)
            .values(
                sent=AlertRow.sent + sent_delta,
                delivered=AlertRow.delivered + delivered_delta,
                channel_mask=AlertRow.channel_mask.op("|")(bits),
                updated_at=datetime.now(timezone.utc),
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount == 0:
            raise NotFoundError("Alert", alert_id=alert_id)
        logger.debug("Incremented counters for %s by %d", alert_id, sent_delta)
