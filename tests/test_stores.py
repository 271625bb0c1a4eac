"""
test_stores.py — In-memory and SQLAlchemy store adapters.

The SQL adapters run against a throwaway SQLite file through aiosqlite;
each test builds its own engine inside a single event loop.

Run with:
    pytest tests/test_stores.py -v
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from backend.app.alerts.models import NotificationChannel, UserRole
from backend.app.alerts.repository import SqlAlertStore, SqlUserStore
from backend.app.alerts.stores import InMemoryAlertStore, InMemoryUserStore
from backend.app.core.database import init_db, ping_db
from backend.app.core.errors import NotFoundError
from backend.app.spatial.radius_utils import Coordinate

from conftest import BENGALURU, CHENNAI, FIXED_NOW

SMS = NotificationChannel.SMS
EMAIL = NotificationChannel.EMAIL


def _run_sql(tmp_path, scenario):
    """Run ``scenario(user_store, alert_store, engine)`` against a fresh database."""

    async def _main():
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notify.db'}")
        try:
            await init_db(engine)
            factory = async_sessionmaker(engine, expire_on_commit=False)
            return await scenario(SqlUserStore(factory), SqlAlertStore(factory), engine)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


# ═══════════════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryAlertStore:

    def test_get_unknown_raises(self):
        with pytest.raises(NotFoundError) as exc_info:
            asyncio.run(InMemoryAlertStore().get_alert("ALT-missing"))
        assert exc_info.value.status_code == 404

    def test_increment_unions_channels(self, make_alert):
        alert = make_alert()
        store = InMemoryAlertStore([alert])

        async def scenario():
            await store.increment_notification_counters(alert.alert_id, 2, 2, [SMS])
            await store.increment_notification_counters(alert.alert_id, 1, 1, [EMAIL, SMS])

        asyncio.run(scenario())
        assert alert.notifications.to_dict() == {
            "sent": 3, "delivered": 3, "acknowledged": 0, "channels": ["email", "sms"],
        }

    def test_concurrent_increments_not_lost(self, make_alert):
        alert = make_alert()
        store = InMemoryAlertStore([alert])

        async def scenario():
            await asyncio.gather(*[
                store.increment_notification_counters(alert.alert_id, 1, 1, [EMAIL])
                for _ in range(50)
            ])

        asyncio.run(scenario())
        assert alert.notifications.sent == 50


class TestInMemoryUserStore:

    def test_find_by_ids_dedups_and_keeps_order(self, make_user):
        store = InMemoryUserStore([make_user("a"), make_user("b")])
        found = asyncio.run(store.find_by_ids(["b", "a", "b", "zzz"]))
        assert [u.id for u in found] == ["b", "a"]

    def test_area_names_match_city_state_organization(self, make_user):
        store = InMemoryUserStore([
            make_user("c", city="Adyar"),
            make_user("s", state="Adyar"),
            make_user("o", organization="Adyar"),
            make_user("x", city="Velachery"),
        ])
        found = asyncio.run(store.find_by_area_names(["Adyar"]))
        assert [u.id for u in found] == ["c", "s", "o"]


# ═══════════════════════════════════════════════════════════════════════════
# SQL
# ═══════════════════════════════════════════════════════════════════════════

class TestSqlUserStore:

    def test_radius_query(self, tmp_path, make_user):
        async def scenario(users, alerts, engine):
            await users.add_users([
                make_user("near", location=CHENNAI),
                make_user("far", location=BENGALURU),
                make_user("nowhere", location=None),
                make_user("inactive", status="inactive"),
            ])
            return await users.find_eligible_by_radius(CHENNAI, 50)

        found = _run_sql(tmp_path, scenario)
        assert [u.id for u in found] == ["near"]

    def test_radius_query_across_antimeridian(self, tmp_path, make_user):
        async def scenario(users, alerts, engine):
            await users.add_users([
                make_user("east", location=Coordinate(-17.7, 179.9)),
                make_user("west", location=Coordinate(-17.7, -179.9)),
                make_user("far", location=Coordinate(-17.7, 170.0)),
            ])
            return await users.find_eligible_by_radius(Coordinate(-17.7, 179.95), 50)

        found = _run_sql(tmp_path, scenario)
        assert sorted(u.id for u in found) == ["east", "west"]

    def test_preferences_round_trip(self, tmp_path, make_user):
        user = make_user(
            "p1", sms={"enabled": True, "alerts": True, "emergencies": False},
            email_prefs={"enabled": False, "alerts": False},
            city="Chennai", organization="Red Cross",
        )

        async def scenario(users, alerts, engine):
            await users.add_users([user])
            return await users.find_by_ids(["p1"])

        (loaded,) = _run_sql(tmp_path, scenario)
        assert loaded.preferences == user.preferences
        assert loaded.location.latitude == pytest.approx(CHENNAI.latitude)
        assert loaded.organization == "Red Cross"

    def test_roles_areas_and_ids(self, tmp_path, make_user):
        async def scenario(users, alerts, engine):
            await users.add_users([
                make_user("r1", role="responder", location=BENGALURU),
                make_user("c1", city="Riverside"),
                make_user("c2", organization="Riverside", email_verified=False),
                make_user("v1", role="volunteer", state="Riverside"),
            ])
            return (
                await users.find_by_roles([UserRole.RESPONDER, UserRole.ADMIN]),
                await users.find_by_area_names(["Riverside"]),
                await users.find_by_area_names(["Riverside"], frozenset({UserRole.VOLUNTEER})),
                await users.find_by_ids(["v1", "c2", "r1"]),
                await users.find_eligible(),
            )

        roles, areas, area_volunteers, by_ids, eligible = _run_sql(tmp_path, scenario)
        assert [u.id for u in roles] == ["r1"]
        assert [u.id for u in areas] == ["c1", "v1"]
        assert [u.id for u in area_volunteers] == ["v1"]
        assert [u.id for u in by_ids] == ["v1", "r1"]
        assert [u.id for u in eligible] == ["c1", "r1", "v1"]


class TestSqlAlertStore:

    def test_save_and_get(self, tmp_path, make_alert):
        alert = make_alert(areas=["Adyar"], instructions="Stay indoors.")

        async def scenario(users, alerts, engine):
            await alerts.save_alert(alert)
            return await alerts.get_alert(alert.alert_id)

        loaded = _run_sql(tmp_path, scenario)
        assert loaded.alert_id == alert.alert_id
        assert loaded.effective_time == FIXED_NOW
        assert loaded.area_names == ["Adyar"]
        assert loaded.priority_score == alert.priority_score

    def test_increment_is_additive_and_unions_mask(self, tmp_path, make_alert):
        alert = make_alert()

        async def scenario(users, alerts, engine):
            await alerts.save_alert(alert)
            await alerts.increment_notification_counters(alert.alert_id, 2, 2, [EMAIL])
            await alerts.increment_notification_counters(alert.alert_id, 3, 3, [SMS, EMAIL])
            return await alerts.get_alert(alert.alert_id)

        counters = _run_sql(tmp_path, scenario).notifications
        assert counters.sent == 5
        assert counters.delivered == 5
        assert counters.channels == {SMS, EMAIL}

    def test_increment_unknown_alert(self, tmp_path):
        async def scenario(users, alerts, engine):
            await alerts.increment_notification_counters("ALT-missing", 1, 1, [SMS])

        with pytest.raises(NotFoundError):
            _run_sql(tmp_path, scenario)

    def test_get_unknown_alert(self, tmp_path):
        async def scenario(users, alerts, engine):
            await alerts.get_alert("ALT-missing")

        with pytest.raises(NotFoundError):
            _run_sql(tmp_path, scenario)

    def test_ping(self, tmp_path):
        async def scenario(users, alerts, engine):
            await ping_db(engine)
            return True

        assert _run_sql(tmp_path, scenario)
