from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import unittest

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mobitraq.db import Base
from mobitraq.errors import NotFoundError
from mobitraq.models import LocationPoint, SessionRollup, TimelineEvent
from mobitraq.schemas import LocationPointIn
from mobitraq.services.ingestion import ingest_point_batch
from mobitraq.services.reports import (
    get_daily_rollup,
    get_session_rollup,
    list_session_points,
    list_timeline_events,
)
from mobitraq.services.retention import purge_expired_tracking_data
from mobitraq.services.sessions import create_employee, end_session, start_session

# 09:30 at +05:30
T0 = datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc)


def _session_factory():  # type: ignore[no-untyped-def]
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class _TrackingDataMixin:
    db = None
    employee = None

    def _drive(self, session_id: int, start: datetime, lons: list[float], step_minutes: int = 5) -> None:
        for index, lon in enumerate(lons):
            recorded_at = start + timedelta(minutes=step_minutes * index)
            ingest_point_batch(
                self.db,
                [
                    LocationPointIn(
                        employee_id=self.employee.id,
                        session_id=session_id,
                        lat=0.0,
                        lng=lon,
                        accuracy=10.0,
                        recorded_at=recorded_at,
                    )
                ],
                now_utc=recorded_at,
            )


class ReportTests(_TrackingDataMixin, unittest.TestCase):
    def setUp(self) -> None:
        self.db = _session_factory()()
        self.employee = create_employee(self.db, full_name="Ravi Kumar")

    def tearDown(self) -> None:
        self.db.close()

    def test_session_rollup_reports_distance_and_speed(self) -> None:
        session = start_session(self.db, self.employee.id, now_utc=T0)
        self._drive(session.id, T0, [0.0, 0.01, 0.02])
        end_session(self.db, session.id, now_utc=T0 + timedelta(minutes=10))

        rollup = get_session_rollup(self.db, session.id)

        self.assertAlmostEqual(rollup["distance_km"], 2.224, delta=0.002)
        self.assertEqual(rollup["duration_minutes"], 10)
        self.assertAlmostEqual(rollup["avg_speed_kmh"], 13.34, delta=0.05)
        self.assertAlmostEqual(rollup["max_speed_kmh"], 13.34, delta=0.05)
        self.assertEqual(rollup["point_count"], 3)
        self.assertIsNotNone(rollup["frozen_at"])

    def test_active_session_duration_runs_to_now(self) -> None:
        session = start_session(self.db, self.employee.id, now_utc=T0)
        rollup = get_session_rollup(self.db, session.id, now_utc=T0 + timedelta(minutes=42))
        self.assertEqual(rollup["duration_minutes"], 42)
        self.assertEqual(rollup["distance_m"], 0.0)

    def test_daily_rollup_groups_sessions_by_local_day(self) -> None:
        morning = start_session(self.db, self.employee.id, now_utc=T0)
        self._drive(morning.id, T0, [0.0, 0.01])
        end_session(self.db, morning.id, now_utc=T0 + timedelta(minutes=30))

        # 23:50 local on the same day, still 2026-03-02.
        late_start = datetime(2026, 3, 2, 18, 20, tzinfo=timezone.utc)
        evening = start_session(self.db, self.employee.id, now_utc=late_start)
        self._drive(evening.id, late_start, [0.0, 0.01])
        end_session(self.db, evening.id, now_utc=late_start + timedelta(minutes=20))

        # 00:30 local on the next day.
        next_start = datetime(2026, 3, 2, 19, 0, tzinfo=timezone.utc)
        next_day = start_session(self.db, self.employee.id, now_utc=next_start)
        end_session(self.db, next_day.id, now_utc=next_start + timedelta(minutes=5))

        daily = get_daily_rollup(self.db, self.employee.id, date(2026, 3, 2))

        self.assertEqual(daily["timezone"], "Asia/Kolkata")
        self.assertEqual(daily["session_count"], 2)
        self.assertEqual(daily["point_count"], 4)
        self.assertAlmostEqual(daily["distance_km"], 2.224, delta=0.002)
        self.assertEqual(daily["total_duration_minutes"], 50)

        following = get_daily_rollup(self.db, self.employee.id, date(2026, 3, 3))
        self.assertEqual(following["session_count"], 1)
        self.assertEqual(following["distance_m"], 0.0)

    def test_daily_reads_require_known_employee(self) -> None:
        with self.assertRaises(NotFoundError):
            get_daily_rollup(self.db, 404, date(2026, 3, 2))
        with self.assertRaises(NotFoundError):
            list_timeline_events(self.db, 404, date(2026, 3, 2))

    def test_timeline_and_points_for_the_day(self) -> None:
        session = start_session(self.db, self.employee.id, now_utc=T0)
        self._drive(session.id, T0, [0.0, 0.0, 0.0, 0.01, 0.02])
        end_session(self.db, session.id, now_utc=T0 + timedelta(minutes=25))

        events = list_timeline_events(self.db, self.employee.id, date(2026, 3, 2))
        self.assertEqual([event.event_type.value for event in events], ["STOP", "MOVE"])
        self.assertEqual(list_timeline_events(self.db, self.employee.id, date(2026, 3, 3)), [])

        points = list_session_points(self.db, session.id)
        self.assertEqual(len(points), 5)
        self.assertEqual(points[0].filter_status, "anchor")


class RetentionTests(_TrackingDataMixin, unittest.TestCase):
    def setUp(self) -> None:
        self.db = _session_factory()()
        self.employee = create_employee(self.db, full_name="Ravi Kumar")

    def tearDown(self) -> None:
        self.db.close()

    def _count(self, model) -> int:  # type: ignore[no-untyped-def]
        return int(self.db.scalar(select(func.count()).select_from(model)) or 0)

    def test_purges_old_closed_session_data_but_keeps_rollups(self) -> None:
        old_start = T0 - timedelta(days=40)
        old = start_session(self.db, self.employee.id, now_utc=old_start)
        self._drive(old.id, old_start, [0.0, 0.0, 0.0, 0.01])
        end_session(self.db, old.id, now_utc=old_start + timedelta(minutes=20))
        self.assertEqual(self._count(TimelineEvent), 2)

        summary = purge_expired_tracking_data(T0, db=self.db, retention_days=35)

        self.assertEqual(summary.deleted_points, 4)
        self.assertEqual(summary.deleted_timeline_events, 2)
        self.assertEqual(self._count(LocationPoint), 0)
        self.assertEqual(self._count(SessionRollup), 1)

    def test_active_session_points_are_never_purged(self) -> None:
        old_start = T0 - timedelta(days=40)
        session = start_session(self.db, self.employee.id, now_utc=old_start)
        self._drive(session.id, old_start, [0.0, 0.001])

        summary = purge_expired_tracking_data(T0, db=self.db, retention_days=35)

        self.assertEqual(summary.deleted_points, 0)
        self.assertEqual(self._count(LocationPoint), 2)


if __name__ == "__main__":
    unittest.main()
