from __future__ import annotations

from datetime import datetime, timedelta, timezone
import unittest

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mobitraq.db import Base
from mobitraq.errors import ValidationError
from mobitraq.models import (
    AlertType,
    EmployeeTrackingState,
    LocationPoint,
    SessionRollup,
    TimelineEvent,
    TimelineEventType,
    TrackingAlert,
)
from mobitraq.schemas import LocationPointIn
from mobitraq.services.geo import normalize_ts
from mobitraq.services.ingestion import (
    FLAG_CLOCK_DRIFT,
    FLAG_CLOCK_DRIFT_EXTREME,
    FLAG_LATE,
    STATUS_ACCEPTED,
    STATUS_DUPLICATE,
    STATUS_REJECTED,
    ingest_point_batch,
)
from mobitraq.services.sessions import create_employee, end_session, start_session

T0 = datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc)


def _session_factory():  # type: ignore[no-untyped-def]
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class IngestionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = _session_factory()()
        self.employee = create_employee(self.db, full_name="Ravi Kumar")
        self.session = start_session(self.db, self.employee.id, now_utc=T0)

    def tearDown(self) -> None:
        self.db.close()

    def _payload(self, minutes: float, lon: float, **overrides) -> LocationPointIn:  # type: ignore[no-untyped-def]
        values = {
            "employee_id": self.employee.id,
            "session_id": self.session.id,
            "lat": 0.0,
            "lng": lon,
            "accuracy": 10.0,
            "recorded_at": T0 + timedelta(minutes=minutes),
        }
        values.update(overrides)
        return LocationPointIn(**values)

    def _ingest(self, payloads: list[LocationPointIn], received_at: datetime):  # type: ignore[no-untyped-def]
        return ingest_point_batch(self.db, payloads, now_utc=received_at)

    def _ingest_live(self, minutes: float, lon: float, **overrides):  # type: ignore[no-untyped-def]
        received_at = T0 + timedelta(minutes=minutes, seconds=5)
        return self._ingest([self._payload(minutes, lon, **overrides)], received_at)

    def _rollup(self) -> SessionRollup:
        rollup = self.db.get(SessionRollup, self.session.id)
        assert rollup is not None
        self.db.refresh(rollup)
        return rollup

    def _point_count(self) -> int:
        return int(self.db.scalar(select(func.count()).select_from(LocationPoint)) or 0)

    def test_short_walk_with_start_jitter(self) -> None:
        self._ingest_live(0, 0.0)
        self._ingest_live(2, 0.00005, accuracy=20.0)
        results = self._ingest_live(12, 0.01)

        self.assertEqual(results[0].status, STATUS_ACCEPTED)
        rollup = self._rollup()
        self.assertAlmostEqual(rollup.distance_m, 1111.95, delta=1.0)
        self.assertEqual(rollup.point_count, 3)

        outcome = end_session(self.db, self.session.id, now_utc=T0 + timedelta(minutes=13))
        events = list(self.db.scalars(select(TimelineEvent).order_by(TimelineEvent.seq)).all())
        self.assertEqual([event.event_type for event in events], [TimelineEventType.MOVE])
        self.assertFalse(events[0].is_open)
        self.assertEqual(outcome.closed_segments[0].seq, events[0].seq)

    def test_resubmitted_batch_is_reported_as_duplicates(self) -> None:
        payloads = [self._payload(0, 0.0), self._payload(1, 0.001)]
        first = self._ingest(payloads, T0 + timedelta(minutes=1, seconds=5))
        distance_before = self._rollup().distance_m

        second = self._ingest(payloads, T0 + timedelta(minutes=2))

        self.assertEqual([item.status for item in first], [STATUS_ACCEPTED, STATUS_ACCEPTED])
        self.assertEqual([item.status for item in second], [STATUS_DUPLICATE, STATUS_DUPLICATE])
        self.assertEqual([item.point_id for item in second], [item.point_id for item in first])
        self.assertEqual(self._point_count(), 2)
        self.assertEqual(self._rollup().distance_m, distance_before)
        self.assertEqual(self._rollup().point_count, 2)

    def test_repeat_inside_one_batch_is_duplicate_of_first(self) -> None:
        payload = self._payload(0, 0.0)
        results = self._ingest([payload, payload], T0 + timedelta(seconds=5))

        self.assertEqual(results[0].status, STATUS_ACCEPTED)
        self.assertEqual(results[1].status, STATUS_DUPLICATE)
        self.assertEqual(results[1].point_id, results[0].point_id)
        self.assertEqual(self._point_count(), 1)

    def test_client_key_is_used_for_deduplication(self) -> None:
        first = self._ingest([self._payload(0, 0.0, idempotency_key="dev-1:42")], T0 + timedelta(seconds=5))
        again = self._ingest([self._payload(0, 0.0001, idempotency_key="dev-1:42")], T0 + timedelta(seconds=9))

        self.assertEqual(first[0].idempotency_key, "dev-1:42")
        self.assertEqual(again[0].status, STATUS_DUPLICATE)

    def test_bad_points_are_rejected_individually(self) -> None:
        results = self._ingest(
            [
                self._payload(0, 0.0),
                self._payload(1, 0.0, lat=95.0),
                self._payload(2, 0.0, recorded_at=None),
                self._payload(3, 0.0, accuracy=-1.0),
                self._payload(4, 0.0, session_id=self.session.id + 99),
            ],
            T0 + timedelta(minutes=4),
        )

        self.assertEqual(
            [(item.status, item.reason) for item in results],
            [
                (STATUS_ACCEPTED, None),
                (STATUS_REJECTED, "INVALID_COORDINATES"),
                (STATUS_REJECTED, "MISSING_RECORDED_AT"),
                (STATUS_REJECTED, "INVALID_ACCURACY"),
                (STATUS_REJECTED, "SESSION_MISMATCH"),
            ],
        )
        self.assertEqual([item.index for item in results], [0, 1, 2, 3, 4])
        self.assertEqual(self._point_count(), 1)

    def test_point_for_other_employees_session_is_rejected(self) -> None:
        other = create_employee(self.db, full_name="Meera Nair")
        results = self._ingest([self._payload(0, 0.0, employee_id=other.id)], T0 + timedelta(seconds=5))
        self.assertEqual(results[0].reason, "SESSION_MISMATCH")

    def test_points_for_closed_session_are_rejected(self) -> None:
        end_session(self.db, self.session.id, now_utc=T0 + timedelta(minutes=1))
        results = self._ingest_live(2, 0.0)
        self.assertEqual(results[0].status, STATUS_REJECTED)
        self.assertEqual(results[0].reason, "SESSION_NOT_ACTIVE")

    def test_oversized_batch_fails_as_a_whole(self) -> None:
        payloads = [self._payload(index / 60, 0.0) for index in range(101)]
        with self.assertRaises(ValidationError) as ctx:
            self._ingest(payloads, T0)
        self.assertEqual(ctx.exception.code, "BATCH_TOO_LARGE")
        self.assertEqual(self._point_count(), 0)

    def test_clock_drift_opens_alert_until_clock_recovers(self) -> None:
        drifted = self._ingest([self._payload(0, 0.0)], T0 + timedelta(minutes=15))

        self.assertEqual(drifted[0].status, STATUS_ACCEPTED)
        self.assertEqual(drifted[0].flags, [FLAG_CLOCK_DRIFT])
        alert = self.db.scalar(select(TrackingAlert).where(TrackingAlert.alert_type == AlertType.CLOCK_DRIFT))
        assert alert is not None
        self.assertTrue(alert.is_open)
        self.assertEqual(self._rollup().drift_flagged_count, 1)

        self._ingest_live(16, 0.0)
        self.db.refresh(alert)
        self.assertFalse(alert.is_open)
        self.assertEqual(alert.details["close_reason"], "clock_in_sync")

    def test_device_clock_far_ahead_orders_by_server_time(self) -> None:
        received_at = T0 + timedelta(minutes=5)
        results = self._ingest([self._payload(180, 0.0)], received_at)

        self.assertIn(FLAG_CLOCK_DRIFT_EXTREME, results[0].flags)
        point = self.db.get(LocationPoint, results[0].point_id)
        assert point is not None
        self.assertEqual(normalize_ts(point.ordering_ts), received_at)
        self.assertEqual(normalize_ts(point.recorded_at), T0 + timedelta(minutes=180))

    def test_untrusted_clock_block_keeps_its_spacing(self) -> None:
        received_at = T0 + timedelta(minutes=30)
        # Device clock three hours behind: every reading predates the session.
        payloads = [self._payload(-180 + 10 * step, 0.01 * step) for step in range(3)]
        results = self._ingest(payloads, received_at)

        self.assertTrue(all(FLAG_CLOCK_DRIFT_EXTREME in item.flags for item in results))
        ordering = [
            normalize_ts(self.db.get(LocationPoint, item.point_id).ordering_ts)  # type: ignore[union-attr]
            for item in results
        ]
        self.assertEqual(
            ordering,
            [received_at - timedelta(minutes=20), received_at - timedelta(minutes=10), received_at],
        )
        self.assertAlmostEqual(self._rollup().distance_m, 2 * 1111.95, delta=1.0)

    def test_offline_backlog_in_one_upload_keeps_full_distance(self) -> None:
        payloads = [self._payload(10 * step, 0.01 * step) for step in range(7)]
        results = self._ingest(payloads, T0 + timedelta(hours=2))

        self.assertEqual([item.status for item in results], [STATUS_ACCEPTED] * 7)
        self.assertFalse(any(FLAG_CLOCK_DRIFT_EXTREME in item.flags for item in results))
        rollup = self._rollup()
        self.assertAlmostEqual(rollup.distance_m, 6 * 1111.95, delta=3.0)
        self.assertEqual(rollup.late_point_count, 0)

    def test_offline_backlog_split_across_uploads_keeps_full_distance(self) -> None:
        payloads = [self._payload(10 * step, 0.01 * step) for step in range(7)]
        received_at = T0 + timedelta(minutes=100)
        self._ingest(payloads[:4], received_at)
        results = self._ingest(payloads[4:], received_at + timedelta(seconds=2))

        self.assertFalse(any(FLAG_LATE in item.flags for item in results))
        rollup = self._rollup()
        self.assertAlmostEqual(rollup.distance_m, 6 * 1111.95, delta=3.0)
        self.assertEqual(rollup.late_point_count, 0)
        self.assertEqual(rollup.point_count, 7)

    def test_retry_after_session_end_is_a_duplicate(self) -> None:
        payload = self._payload(0, 0.0)
        first = self._ingest([payload], T0 + timedelta(seconds=5))
        end_session(self.db, self.session.id, now_utc=T0 + timedelta(minutes=1))

        retry = self._ingest([payload], T0 + timedelta(minutes=2))

        self.assertEqual(retry[0].status, STATUS_DUPLICATE)
        self.assertEqual(retry[0].point_id, first[0].point_id)
        self.assertEqual(self._point_count(), 1)

    def test_late_point_is_stored_but_not_counted(self) -> None:
        self._ingest_live(0, 0.0)
        self._ingest_live(10, 0.005)
        distance_before = self._rollup().distance_m

        results = self._ingest([self._payload(5, 0.009)], T0 + timedelta(minutes=11))

        self.assertEqual(results[0].status, STATUS_ACCEPTED)
        self.assertEqual(results[0].flags, [FLAG_LATE])
        rollup = self._rollup()
        self.assertEqual(rollup.distance_m, distance_before)
        self.assertEqual(rollup.late_point_count, 1)
        self.assertEqual(rollup.point_count, 3)

    def test_latest_location_and_signal_are_tracked(self) -> None:
        self._ingest_live(0, 0.0)
        self._ingest_live(3, 0.002)

        state = self.db.get(EmployeeTrackingState, self.employee.id)
        assert state is not None
        self.assertEqual(state.active_session_id, self.session.id)
        self.assertEqual(state.last_lon, 0.002)
        self.assertEqual(normalize_ts(state.last_received_at), T0 + timedelta(minutes=3, seconds=5))


if __name__ == "__main__":
    unittest.main()
