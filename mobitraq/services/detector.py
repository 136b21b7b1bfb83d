"""Periodic stuck / no-signal sweep over employees with an active session.

Per employee:
  no anchor -> tracking (not stuck) <-> stuck (alert open)
  receiving signal <-> no signal (alert open)

Only transition edges create or close alert rows, so re-running a sweep over
unchanged state is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from mobitraq.db import SessionLocal
from mobitraq.models import AlertType, EmployeeTrackingState, SessionStatus, TrackingAlert, TrackingSession
from mobitraq.services.alerts import close_open_alert, open_alert_if_absent
from mobitraq.services.geo import as_utc, distance_m, normalize_ts
from mobitraq.services.locks import employee_lock
from mobitraq.services.tracking import get_tracking_state_for_update
from mobitraq.settings import Settings, get_settings

logger = logging.getLogger("mobitraq.detector")


@dataclass(frozen=True, slots=True)
class DetectorParams:
    stuck_radius_m: float = 150.0
    stuck_after: timedelta = timedelta(minutes=30)
    no_signal_after: timedelta = timedelta(minutes=20)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DetectorParams:
        settings = settings or get_settings()
        return cls(
            stuck_radius_m=settings.stuck_radius_m,
            stuck_after=timedelta(minutes=settings.stuck_duration_minutes),
            no_signal_after=timedelta(minutes=settings.no_signal_minutes),
        )


@dataclass(slots=True)
class SweepSummary:
    ran_at_utc: datetime
    evaluated: int = 0
    opened_alert_ids: list[int] = field(default_factory=list)
    closed_alert_ids: list[int] = field(default_factory=list)
    failed_employee_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ran_at_utc": self.ran_at_utc,
            "evaluated": self.evaluated,
            "opened_alert_ids": list(self.opened_alert_ids),
            "closed_alert_ids": list(self.closed_alert_ids),
            "failed_employee_ids": list(self.failed_employee_ids),
        }


def _check_no_signal(
    db: Session,
    *,
    session: TrackingSession,
    state: EmployeeTrackingState,
    now_utc: datetime,
    params: DetectorParams,
) -> TrackingAlert | None:
    last_signal_at = as_utc(state.last_received_at) or as_utc(session.started_at) or now_utc
    silent_for = now_utc - last_signal_at
    if silent_for < params.no_signal_after:
        return None

    silent_minutes = int(silent_for.total_seconds() // 60)
    return open_alert_if_absent(
        db,
        employee_id=session.employee_id,
        session_id=session.id,
        alert_type=AlertType.NO_SIGNAL,
        message=f"No location received for {silent_minutes} minutes.",
        opened_at=now_utc,
        lat=state.last_lat,
        lon=state.last_lon,
        details={"last_received_at": last_signal_at.isoformat(), "silent_minutes": silent_minutes},
    )


def _check_stuck(
    db: Session,
    *,
    session: TrackingSession,
    state: EmployeeTrackingState,
    now_utc: datetime,
    params: DetectorParams,
) -> tuple[TrackingAlert | None, TrackingAlert | None]:
    last_at = as_utc(state.last_recorded_at)
    if state.last_lat is None or state.last_lon is None or last_at is None:
        return None, None

    anchor_at = as_utc(state.anchor_at)
    if state.anchor_lat is None or state.anchor_lon is None or anchor_at is None:
        state.anchor_lat = state.last_lat
        state.anchor_lon = state.last_lon
        state.anchor_at = last_at
        return None, None

    from_anchor_m = distance_m(state.anchor_lat, state.anchor_lon, state.last_lat, state.last_lon)
    if from_anchor_m > params.stuck_radius_m:
        state.anchor_lat = state.last_lat
        state.anchor_lon = state.last_lon
        state.anchor_at = last_at
        state.is_stuck = False
        state.stuck_alert_sent = False
        closed = close_open_alert(
            db,
            employee_id=session.employee_id,
            alert_type=AlertType.STUCK,
            closed_at=now_utc,
            reason="moved",
        )
        return None, closed

    dwell = now_utc - anchor_at
    if dwell < params.stuck_after:
        return None, None

    state.is_stuck = True
    dwell_minutes = int(dwell.total_seconds() // 60)
    opened = open_alert_if_absent(
        db,
        employee_id=session.employee_id,
        session_id=session.id,
        alert_type=AlertType.STUCK,
        message=f"No movement beyond {params.stuck_radius_m:.0f} m for {dwell_minutes} minutes.",
        opened_at=now_utc,
        lat=state.anchor_lat,
        lon=state.anchor_lon,
        details={
            "anchor_at": anchor_at.isoformat(),
            "dwell_minutes": dwell_minutes,
            "distance_from_anchor_m": round(from_anchor_m, 1),
        },
    )
    if opened is not None:
        state.stuck_alert_sent = True
    return opened, None


def evaluate_employee(
    db: Session,
    *,
    session: TrackingSession,
    now_utc: datetime,
    params: DetectorParams,
) -> tuple[list[TrackingAlert], list[TrackingAlert]]:
    state = get_tracking_state_for_update(db, session.employee_id)
    opened: list[TrackingAlert] = []
    closed: list[TrackingAlert] = []

    no_signal = _check_no_signal(db, session=session, state=state, now_utc=now_utc, params=params)
    if no_signal is not None:
        opened.append(no_signal)

    stuck_opened, stuck_closed = _check_stuck(db, session=session, state=state, now_utc=now_utc, params=params)
    if stuck_opened is not None:
        opened.append(stuck_opened)
    if stuck_closed is not None:
        closed.append(stuck_closed)

    db.flush()
    return opened, closed


def run_tracking_sweep(
    now_utc: datetime | None = None,
    db: Session | None = None,
    *,
    params: DetectorParams | None = None,
) -> SweepSummary:
    if db is None:
        with SessionLocal() as managed_db:
            return run_tracking_sweep(now_utc, db=managed_db, params=params)

    reference_utc = normalize_ts(now_utc)
    params = params or DetectorParams.from_settings()
    summary = SweepSummary(ran_at_utc=reference_utc)
    sessions = list(
        db.scalars(
            select(TrackingSession)
            .where(TrackingSession.status == SessionStatus.ACTIVE)
            .order_by(TrackingSession.employee_id.asc())
        ).all()
    )

    for session in sessions:
        employee_id = session.employee_id
        try:
            with employee_lock(employee_id):
                opened, closed = evaluate_employee(db, session=session, now_utc=reference_utc, params=params)
                db.commit()
        except Exception:
            db.rollback()
            logger.exception("tracking_sweep_employee_failed", extra={"employee_id": employee_id})
            summary.failed_employee_ids.append(employee_id)
            continue

        summary.evaluated += 1
        summary.opened_alert_ids.extend(alert.id for alert in opened)
        summary.closed_alert_ids.extend(alert.id for alert in closed)

    if summary.opened_alert_ids or summary.closed_alert_ids or summary.failed_employee_ids:
        logger.info(
            "tracking_sweep_complete",
            extra={**summary.to_dict(), "ran_at_utc": reference_utc.isoformat()},
        )
    return summary
