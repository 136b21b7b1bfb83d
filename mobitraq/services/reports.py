from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from mobitraq.errors import NotFoundError
from mobitraq.models import Employee, LocationPoint, SessionRollup, TimelineEvent, TrackingSession
from mobitraq.services.geo import as_utc, local_day_bounds_utc, normalize_ts, tracking_timezone
from mobitraq.services.sessions import get_session


def _session_duration_seconds(session: TrackingSession, now_utc: datetime) -> float:
    started_at = as_utc(session.started_at) or now_utc
    ended_at = as_utc(session.ended_at) or now_utc
    return max(0.0, (ended_at - started_at).total_seconds())


def build_session_rollup(
    session: TrackingSession,
    rollup: SessionRollup | None,
    *,
    now_utc: datetime | None = None,
) -> dict[str, Any]:
    reference_utc = normalize_ts(now_utc)
    distance = float(rollup.distance_m) if rollup is not None else 0.0
    duration_seconds = _session_duration_seconds(session, reference_utc)
    avg_speed_kmh = None
    if duration_seconds > 0:
        avg_speed_kmh = round((distance / 1000.0) / (duration_seconds / 3600.0), 2)

    return {
        "session_id": session.id,
        "employee_id": session.employee_id,
        "status": session.status,
        "started_at": as_utc(session.started_at),
        "ended_at": as_utc(session.ended_at),
        "distance_m": round(distance, 2),
        "distance_km": round(distance / 1000.0, 3),
        "point_count": rollup.point_count if rollup is not None else 0,
        "late_point_count": rollup.late_point_count if rollup is not None else 0,
        "drift_flagged_count": rollup.drift_flagged_count if rollup is not None else 0,
        "duration_minutes": int(duration_seconds // 60),
        "avg_speed_kmh": avg_speed_kmh,
        "max_speed_kmh": (
            round(rollup.max_speed_kmh, 2) if rollup is not None and rollup.max_speed_kmh is not None else None
        ),
        "frozen_at": as_utc(rollup.frozen_at) if rollup is not None else None,
    }


def get_session_rollup(db: Session, session_id: int, *, now_utc: datetime | None = None) -> dict[str, Any]:
    session = get_session(db, session_id)
    rollup = db.get(SessionRollup, session.id)
    return build_session_rollup(session, rollup, now_utc=now_utc)


def _require_employee(db: Session, employee_id: int) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError(code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    return employee


def get_daily_rollup(
    db: Session,
    employee_id: int,
    local_date: date,
    *,
    now_utc: datetime | None = None,
) -> dict[str, Any]:
    """Sums the session rollups of every session that started on the local day."""
    _require_employee(db, employee_id)
    reference_utc = normalize_ts(now_utc)
    day_start_utc, day_end_utc = local_day_bounds_utc(local_date)
    rows = db.execute(
        select(TrackingSession, SessionRollup)
        .outerjoin(SessionRollup, SessionRollup.session_id == TrackingSession.id)
        .where(
            TrackingSession.employee_id == employee_id,
            TrackingSession.started_at >= day_start_utc,
            TrackingSession.started_at < day_end_utc,
        )
        .order_by(TrackingSession.started_at.asc())
    ).all()

    distance = 0.0
    point_count = 0
    duration_seconds = 0.0
    for session, rollup in rows:
        if rollup is not None:
            distance += float(rollup.distance_m)
            point_count += rollup.point_count
        duration_seconds += _session_duration_seconds(session, reference_utc)

    return {
        "employee_id": employee_id,
        "local_date": local_date,
        "timezone": tracking_timezone().key,
        "distance_m": round(distance, 2),
        "distance_km": round(distance / 1000.0, 3),
        "session_count": len(rows),
        "point_count": point_count,
        "total_duration_minutes": int(duration_seconds // 60),
    }


def list_timeline_events(db: Session, employee_id: int, local_date: date) -> list[TimelineEvent]:
    """Events overlapping the local day, including a STOP still open from the night before."""
    _require_employee(db, employee_id)
    day_start_utc, day_end_utc = local_day_bounds_utc(local_date)
    stmt = (
        select(TimelineEvent)
        .where(
            TimelineEvent.employee_id == employee_id,
            TimelineEvent.start_time < day_end_utc,
            or_(TimelineEvent.end_time.is_(None), TimelineEvent.end_time >= day_start_utc),
        )
        .order_by(TimelineEvent.start_time.asc(), TimelineEvent.session_id.asc(), TimelineEvent.seq.asc())
    )
    return list(db.scalars(stmt).all())


def list_session_points(db: Session, session_id: int, *, include_late: bool = True) -> list[LocationPoint]:
    session = get_session(db, session_id)
    stmt = select(LocationPoint).where(LocationPoint.session_id == session.id)
    if not include_late:
        stmt = stmt.where(LocationPoint.is_late.is_(False))
    stmt = stmt.order_by(LocationPoint.ordering_ts.asc(), LocationPoint.id.asc())
    return list(db.scalars(stmt).all())
