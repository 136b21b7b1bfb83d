from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mobitraq.errors import ConflictError, NotFoundError, SessionMismatchError
from mobitraq.models import (
    Employee,
    SessionRollup,
    SessionStatus,
    TrackingAlert,
    TrackingSession,
)
from mobitraq.services.alerts import close_session_alerts
from mobitraq.services.geo import as_utc, normalize_ts
from mobitraq.services.locks import employee_lock, forget_session, session_lock
from mobitraq.services.timeline import TimelineSegment
from mobitraq.services.tracking import (
    EngineParams,
    finalize_session_timeline,
    get_tracking_state_for_update,
    load_rollup_for_update,
    reset_tracking_state,
)

logger = logging.getLogger("mobitraq.sessions")


@dataclass(slots=True)
class SessionCloseOutcome:
    session: TrackingSession
    rollup: SessionRollup
    closed_alerts: list[TrackingAlert] = field(default_factory=list)
    closed_segments: list[TimelineSegment] = field(default_factory=list)


def create_employee(db: Session, *, full_name: str, is_active: bool = True) -> Employee:
    employee = Employee(full_name=full_name.strip(), is_active=is_active)
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee


def list_employees(db: Session, *, include_inactive: bool = True) -> list[Employee]:
    stmt = select(Employee).order_by(Employee.id.asc())
    if not include_inactive:
        stmt = stmt.where(Employee.is_active.is_(True))
    return list(db.scalars(stmt).all())


def get_session(db: Session, session_id: int) -> TrackingSession:
    session = db.get(TrackingSession, session_id)
    if session is None:
        raise NotFoundError(code="SESSION_NOT_FOUND", message="Session not found.")
    return session


def list_sessions(
    db: Session,
    *,
    employee_id: int | None = None,
    status: SessionStatus | None = None,
    limit: int = 100,
) -> list[TrackingSession]:
    stmt = select(TrackingSession)
    if employee_id is not None:
        stmt = stmt.where(TrackingSession.employee_id == employee_id)
    if status is not None:
        stmt = stmt.where(TrackingSession.status == status)
    stmt = stmt.order_by(TrackingSession.started_at.desc(), TrackingSession.id.desc()).limit(limit)
    return list(db.scalars(stmt).all())


def get_active_session(db: Session, employee_id: int) -> TrackingSession | None:
    return db.scalar(
        select(TrackingSession).where(
            TrackingSession.employee_id == employee_id,
            TrackingSession.status == SessionStatus.ACTIVE,
        )
    )


def start_session(db: Session, employee_id: int, *, now_utc: datetime | None = None) -> TrackingSession:
    started_at = normalize_ts(now_utc)
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError(code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    if not employee.is_active:
        raise ConflictError(code="EMPLOYEE_INACTIVE", message="Employee is not active.")

    with employee_lock(employee_id):
        if get_active_session(db, employee_id) is not None:
            raise ConflictError(
                code="ACTIVE_SESSION_EXISTS",
                message="Employee already has an active tracking session.",
            )

        session = TrackingSession(employee_id=employee_id, started_at=started_at, status=SessionStatus.ACTIVE)
        db.add(session)
        try:
            db.flush()
        except IntegrityError as exc:
            # Another request won the partial unique index race.
            db.rollback()
            raise ConflictError(
                code="ACTIVE_SESSION_EXISTS",
                message="Employee already has an active tracking session.",
            ) from exc

        db.add(
            SessionRollup(
                session_id=session.id,
                distance_m=0.0,
                point_count=0,
                late_point_count=0,
                drift_flagged_count=0,
                distance_state={},
                timeline_state={},
            )
        )
        state = get_tracking_state_for_update(db, employee_id)
        reset_tracking_state(state, active_session_id=session.id)
        db.commit()
        db.refresh(session)

    logger.info(
        "tracking_session_started",
        extra={"session_id": session.id, "employee_id": employee_id, "started_at": started_at.isoformat()},
    )
    return session


def end_session(
    db: Session,
    session_id: int,
    *,
    now_utc: datetime | None = None,
    params: EngineParams | None = None,
) -> SessionCloseOutcome:
    return _close_session(db, session_id, status=SessionStatus.CLOSED, now_utc=now_utc, params=params)


def cancel_session(
    db: Session,
    session_id: int,
    *,
    now_utc: datetime | None = None,
    params: EngineParams | None = None,
) -> SessionCloseOutcome:
    """Administrative override; closes the session the same way as a normal end."""
    return _close_session(db, session_id, status=SessionStatus.CANCELLED, now_utc=now_utc, params=params)


def _close_session(
    db: Session,
    session_id: int,
    *,
    status: SessionStatus,
    now_utc: datetime | None,
    params: EngineParams | None,
) -> SessionCloseOutcome:
    closed_at = normalize_ts(now_utc)
    params = params or EngineParams.from_settings()
    session = get_session(db, session_id)

    with session_lock(session.id):
        db.refresh(session)
        if session.status != SessionStatus.ACTIVE:
            raise SessionMismatchError(code="SESSION_NOT_ACTIVE", message="Session is not active.")

        rollup = load_rollup_for_update(db, session.id)
        closed_segments = finalize_session_timeline(db, session=session, rollup=rollup, params=params)

        started_at = as_utc(session.started_at) or closed_at
        session.ended_at = max(closed_at, started_at)
        session.status = status
        rollup.frozen_at = closed_at
        closed_alerts = close_session_alerts(db, session_id=session.id, closed_at=closed_at)

        with employee_lock(session.employee_id):
            state = get_tracking_state_for_update(db, session.employee_id)
            if state.active_session_id in (None, session.id):
                reset_tracking_state(state, active_session_id=None)

        db.commit()
        db.refresh(session)
        db.refresh(rollup)

    forget_session(session.id)
    logger.info(
        "tracking_session_closed",
        extra={
            "session_id": session.id,
            "employee_id": session.employee_id,
            "status": status.value,
            "distance_m": rollup.distance_m,
            "point_count": rollup.point_count,
            "closed_alert_ids": [alert.id for alert in closed_alerts],
        },
    )
    return SessionCloseOutcome(
        session=session,
        rollup=rollup,
        closed_alerts=closed_alerts,
        closed_segments=closed_segments,
    )
