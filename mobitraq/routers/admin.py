from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from mobitraq.db import get_db
from mobitraq.models import SessionStatus
from mobitraq.routers.tracking import build_close_response
from mobitraq.schemas import (
    AlertRead,
    DailyRollupRead,
    EmployeeCreate,
    EmployeeRead,
    LocationPointRead,
    SessionCloseResponse,
    SessionRead,
    SessionRollupRead,
    SweepSummaryRead,
    TimelineEventRead,
)
from mobitraq.services.alerts import close_alert, list_open_alerts
from mobitraq.services.detector import run_tracking_sweep
from mobitraq.services.reports import (
    get_daily_rollup,
    get_session_rollup,
    list_session_points,
    list_timeline_events,
)
from mobitraq.services.sessions import (
    cancel_session,
    create_employee,
    get_session,
    list_employees,
    list_sessions,
)

router = APIRouter(tags=["admin"])


def _mark_admin(request: Request) -> None:
    request.state.actor = "admin"
    request.state.actor_id = "admin"


@router.post("/api/admin/employees", response_model=EmployeeRead, status_code=status.HTTP_201_CREATED)
def create_employee_endpoint(
    payload: EmployeeCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> EmployeeRead:
    _mark_admin(request)
    employee = create_employee(db, full_name=payload.full_name, is_active=payload.is_active)
    request.state.employee_id = employee.id
    return EmployeeRead.model_validate(employee)


@router.get("/api/admin/employees", response_model=list[EmployeeRead])
def list_employees_endpoint(
    request: Request,
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> list[EmployeeRead]:
    _mark_admin(request)
    return [EmployeeRead.model_validate(item) for item in list_employees(db, include_inactive=include_inactive)]


@router.get("/api/admin/sessions", response_model=list[SessionRead])
def list_sessions_endpoint(
    request: Request,
    employee_id: int | None = Query(default=None, ge=1),
    session_status: SessionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[SessionRead]:
    _mark_admin(request)
    sessions = list_sessions(db, employee_id=employee_id, status=session_status, limit=limit)
    return [SessionRead.model_validate(item) for item in sessions]


@router.get("/api/admin/sessions/{session_id}", response_model=SessionRead)
def get_session_endpoint(
    session_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> SessionRead:
    _mark_admin(request)
    return SessionRead.model_validate(get_session(db, session_id))


@router.get("/api/admin/sessions/{session_id}/rollup", response_model=SessionRollupRead)
def get_session_rollup_endpoint(
    session_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> SessionRollupRead:
    _mark_admin(request)
    return SessionRollupRead(**get_session_rollup(db, session_id))


@router.get("/api/admin/sessions/{session_id}/points", response_model=list[LocationPointRead])
def list_session_points_endpoint(
    session_id: int,
    request: Request,
    include_late: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> list[LocationPointRead]:
    _mark_admin(request)
    points = list_session_points(db, session_id, include_late=include_late)
    return [LocationPointRead.model_validate(item) for item in points]


@router.post("/api/admin/sessions/{session_id}/cancel", response_model=SessionCloseResponse)
def cancel_session_endpoint(
    session_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> SessionCloseResponse:
    _mark_admin(request)
    outcome = cancel_session(db, session_id)
    request.state.employee_id = outcome.session.employee_id
    return build_close_response(outcome)


@router.get("/api/admin/employees/{employee_id}/daily-rollup", response_model=DailyRollupRead)
def get_daily_rollup_endpoint(
    employee_id: int,
    request: Request,
    local_date: date = Query(...),
    db: Session = Depends(get_db),
) -> DailyRollupRead:
    _mark_admin(request)
    request.state.employee_id = employee_id
    return DailyRollupRead(**get_daily_rollup(db, employee_id, local_date))


@router.get("/api/admin/employees/{employee_id}/timeline", response_model=list[TimelineEventRead])
def list_timeline_endpoint(
    employee_id: int,
    request: Request,
    local_date: date = Query(...),
    db: Session = Depends(get_db),
) -> list[TimelineEventRead]:
    _mark_admin(request)
    request.state.employee_id = employee_id
    return [TimelineEventRead.model_validate(item) for item in list_timeline_events(db, employee_id, local_date)]


@router.get("/api/admin/alerts", response_model=list[AlertRead])
def list_alerts_endpoint(
    request: Request,
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[AlertRead]:
    _mark_admin(request)
    return [AlertRead.model_validate(item) for item in list_open_alerts(db, employee_id=employee_id)]


@router.post("/api/admin/alerts/{alert_id}/close", response_model=AlertRead)
def close_alert_endpoint(
    alert_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> AlertRead:
    _mark_admin(request)
    alert = close_alert(db, alert_id, closed_at=datetime.now(timezone.utc))
    request.state.employee_id = alert.employee_id
    return AlertRead.model_validate(alert)


@router.post("/api/admin/tracking/sweep", response_model=SweepSummaryRead)
def run_sweep_endpoint(
    request: Request,
    db: Session = Depends(get_db),
) -> SweepSummaryRead:
    _mark_admin(request)
    summary = run_tracking_sweep(datetime.now(timezone.utc), db=db)
    return SweepSummaryRead(**summary.to_dict())
