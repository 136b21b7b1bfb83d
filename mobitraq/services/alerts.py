from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from mobitraq.errors import NotFoundError
from mobitraq.models import AlertSeverity, AlertType, TrackingAlert
from mobitraq.services.geo import normalize_ts

logger = logging.getLogger("mobitraq.alerts")

DEFAULT_SEVERITY: dict[AlertType, AlertSeverity] = {
    AlertType.STUCK: AlertSeverity.WARN,
    AlertType.NO_SIGNAL: AlertSeverity.CRITICAL,
    AlertType.CLOCK_DRIFT: AlertSeverity.INFO,
}


def get_open_alert(db: Session, *, employee_id: int, alert_type: AlertType) -> TrackingAlert | None:
    return db.scalar(
        select(TrackingAlert).where(
            TrackingAlert.employee_id == employee_id,
            TrackingAlert.alert_type == alert_type,
            TrackingAlert.is_open.is_(True),
        )
    )


def open_alert_if_absent(
    db: Session,
    *,
    employee_id: int,
    session_id: int | None,
    alert_type: AlertType,
    message: str,
    opened_at: datetime,
    lat: float | None = None,
    lon: float | None = None,
    details: dict[str, Any] | None = None,
    severity: AlertSeverity | None = None,
) -> TrackingAlert | None:
    """Opens an alert unless one of the same type is already open; returns the new row."""
    if get_open_alert(db, employee_id=employee_id, alert_type=alert_type) is not None:
        return None

    alert = TrackingAlert(
        employee_id=employee_id,
        session_id=session_id,
        alert_type=alert_type,
        severity=severity or DEFAULT_SEVERITY[alert_type],
        message=message,
        lat=lat,
        lon=lon,
        details=details or {},
        opened_at=normalize_ts(opened_at),
        closed_at=None,
        is_open=True,
    )
    db.add(alert)
    db.flush()
    logger.info(
        "tracking_alert_opened",
        extra={
            "alert_id": alert.id,
            "employee_id": employee_id,
            "session_id": session_id,
            "alert_type": alert_type.value,
        },
    )
    return alert


def _close(alert: TrackingAlert, closed_at: datetime, *, reason: str) -> TrackingAlert:
    alert.is_open = False
    alert.closed_at = normalize_ts(closed_at)
    alert.details = {**(alert.details or {}), "close_reason": reason}
    logger.info(
        "tracking_alert_closed",
        extra={
            "alert_id": alert.id,
            "employee_id": alert.employee_id,
            "alert_type": alert.alert_type.value,
            "close_reason": reason,
        },
    )
    return alert


def close_open_alert(
    db: Session,
    *,
    employee_id: int,
    alert_type: AlertType,
    closed_at: datetime,
    reason: str = "condition_cleared",
) -> TrackingAlert | None:
    alert = get_open_alert(db, employee_id=employee_id, alert_type=alert_type)
    if alert is None:
        return None
    _close(alert, closed_at, reason=reason)
    db.flush()
    return alert


def close_session_alerts(db: Session, *, session_id: int, closed_at: datetime) -> list[TrackingAlert]:
    alerts = list(
        db.scalars(
            select(TrackingAlert).where(
                TrackingAlert.session_id == session_id,
                TrackingAlert.is_open.is_(True),
            )
        ).all()
    )
    for alert in alerts:
        _close(alert, closed_at, reason="session_closed")
    if alerts:
        db.flush()
    return alerts


def list_open_alerts(db: Session, employee_id: int | None = None) -> list[TrackingAlert]:
    stmt = select(TrackingAlert).where(TrackingAlert.is_open.is_(True))
    if employee_id is not None:
        stmt = stmt.where(TrackingAlert.employee_id == employee_id)
    stmt = stmt.order_by(TrackingAlert.opened_at.desc(), TrackingAlert.id.desc())
    return list(db.scalars(stmt).all())


def close_alert(db: Session, alert_id: int, *, closed_at: datetime) -> TrackingAlert:
    alert = db.get(TrackingAlert, alert_id)
    if alert is None:
        raise NotFoundError(code="ALERT_NOT_FOUND", message="Alert not found.")
    if alert.is_open:
        _close(alert, closed_at, reason="acknowledged")
    db.commit()
    return alert
