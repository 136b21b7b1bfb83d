from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from mobitraq.db import SessionLocal
from mobitraq.models import LocationPoint, SessionStatus, TimelineEvent, TrackingSession
from mobitraq.services.geo import normalize_ts
from mobitraq.settings import get_settings

logger = logging.getLogger("mobitraq.retention")


@dataclass(frozen=True, slots=True)
class RetentionSummary:
    cutoff_utc: datetime
    deleted_points: int
    deleted_timeline_events: int


def purge_expired_tracking_data(
    now_utc: datetime | None = None,
    db: Session | None = None,
    *,
    retention_days: int | None = None,
) -> RetentionSummary:
    """Deletes raw points and closed timeline events past the retention horizon.

    Rollups and alerts are kept. Points of a still-active session are never purged.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return purge_expired_tracking_data(now_utc, db=managed_db, retention_days=retention_days)

    days = retention_days if retention_days is not None else get_settings().retention_days
    cutoff_utc = normalize_ts(now_utc) - timedelta(days=max(1, days))
    active_session_ids = select(TrackingSession.id).where(TrackingSession.status == SessionStatus.ACTIVE)

    deleted_points = db.execute(
        delete(LocationPoint)
        .where(
            LocationPoint.recorded_at < cutoff_utc,
            LocationPoint.session_id.not_in(active_session_ids),
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    deleted_events = db.execute(
        delete(TimelineEvent)
        .where(
            TimelineEvent.is_open.is_(False),
            TimelineEvent.end_time.is_not(None),
            TimelineEvent.end_time < cutoff_utc,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()

    summary = RetentionSummary(
        cutoff_utc=cutoff_utc,
        deleted_points=int(deleted_points or 0),
        deleted_timeline_events=int(deleted_events or 0),
    )
    logger.info(
        "tracking_retention_purged",
        extra={
            "cutoff_utc": cutoff_utc.isoformat(),
            "deleted_points": summary.deleted_points,
            "deleted_timeline_events": summary.deleted_timeline_events,
        },
    )
    return summary
