from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from mobitraq.models import (
    EmployeeTrackingState,
    LocationPoint,
    SessionRollup,
    TimelineEvent,
    TrackingSession,
)
from mobitraq.services.distance_engine import (
    FILTER_LOW_ACCURACY,
    DistanceEngine,
    DistanceParams,
    TrackPoint,
)
from mobitraq.services.geo import as_utc, normalize_ts
from mobitraq.services.timeline import SegmentationParams, TimelineSegment, TimelineSegmenter
from mobitraq.settings import Settings, get_settings

logger = logging.getLogger("mobitraq.tracking")

FILTER_LATE = "late"


@dataclass(frozen=True, slots=True)
class EngineParams:
    distance: DistanceParams = field(default_factory=DistanceParams)
    segmentation: SegmentationParams = field(default_factory=SegmentationParams)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> EngineParams:
        settings = settings or get_settings()
        return cls(
            distance=DistanceParams.from_settings(settings),
            segmentation=SegmentationParams.from_settings(settings),
        )


def load_rollup_for_update(db: Session, session_id: int) -> SessionRollup:
    rollup = db.scalar(
        select(SessionRollup).where(SessionRollup.session_id == session_id).with_for_update()
    )
    if rollup is None:
        rollup = SessionRollup(
            session_id=session_id,
            distance_m=0.0,
            point_count=0,
            late_point_count=0,
            drift_flagged_count=0,
            distance_state={},
            timeline_state={},
        )
        db.add(rollup)
        db.flush()
    return rollup


def _ordering_key(point: LocationPoint) -> tuple:
    return (
        normalize_ts(point.ordering_ts),
        normalize_ts(point.recorded_at),
        normalize_ts(point.server_received_at),
        point.idempotency_key,
    )


def apply_points_to_session(
    db: Session,
    *,
    session: TrackingSession,
    rollup: SessionRollup,
    points: Iterable[LocationPoint],
    params: EngineParams,
) -> list[LocationPoint]:
    """Feeds new points through the distance and timeline engines in ordering time.

    Ordering time is the device time, shifted as a block only for an untrusted
    clock, so the engines always see the real spacing between readings. Points
    older than the session's processing cursor are kept but flagged late and
    skipped, so the rollup never moves backwards. Returns the in-order points.
    """
    distance = DistanceEngine.from_state(rollup.distance_state, params.distance)
    segmenter = TimelineSegmenter.from_state(rollup.timeline_state, params.segmentation)
    cursor = as_utc(rollup.last_ordering_ts)
    changed: dict[int, TimelineSegment] = {}
    in_order: list[LocationPoint] = []

    for point in sorted(points, key=_ordering_key):
        ordering_ts = normalize_ts(point.ordering_ts)
        rollup.point_count += 1
        if point.clock_drift_flagged:
            rollup.drift_flagged_count += 1

        if cursor is not None and ordering_ts < cursor:
            point.is_late = True
            point.filter_status = FILTER_LATE
            point.distance_delta_m = 0.0
            rollup.late_point_count += 1
            logger.warning(
                "tracking_point_late",
                extra={
                    "session_id": session.id,
                    "idempotency_key": point.idempotency_key,
                    "ordering_ts": ordering_ts.isoformat(),
                    "cursor": cursor.isoformat(),
                },
            )
            continue

        cursor = ordering_ts
        track = TrackPoint(lat=point.lat, lon=point.lon, ts=ordering_ts, accuracy_m=point.accuracy_m)
        step = distance.feed(track)
        point.filter_status = step.status
        point.distance_delta_m = step.delta_m
        in_order.append(point)
        if step.status == FILTER_LOW_ACCURACY:
            continue
        for segment in segmenter.feed(track, distance.total_m):
            changed[segment.seq] = segment

    rollup.distance_m = max(rollup.distance_m or 0.0, distance.total_m)
    rollup.max_speed_kmh = distance.max_speed_kmh
    rollup.last_ordering_ts = cursor
    rollup.distance_state = distance.to_state()
    rollup.timeline_state = segmenter.to_state()
    upsert_timeline_segments(db, session=session, segments=changed.values())
    return in_order


def finalize_session_timeline(
    db: Session,
    *,
    session: TrackingSession,
    rollup: SessionRollup,
    params: EngineParams,
) -> list[TimelineSegment]:
    segmenter = TimelineSegmenter.from_state(rollup.timeline_state, params.segmentation)
    closed = segmenter.finalize()
    rollup.timeline_state = segmenter.to_state()
    upsert_timeline_segments(db, session=session, segments=closed)
    return closed


def upsert_timeline_segments(
    db: Session,
    *,
    session: TrackingSession,
    segments: Iterable[TimelineSegment],
) -> list[TimelineEvent]:
    rows: list[TimelineEvent] = []
    for segment in segments:
        row = db.scalar(
            select(TimelineEvent).where(
                TimelineEvent.session_id == session.id,
                TimelineEvent.seq == segment.seq,
            )
        )
        if row is None:
            row = TimelineEvent(session_id=session.id, employee_id=session.employee_id, seq=segment.seq)
            db.add(row)
        row.event_type = segment.event_type
        row.start_time = segment.start_time
        row.end_time = segment.end_time
        row.duration_seconds = segment.duration_seconds
        row.point_count = segment.point_count
        row.is_open = segment.is_open
        row.center_lat = segment.center_lat
        row.center_lon = segment.center_lon
        row.start_lat = segment.start_lat
        row.start_lon = segment.start_lon
        row.end_lat = segment.end_lat
        row.end_lon = segment.end_lon
        row.distance_m = segment.distance_m
        rows.append(row)
    if rows:
        db.flush()
    return rows


def get_tracking_state_for_update(db: Session, employee_id: int) -> EmployeeTrackingState:
    state = db.scalar(
        select(EmployeeTrackingState)
        .where(EmployeeTrackingState.employee_id == employee_id)
        .with_for_update()
    )
    if state is None:
        state = EmployeeTrackingState(employee_id=employee_id, is_stuck=False, stuck_alert_sent=False)
        db.add(state)
        db.flush()
    return state


def reset_tracking_state(state: EmployeeTrackingState, *, active_session_id: int | None) -> None:
    state.active_session_id = active_session_id
    state.last_lat = None
    state.last_lon = None
    state.last_accuracy_m = None
    state.last_recorded_at = None
    state.last_received_at = None
    state.anchor_lat = None
    state.anchor_lon = None
    state.anchor_at = None
    state.is_stuck = False
    state.stuck_alert_sent = False


def record_latest_location(state: EmployeeTrackingState, point: LocationPoint) -> None:
    state.last_lat = point.lat
    state.last_lon = point.lon
    state.last_accuracy_m = point.accuracy_m
    state.last_recorded_at = normalize_ts(point.ordering_ts)


def record_signal(state: EmployeeTrackingState, received_at: datetime) -> None:
    current = as_utc(state.last_received_at)
    received = normalize_ts(received_at)
    if current is None or received > current:
        state.last_received_at = received
