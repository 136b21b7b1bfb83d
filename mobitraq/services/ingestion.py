from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mobitraq.errors import ApiError, SessionMismatchError, ValidationError
from mobitraq.idempotency import compute_point_hash
from mobitraq.models import AlertType, LocationPoint, SessionStatus, TrackingSession
from mobitraq.schemas import LocationPointIn
from mobitraq.services.alerts import close_open_alert, open_alert_if_absent
from mobitraq.services.distance_engine import FILTER_LOW_ACCURACY
from mobitraq.services.geo import as_utc, is_valid_coordinate, normalize_ts
from mobitraq.services.locks import employee_lock, session_lock
from mobitraq.services.tracking import (
    EngineParams,
    apply_points_to_session,
    get_tracking_state_for_update,
    load_rollup_for_update,
    record_latest_location,
    record_signal,
)
from mobitraq.settings import Settings, get_settings

logger = logging.getLogger("mobitraq.ingestion")

STATUS_ACCEPTED = "accepted"
STATUS_DUPLICATE = "duplicate"
STATUS_REJECTED = "rejected"

FLAG_CLOCK_DRIFT = "clock_drift"
FLAG_CLOCK_DRIFT_EXTREME = "clock_drift_extreme"
FLAG_LATE = "late"


@dataclass(frozen=True, slots=True)
class DriftParams:
    flag_after: timedelta = timedelta(minutes=10)
    extreme_after: timedelta = timedelta(minutes=60)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DriftParams:
        settings = settings or get_settings()
        return cls(
            flag_after=timedelta(minutes=settings.clock_drift_flag_minutes),
            extreme_after=timedelta(minutes=settings.clock_drift_extreme_minutes),
        )


@dataclass(frozen=True, slots=True)
class ClockDrift:
    drift_seconds: float
    flagged: bool
    extreme: bool


@dataclass(frozen=True, slots=True)
class ValidPoint:
    recorded_at: datetime
    lat: float
    lon: float


@dataclass(frozen=True, slots=True)
class _NewPoint:
    index: int
    payload: LocationPointIn
    key: str
    valid: ValidPoint


@dataclass(slots=True)
class PointResult:
    index: int
    status: str
    idempotency_key: str | None = None
    point_id: int | None = None
    reason: str | None = None
    message: str | None = None
    flags: list[str] = field(default_factory=list)


def validate_point(payload: LocationPointIn) -> ValidPoint:
    if payload.recorded_at is None:
        raise ValidationError(code="MISSING_RECORDED_AT", message="recorded_at is required.")
    if payload.lat is None or payload.lng is None or not is_valid_coordinate(payload.lat, payload.lng):
        raise ValidationError(
            code="INVALID_COORDINATES",
            message="lat must be within [-90, 90] and lng within [-180, 180].",
        )
    if payload.accuracy is not None and payload.accuracy < 0:
        raise ValidationError(code="INVALID_ACCURACY", message="accuracy must not be negative.")
    return ValidPoint(recorded_at=normalize_ts(payload.recorded_at), lat=payload.lat, lon=payload.lng)


def assess_clock_drift(
    recorded_at: datetime,
    received_at: datetime,
    params: DriftParams,
    *,
    session_started_at: datetime | None = None,
) -> ClockDrift:
    """Flags any reading far from server time; only an impossible one is extreme.

    A reading that is merely old is a queued backlog and keeps its own order.
    Extreme means the device clock is ahead of the server, or the reading claims
    to predate its own session, by more than ``extreme_after``.
    """
    recorded_at = normalize_ts(recorded_at)
    drift = recorded_at - normalize_ts(received_at)
    extreme = drift > params.extreme_after
    if session_started_at is not None:
        extreme = extreme or normalize_ts(session_started_at) - recorded_at > params.extreme_after
    return ClockDrift(
        drift_seconds=drift.total_seconds(),
        flagged=abs(drift) > params.flag_after,
        extreme=extreme,
    )


def extreme_block_shift(
    recorded: list[datetime],
    received_at: datetime,
    cursor: datetime | None,
) -> timedelta:
    # Untrusted clocks keep their spacing; the block ends at receive time and never starts before the cursor.
    if not recorded:
        return timedelta(0)
    shift = normalize_ts(received_at) - max(recorded)
    if cursor is not None and min(recorded) + shift < cursor:
        shift = cursor - min(recorded)
    return shift


def _resolve_session(
    db: Session,
    cache: dict[int, TrackingSession | None],
    payload: LocationPointIn,
) -> TrackingSession:
    if payload.session_id not in cache:
        cache[payload.session_id] = db.get(TrackingSession, payload.session_id)
    session = cache[payload.session_id]
    if session is None or session.employee_id != payload.employee_id:
        raise SessionMismatchError(
            code="SESSION_MISMATCH",
            message="Session does not belong to this employee.",
        )
    if session.status != SessionStatus.ACTIVE:
        raise SessionMismatchError(code="SESSION_NOT_ACTIVE", message="Session is not active.")
    if session.employee is not None and not session.employee.is_active:
        raise SessionMismatchError(code="EMPLOYEE_INACTIVE", message="Employee is not active.")
    return session


def _find_point(db: Session, idempotency_key: str) -> LocationPoint | None:
    return db.scalar(select(LocationPoint).where(LocationPoint.idempotency_key == idempotency_key))


def _rejected(index: int, key: str | None, exc: ApiError) -> PointResult:
    return PointResult(
        index=index,
        status=STATUS_REJECTED,
        idempotency_key=key,
        reason=exc.code,
        message=exc.message,
    )


def ingest_point_batch(
    db: Session,
    points: list[LocationPointIn],
    *,
    now_utc: datetime | None = None,
    params: EngineParams | None = None,
    drift_params: DriftParams | None = None,
) -> list[PointResult]:
    settings = get_settings()
    if len(points) > settings.ingest_max_batch_size:
        raise ValidationError(
            code="BATCH_TOO_LARGE",
            message=f"At most {settings.ingest_max_batch_size} points per batch.",
        )

    received_at = normalize_ts(now_utc)
    params = params or EngineParams.from_settings(settings)
    drift_params = drift_params or DriftParams.from_settings(settings)

    results: list[PointResult | None] = [None] * len(points)
    session_cache: dict[int, TrackingSession | None] = {}
    sessions_by_id: dict[int, TrackingSession] = {}
    first_index_by_key: dict[str, int] = {}
    repeated_in_batch: dict[int, int] = {}
    new_by_session: dict[int, list[_NewPoint]] = {}

    for index, payload in enumerate(points):
        try:
            valid = validate_point(payload)
        except ApiError as exc:
            results[index] = _rejected(index, payload.idempotency_key, exc)
            continue

        key = payload.idempotency_key or compute_point_hash(
            employee_id=payload.employee_id,
            session_id=payload.session_id,
            recorded_at=valid.recorded_at,
            lat=valid.lat,
            lon=valid.lon,
        )
        if key in first_index_by_key:
            repeated_in_batch[index] = first_index_by_key[key]
            continue

        # A stored key is a success even once the session has closed, so retries stay safe.
        existing = _find_point(db, key)
        if existing is not None:
            results[index] = PointResult(
                index=index,
                status=STATUS_DUPLICATE,
                idempotency_key=key,
                point_id=existing.id,
            )
            continue

        try:
            session = _resolve_session(db, session_cache, payload)
        except ApiError as exc:
            results[index] = _rejected(index, key, exc)
            continue

        first_index_by_key[key] = index
        sessions_by_id[session.id] = session
        new_by_session.setdefault(session.id, []).append(_NewPoint(index, payload, key, valid))

    for session_id, items in new_by_session.items():
        for result in _ingest_session_points(
            db,
            session=sessions_by_id[session_id],
            items=items,
            received_at=received_at,
            params=params,
            drift_params=drift_params,
        ):
            results[result.index] = result

    for index, first_index in repeated_in_batch.items():
        first = results[first_index]
        results[index] = PointResult(
            index=index,
            status=STATUS_DUPLICATE if first is not None and first.status != STATUS_REJECTED else STATUS_REJECTED,
            idempotency_key=first.idempotency_key if first is not None else None,
            point_id=first.point_id if first is not None else None,
            reason=first.reason if first is not None and first.status == STATUS_REJECTED else None,
        )

    finished = [result for result in results if result is not None]
    logger.info(
        "tracking_batch_ingested",
        extra={
            "received_at": received_at.isoformat(),
            "submitted": len(points),
            "accepted": sum(1 for item in finished if item.status == STATUS_ACCEPTED),
            "duplicates": sum(1 for item in finished if item.status == STATUS_DUPLICATE),
            "rejected": sum(1 for item in finished if item.status == STATUS_REJECTED),
        },
    )
    return finished


def _ingest_session_points(
    db: Session,
    *,
    session: TrackingSession,
    items: list[_NewPoint],
    received_at: datetime,
    params: EngineParams,
    drift_params: DriftParams,
) -> list[PointResult]:
    session_id = session.id
    duplicates: list[PointResult] = []
    remaining = list(items)
    for attempt in range(2):
        with session_lock(session_id):
            try:
                accepted = _apply_session_items(
                    db,
                    session=session,
                    items=remaining,
                    received_at=received_at,
                    params=params,
                    drift_params=drift_params,
                )
                db.commit()
                return accepted + duplicates
            except IntegrityError:
                db.rollback()
                if attempt:
                    raise
                logger.warning("tracking_ingest_duplicate_race", extra={"session_id": session_id})

        # A concurrent upload stored some of these keys first; they are duplicates now.
        still_new: list[_NewPoint] = []
        for item in remaining:
            existing = _find_point(db, item.key)
            if existing is None:
                still_new.append(item)
            else:
                duplicates.append(
                    PointResult(index=item.index, status=STATUS_DUPLICATE, idempotency_key=item.key, point_id=existing.id)
                )
        remaining = still_new
    return duplicates


def _apply_session_items(
    db: Session,
    *,
    session: TrackingSession,
    items: list[_NewPoint],
    received_at: datetime,
    params: EngineParams,
    drift_params: DriftParams,
) -> list[PointResult]:
    db.refresh(session)
    if session.status != SessionStatus.ACTIVE:
        return [
            PointResult(
                index=item.index,
                status=STATUS_REJECTED,
                idempotency_key=item.key,
                reason="SESSION_NOT_ACTIVE",
                message="Session is not active.",
            )
            for item in items
        ]
    if not items:
        return []

    rollup = load_rollup_for_update(db, session.id)
    drifts = [
        assess_clock_drift(
            item.valid.recorded_at,
            received_at,
            drift_params,
            session_started_at=session.started_at,
        )
        for item in items
    ]
    shift = extreme_block_shift(
        [item.valid.recorded_at for item, drift in zip(items, drifts) if drift.extreme],
        received_at,
        as_utc(rollup.last_ordering_ts),
    )

    staged: list[tuple[int, LocationPoint, ClockDrift]] = []
    for item, drift in zip(items, drifts):
        payload = item.payload
        recorded_at = item.valid.recorded_at
        point = LocationPoint(
            session_id=session.id,
            employee_id=session.employee_id,
            lat=item.valid.lat,
            lon=item.valid.lon,
            accuracy_m=payload.accuracy,
            speed_mps=payload.speed,
            heading_deg=payload.heading,
            provider=payload.provider,
            recorded_at=recorded_at,
            server_received_at=received_at,
            ordering_ts=recorded_at + shift if drift.extreme else recorded_at,
            idempotency_key=item.key,
            clock_drift_flagged=drift.flagged,
            is_late=False,
            distance_delta_m=0.0,
        )
        db.add(point)
        staged.append((item.index, point, drift))

    in_order = apply_points_to_session(
        db,
        session=session,
        rollup=rollup,
        points=[point for _index, point, _drift in staged],
        params=params,
    )
    db.flush()

    _update_tracking_state(
        db,
        session=session,
        in_order=in_order,
        drifts=[drift for _index, _point, drift in staged],
        received_at=received_at,
    )

    results: list[PointResult] = []
    for index, point, drift in staged:
        flags: list[str] = []
        if drift.flagged:
            flags.append(FLAG_CLOCK_DRIFT)
        if drift.extreme:
            flags.append(FLAG_CLOCK_DRIFT_EXTREME)
        if point.is_late:
            flags.append(FLAG_LATE)
        results.append(
            PointResult(
                index=index,
                status=STATUS_ACCEPTED,
                idempotency_key=point.idempotency_key,
                point_id=point.id,
                flags=flags,
            )
        )
    return results


def _update_tracking_state(
    db: Session,
    *,
    session: TrackingSession,
    in_order: list[LocationPoint],
    drifts: list[ClockDrift],
    received_at: datetime,
) -> None:
    usable = [point for point in in_order if point.filter_status != FILTER_LOW_ACCURACY]
    with employee_lock(session.employee_id):
        state = get_tracking_state_for_update(db, session.employee_id)
        state.active_session_id = session.id
        if usable:
            latest = usable[-1]
            current = as_utc(state.last_recorded_at)
            if current is None or normalize_ts(latest.ordering_ts) >= current:
                record_latest_location(state, latest)
        record_signal(state, received_at)

        close_open_alert(
            db,
            employee_id=session.employee_id,
            alert_type=AlertType.NO_SIGNAL,
            closed_at=received_at,
            reason="fresh_point",
        )

        drifted = [drift for drift in drifts if drift.flagged]
        if drifted:
            worst = max(drifted, key=lambda item: abs(item.drift_seconds))
            logger.warning(
                "tracking_clock_drift",
                extra={
                    "employee_id": session.employee_id,
                    "session_id": session.id,
                    "drift_seconds": worst.drift_seconds,
                    "extreme": worst.extreme,
                },
            )
            open_alert_if_absent(
                db,
                employee_id=session.employee_id,
                session_id=session.id,
                alert_type=AlertType.CLOCK_DRIFT,
                message=f"Device clock differs from server time by {abs(worst.drift_seconds) / 60:.0f} minutes.",
                opened_at=received_at,
                details={"drift_seconds": worst.drift_seconds, "extreme": worst.extreme},
            )
        else:
            close_open_alert(
                db,
                employee_id=session.employee_id,
                alert_type=AlertType.CLOCK_DRIFT,
                closed_at=received_at,
                reason="clock_in_sync",
            )
        db.flush()
