from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text, create_engine, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from mobitraq.device.sampling import Reading
from mobitraq.idempotency import compute_point_hash
from mobitraq.services.geo import as_utc, normalize_ts
from mobitraq.settings import Settings, get_settings

logger = logging.getLogger("mobitraq.device.queue")

STATUS_PENDING = "pending"
STATUS_REJECTED = "rejected"

MARKER_TRACKING_ACTIVE = "tracking_active"

DEFAULT_BATCH_SIZE = 50


class QueueBase(DeclarativeBase):
    pass


class QueuedPoint(QueueBase):
    __tablename__ = "queued_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TrackerMarker(QueueBase):
    __tablename__ = "tracker_markers"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


@dataclass(frozen=True, slots=True)
class QueueParams:
    batch_size: int = DEFAULT_BATCH_SIZE
    base_delay_seconds: int = 30
    max_delay_seconds: int = 900

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> QueueParams:
        settings = settings or get_settings()
        # Never build batches the ingestion endpoint would refuse.
        return cls(batch_size=max(1, min(DEFAULT_BATCH_SIZE, settings.ingest_max_batch_size)))


def backoff_delay(attempts: int, params: QueueParams) -> timedelta:
    exponent = max(0, attempts - 1)
    seconds = min(params.max_delay_seconds, params.base_delay_seconds * (2**exponent))
    return timedelta(seconds=seconds)


def build_point_payload(*, employee_id: int, session_id: int, reading: Reading) -> dict[str, Any]:
    recorded_at = normalize_ts(reading.recorded_at)
    return {
        "employee_id": employee_id,
        "session_id": session_id,
        "lat": reading.lat,
        "lng": reading.lon,
        "accuracy": reading.accuracy_m,
        "speed": reading.speed_mps,
        "heading": reading.heading_deg,
        "provider": reading.provider,
        "recorded_at": recorded_at.isoformat(),
        "idempotency_key": compute_point_hash(
            employee_id=employee_id,
            session_id=session_id,
            recorded_at=recorded_at,
            lat=reading.lat,
            lon=reading.lon,
        ),
    }


class OfflineQueue:
    """Durable local store of accepted readings waiting for upload.

    Rows are only deleted after the server acknowledged them. Failed uploads stay
    pending with a growing retry delay; permanently rejected rows are kept with
    status ``rejected`` until an operator requeues or inspects them.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///mobitraq_queue.db",
        *,
        params: QueueParams | None = None,
        engine: Engine | None = None,
    ) -> None:
        self.params = params or QueueParams()
        self.engine = engine or create_engine(database_url, connect_args={"check_same_thread": False})
        QueueBase.metadata.create_all(self.engine)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    def enqueue(self, payload: dict[str, Any], *, now_utc: datetime | None = None) -> QueuedPoint:
        now = normalize_ts(now_utc)
        key = str(payload.get("idempotency_key") or "").strip()
        if not key:
            raise ValueError("queued points need an idempotency_key")

        with self._sessionmaker() as db:
            existing = db.scalar(select(QueuedPoint).where(QueuedPoint.idempotency_key == key))
            if existing is not None:
                return existing
            row = QueuedPoint(
                idempotency_key=key,
                payload=dict(payload),
                status=STATUS_PENDING,
                attempts=0,
                next_attempt_at=now,
                created_at=now,
            )
            db.add(row)
            db.commit()
            return row

    def next_batch(self, *, now_utc: datetime | None = None, limit: int | None = None) -> list[QueuedPoint]:
        now = normalize_ts(now_utc)
        with self._sessionmaker() as db:
            return list(
                db.scalars(
                    select(QueuedPoint)
                    .where(QueuedPoint.status == STATUS_PENDING, QueuedPoint.next_attempt_at <= now)
                    .order_by(QueuedPoint.id.asc())
                    .limit(limit or self.params.batch_size)
                ).all()
            )

    def next_attempt_at(self) -> datetime | None:
        with self._sessionmaker() as db:
            value = db.scalar(
                select(func.min(QueuedPoint.next_attempt_at)).where(QueuedPoint.status == STATUS_PENDING)
            )
        return as_utc(value)

    def reschedule_pending(self, *, now_utc: datetime | None = None) -> int:
        """Makes every backed-off pending row due now; attempts keep counting."""
        now = normalize_ts(now_utc)
        with self._sessionmaker() as db:
            rows = db.scalars(
                select(QueuedPoint).where(
                    QueuedPoint.status == STATUS_PENDING,
                    QueuedPoint.next_attempt_at > now,
                )
            ).all()
            for row in rows:
                row.next_attempt_at = now
            db.commit()
            return len(rows)

    def mark_uploaded(self, point_ids: list[int]) -> int:
        if not point_ids:
            return 0
        with self._sessionmaker() as db:
            deleted = db.execute(delete(QueuedPoint).where(QueuedPoint.id.in_(point_ids))).rowcount
            db.commit()
        return int(deleted or 0)

    def mark_failed(self, point_ids: list[int], error: str, *, now_utc: datetime | None = None) -> None:
        now = normalize_ts(now_utc)
        with self._sessionmaker() as db:
            rows = db.scalars(select(QueuedPoint).where(QueuedPoint.id.in_(point_ids))).all()
            for row in rows:
                row.attempts = (row.attempts or 0) + 1
                row.last_error = error[:4000]
                row.next_attempt_at = now + backoff_delay(row.attempts, self.params)
            db.commit()

    def mark_rejected(self, point_ids: list[int], reason: str) -> None:
        with self._sessionmaker() as db:
            rows = db.scalars(select(QueuedPoint).where(QueuedPoint.id.in_(point_ids))).all()
            for row in rows:
                row.status = STATUS_REJECTED
                row.attempts = (row.attempts or 0) + 1
                row.last_error = reason[:4000]
            db.commit()
        if point_ids:
            logger.error("device_points_rejected", extra={"point_ids": list(point_ids), "reason": reason})

    def pending_count(self) -> int:
        with self._sessionmaker() as db:
            return int(
                db.scalar(select(func.count(QueuedPoint.id)).where(QueuedPoint.status == STATUS_PENDING)) or 0
            )

    def list_rejected(self) -> list[QueuedPoint]:
        with self._sessionmaker() as db:
            return list(
                db.scalars(
                    select(QueuedPoint)
                    .where(QueuedPoint.status == STATUS_REJECTED)
                    .order_by(QueuedPoint.id.asc())
                ).all()
            )

    def requeue_rejected(self, point_ids: list[int] | None = None, *, now_utc: datetime | None = None) -> int:
        now = normalize_ts(now_utc)
        with self._sessionmaker() as db:
            stmt = select(QueuedPoint).where(QueuedPoint.status == STATUS_REJECTED)
            if point_ids is not None:
                stmt = stmt.where(QueuedPoint.id.in_(point_ids))
            rows = db.scalars(stmt).all()
            for row in rows:
                row.status = STATUS_PENDING
                row.attempts = 0
                row.next_attempt_at = now
            db.commit()
            return len(rows)

    # Tracker marker: set while tracking runs, cleared on a clean stop. Finding it
    # at launch means the OS killed the app mid-session.

    def mark_tracking_started(self, *, session_id: int, now_utc: datetime | None = None) -> None:
        now = normalize_ts(now_utc)
        with self._sessionmaker() as db:
            marker = db.get(TrackerMarker, MARKER_TRACKING_ACTIVE)
            value = {"session_id": session_id, "started_at": now.isoformat()}
            if marker is None:
                db.add(TrackerMarker(name=MARKER_TRACKING_ACTIVE, value=value, updated_at=now))
            else:
                marker.value = value
                marker.updated_at = now
            db.commit()

    def mark_tracking_stopped(self) -> None:
        with self._sessionmaker() as db:
            db.execute(delete(TrackerMarker).where(TrackerMarker.name == MARKER_TRACKING_ACTIVE))
            db.commit()

    def detect_unclean_termination(self) -> dict[str, Any] | None:
        with self._sessionmaker() as db:
            marker = db.get(TrackerMarker, MARKER_TRACKING_ACTIVE)
            if marker is None:
                return None
            details = dict(marker.value or {})
            details["last_seen_at"] = (as_utc(marker.updated_at) or datetime.now(timezone.utc)).isoformat()
        logger.warning("device_unclean_termination_detected", extra=details)
        return details
