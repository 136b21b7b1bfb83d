from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from mobitraq.models import AlertSeverity, AlertType, SessionStatus, TimelineEventType


class EmployeeCreate(BaseModel):
    full_name: str = Field(min_length=2, max_length=255)
    is_active: bool = True


class EmployeeRead(BaseModel):
    id: int
    full_name: str
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class SessionStartRequest(BaseModel):
    employee_id: int = Field(ge=1)


class SessionRead(BaseModel):
    id: int
    employee_id: int
    started_at: datetime
    ended_at: datetime | None = None
    status: SessionStatus

    model_config = ConfigDict(from_attributes=True)


class SessionRollupRead(BaseModel):
    session_id: int
    employee_id: int
    status: SessionStatus
    started_at: datetime
    ended_at: datetime | None = None
    distance_m: float
    distance_km: float
    point_count: int
    late_point_count: int
    drift_flagged_count: int
    duration_minutes: int
    avg_speed_kmh: float | None = None
    max_speed_kmh: float | None = None
    frozen_at: datetime | None = None


class SessionCloseResponse(BaseModel):
    session: SessionRead
    rollup: SessionRollupRead
    closed_alert_ids: list[int] = Field(default_factory=list)
    closed_timeline_event_seqs: list[int] = Field(default_factory=list)


class DailyRollupRead(BaseModel):
    employee_id: int
    local_date: date
    timezone: str
    distance_m: float
    distance_km: float
    session_count: int
    point_count: int
    total_duration_minutes: int


class LocationPointIn(BaseModel):
    # Coordinates and timestamp stay optional here so one bad point is rejected
    # in the per-point result instead of failing the whole batch.
    employee_id: int
    session_id: int
    lat: float | None = None
    lng: float | None = None
    accuracy: float | None = None
    speed: float | None = None
    heading: float | None = None
    provider: str | None = Field(default=None, max_length=32)
    recorded_at: datetime | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


class PointBatchRequest(BaseModel):
    points: list[LocationPointIn] = Field(min_length=1)


class PointResultRead(BaseModel):
    index: int
    status: Literal["accepted", "duplicate", "rejected"]
    idempotency_key: str | None = None
    point_id: int | None = None
    reason: str | None = None
    message: str | None = None
    flags: list[str] = Field(default_factory=list)


class PointBatchResponse(BaseModel):
    accepted: int
    duplicates: int
    rejected: int
    results: list[PointResultRead]


class LocationPointRead(BaseModel):
    id: int
    session_id: int
    employee_id: int
    lat: float
    lon: float
    accuracy_m: float | None = None
    speed_mps: float | None = None
    heading_deg: float | None = None
    provider: str | None = None
    recorded_at: datetime
    server_received_at: datetime
    idempotency_key: str
    clock_drift_flagged: bool
    is_late: bool
    filter_status: str | None = None
    distance_delta_m: float

    model_config = ConfigDict(from_attributes=True)


class TimelineEventRead(BaseModel):
    id: int
    session_id: int
    employee_id: int
    seq: int
    event_type: TimelineEventType
    start_time: datetime
    end_time: datetime | None = None
    duration_seconds: int
    point_count: int
    is_open: bool
    center_lat: float | None = None
    center_lon: float | None = None
    start_lat: float | None = None
    start_lon: float | None = None
    end_lat: float | None = None
    end_lon: float | None = None
    distance_m: float | None = None

    model_config = ConfigDict(from_attributes=True)


class AlertRead(BaseModel):
    id: int
    employee_id: int
    session_id: int | None = None
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    lat: float | None = None
    lon: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    opened_at: datetime
    closed_at: datetime | None = None
    is_open: bool

    model_config = ConfigDict(from_attributes=True)


class SweepSummaryRead(BaseModel):
    ran_at_utc: datetime
    evaluated: int
    opened_alert_ids: list[int]
    closed_alert_ids: list[int]
    failed_employee_ids: list[int]


class RetentionSummaryRead(BaseModel):
    cutoff_utc: datetime
    deleted_points: int
    deleted_timeline_events: int
