from __future__ import annotations

from datetime import datetime
import hashlib

from mobitraq.services.geo import floor_to_second


def _coordinate_token(value: float) -> str:
    # Adding 0.0 folds -0.0 into 0.0 so both hash identically.
    return f"{round(value, 5) + 0.0:.5f}"


def compute_point_hash(
    *,
    employee_id: int | str,
    session_id: int | str,
    recorded_at: datetime,
    lat: float,
    lon: float,
) -> str:
    """Deterministic idempotency key for one reading.

    Retried uploads of the same reading (same employee, session, second and
    coordinates rounded to 5 decimals) always produce the same key.
    """
    recorded_seconds = int(floor_to_second(recorded_at).timestamp())
    raw = "|".join(
        (
            str(employee_id),
            str(session_id),
            str(recorded_seconds),
            _coordinate_token(lat),
            _coordinate_token(lon),
        )
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
