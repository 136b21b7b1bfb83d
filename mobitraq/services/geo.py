from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
import logging
from math import asin, atan2, cos, degrees, radians, sin, sqrt
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mobitraq.settings import get_settings

logger = logging.getLogger("mobitraq.geo")

EARTH_RADIUS_M = 6371000.0
DEFAULT_TIMEZONE = "Asia/Kolkata"


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))
    return EARTH_RADIUS_M * c


def bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from the first to the second point, 0-360."""
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lon = radians(lon2 - lon1)

    y = sin(delta_lon) * cos(lat2_rad)
    x = cos(lat1_rad) * sin(lat2_rad) - sin(lat1_rad) * cos(lat2_rad) * cos(delta_lon)
    return (degrees(atan2(y, x)) + 360.0) % 360.0


def is_valid_coordinate(lat: float | None, lon: float | None) -> bool:
    if lat is None or lon is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    # SQLite hands timestamps back without tzinfo; everything stored is UTC.
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def as_utc(ts: datetime | None) -> datetime | None:
    if ts is None:
        return None
    return normalize_ts(ts)


def floor_to_second(ts: datetime) -> datetime:
    return normalize_ts(ts).replace(microsecond=0)


def elapsed_seconds(start: datetime, end: datetime) -> float:
    return (normalize_ts(end) - normalize_ts(start)).total_seconds()


@lru_cache
def tracking_timezone() -> ZoneInfo:
    raw_name = (get_settings().tracking_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except ZoneInfoNotFoundError:
        logger.warning("tracking_timezone_invalid", extra={"timezone": raw_name})
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_day_of(ts_utc: datetime) -> date:
    return normalize_ts(ts_utc).astimezone(tracking_timezone()).date()


def local_day_bounds_utc(local_day: date) -> tuple[datetime, datetime]:
    tz = tracking_timezone()
    local_start = datetime.combine(local_day, time.min, tzinfo=tz)
    local_end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)
