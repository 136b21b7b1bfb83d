"""Filtered distance accumulation for one tracking session.

Points are fed in ordering-time order. A point only contributes distance when
it is accurate enough, moved further than the jitter threshold from the last
confirmed point, and implies a plausible speed. An implausibly fast jump is held
as a pending teleport and resolved by the following point: if the next point
continues from the jump at a plausible speed the jump is confirmed, otherwise
it is dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from mobitraq.services.geo import distance_m, elapsed_seconds, normalize_ts
from mobitraq.settings import Settings, get_settings

logger = logging.getLogger("mobitraq.distance")

FILTER_ANCHOR = "anchor"
FILTER_CONFIRMED = "confirmed"
FILTER_JITTER = "jitter"
FILTER_LOW_ACCURACY = "low_accuracy"
FILTER_TELEPORT_PENDING = "teleport_pending"
FILTER_TELEPORT_CONFIRMED = "teleport_confirmed"
FILTER_TELEPORT_REJECTED = "teleport_rejected"


@dataclass(frozen=True, slots=True)
class DistanceParams:
    max_accuracy_m: float = 50.0
    jitter_base_m: float = 10.0
    jitter_accuracy_multiplier: float = 2.0
    teleport_speed_kmh: float = 160.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DistanceParams:
        settings = settings or get_settings()
        return cls(
            max_accuracy_m=settings.max_accuracy_m,
            jitter_base_m=settings.jitter_base_m,
            jitter_accuracy_multiplier=settings.jitter_accuracy_multiplier,
            teleport_speed_kmh=settings.teleport_speed_kmh,
        )


@dataclass(frozen=True, slots=True)
class TrackPoint:
    lat: float
    lon: float
    ts: datetime
    accuracy_m: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "ts": normalize_ts(self.ts).isoformat(),
            "accuracy_m": self.accuracy_m,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> TrackPoint | None:
        if not raw:
            return None
        return cls(
            lat=float(raw["lat"]),
            lon=float(raw["lon"]),
            ts=normalize_ts(datetime.fromisoformat(raw["ts"])),
            accuracy_m=raw.get("accuracy_m"),
        )


@dataclass(frozen=True, slots=True)
class DistanceStep:
    delta_m: float
    status: str
    resolved_pending: str | None = None


def jitter_threshold_m(accuracy_m: float | None, params: DistanceParams) -> float:
    return max(params.jitter_base_m, params.jitter_accuracy_multiplier * (accuracy_m or 0.0))


def implied_speed_kmh(start: TrackPoint, end: TrackPoint, meters: float, params: DistanceParams) -> float:
    seconds = elapsed_seconds(start.ts, end.ts)
    if seconds <= 0:
        # Same-second readings only count as stationary when they barely differ.
        return 0.0 if meters < params.jitter_base_m else float("inf")
    return (meters / seconds) * 3.6


@dataclass
class DistanceEngine:
    params: DistanceParams = field(default_factory=DistanceParams)
    last_confirmed: TrackPoint | None = None
    pending: TrackPoint | None = None
    total_m: float = 0.0
    max_speed_kmh: float | None = None

    def feed(self, point: TrackPoint) -> DistanceStep:
        if point.accuracy_m is not None and point.accuracy_m > self.params.max_accuracy_m:
            logger.debug("distance_point_low_accuracy", extra={"accuracy_m": point.accuracy_m})
            return DistanceStep(delta_m=0.0, status=FILTER_LOW_ACCURACY)

        last = self.last_confirmed
        if last is None:
            self.last_confirmed = point
            return DistanceStep(delta_m=0.0, status=FILTER_ANCHOR)

        delta = 0.0
        resolved: str | None = None
        pending = self.pending
        if pending is not None:
            delta, resolved = self._resolve_pending(last, pending, point)

        step_delta, status = self._evaluate(self.last_confirmed or last, point)
        return DistanceStep(delta_m=delta + step_delta, status=status, resolved_pending=resolved)

    def _resolve_pending(self, last: TrackPoint, pending: TrackPoint, point: TrackPoint) -> tuple[float, str]:
        self.pending = None

        follow_m = distance_m(pending.lat, pending.lon, point.lat, point.lon)
        if implied_speed_kmh(pending, point, follow_m, self.params) > self.params.teleport_speed_kmh:
            logger.debug("distance_teleport_rejected", extra={"pending_ts": pending.ts.isoformat()})
            return 0.0, FILTER_TELEPORT_REJECTED

        jump_m = distance_m(last.lat, last.lon, pending.lat, pending.lon)
        self._confirm(pending, jump_m, speed_kmh=None)
        return jump_m, FILTER_TELEPORT_CONFIRMED

    def _evaluate(self, last: TrackPoint, point: TrackPoint) -> tuple[float, str]:
        meters = distance_m(last.lat, last.lon, point.lat, point.lon)
        if meters < jitter_threshold_m(point.accuracy_m, self.params):
            return 0.0, FILTER_JITTER

        speed_kmh = implied_speed_kmh(last, point, meters, self.params)
        if speed_kmh > self.params.teleport_speed_kmh:
            self.pending = point
            return 0.0, FILTER_TELEPORT_PENDING

        self._confirm(point, meters, speed_kmh=speed_kmh)
        return meters, FILTER_CONFIRMED

    def _confirm(self, point: TrackPoint, meters: float, *, speed_kmh: float | None) -> None:
        self.total_m += meters
        self.last_confirmed = point
        if speed_kmh is not None and (self.max_speed_kmh is None or speed_kmh > self.max_speed_kmh):
            self.max_speed_kmh = speed_kmh

    def to_state(self) -> dict[str, Any]:
        return {
            "last_confirmed": self.last_confirmed.to_dict() if self.last_confirmed else None,
            "pending": self.pending.to_dict() if self.pending else None,
            "total_m": self.total_m,
            "max_speed_kmh": self.max_speed_kmh,
        }

    @classmethod
    def from_state(cls, state: dict[str, Any] | None, params: DistanceParams | None = None) -> DistanceEngine:
        state = state or {}
        return cls(
            params=params or DistanceParams(),
            last_confirmed=TrackPoint.from_dict(state.get("last_confirmed")),
            pending=TrackPoint.from_dict(state.get("pending")),
            total_m=float(state.get("total_m") or 0.0),
            max_speed_kmh=state.get("max_speed_kmh"),
        )


def total_filtered_distance_m(points: list[TrackPoint], params: DistanceParams | None = None) -> float:
    engine = DistanceEngine(params=params or DistanceParams())
    for point in sorted(points, key=lambda item: normalize_ts(item.ts)):
        engine.feed(point)
    return engine.total_m
