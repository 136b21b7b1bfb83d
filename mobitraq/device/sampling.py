"""Device-side acceptance policy for raw location readings.

Two explicit motion modes:

MOVING      a reading is accepted when its accuracy is usable, the rate limit has
            passed and it moved far enough from the last accepted reading (the
            threshold grows with speed). A reading is also accepted once the
            heartbeat interval elapses, so a standing device still reports.
STATIONARY  entered after several consecutive accepted readings stay inside a
            small radius of the anchor. Polling drops to one shot per stationary
            interval; a reading outside the radius switches back to MOVING and
            resets the anchor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import enum

from mobitraq.services.geo import distance_m, elapsed_seconds, is_valid_coordinate
from mobitraq.settings import Settings, get_settings

REASON_FIRST_FIX = "first_fix"
REASON_INVALID_COORDINATES = "invalid_coordinates"
REASON_LOW_ACCURACY = "low_accuracy"
REASON_RATE_LIMITED = "rate_limited"
REASON_DISPLACEMENT = "displacement"
REASON_BELOW_DISPLACEMENT = "below_displacement"
REASON_HEARTBEAT = "heartbeat"
REASON_STATIONARY_HOLD = "stationary_hold"
REASON_LEFT_STATIONARY_RADIUS = "left_stationary_radius"


class MotionMode(str, enum.Enum):
    MOVING = "moving"
    STATIONARY = "stationary"


@dataclass(frozen=True, slots=True)
class SamplingParams:
    max_accuracy_m: float = 50.0
    min_interval_seconds: int = 5
    max_interval_seconds: int = 60
    bike_speed_threshold_mps: float = 8.0
    bike_displacement_m: float = 30.0
    vehicle_displacement_m: float = 60.0
    stationary_radius_m: float = 30.0
    stationary_confirm_count: int = 3
    stationary_poll_seconds: int = 120

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SamplingParams:
        settings = settings or get_settings()
        return cls(max_accuracy_m=settings.max_accuracy_m)


@dataclass(frozen=True, slots=True)
class Reading:
    lat: float
    lon: float
    recorded_at: datetime
    accuracy_m: float | None = None
    speed_mps: float | None = None
    heading_deg: float | None = None
    provider: str | None = None


@dataclass(frozen=True, slots=True)
class SamplingDecision:
    accepted: bool
    reason: str
    mode: MotionMode
    displacement_m: float | None = None


class SamplingPolicy:
    def __init__(self, params: SamplingParams | None = None) -> None:
        self.params = params or SamplingParams()
        self.mode = MotionMode.MOVING
        self.last_accepted: Reading | None = None
        self.anchor: Reading | None = None
        self.in_radius_count = 0

    @property
    def poll_interval_seconds(self) -> int:
        if self.mode == MotionMode.STATIONARY:
            return self.params.stationary_poll_seconds
        return self.params.min_interval_seconds

    def reset(self) -> None:
        self.mode = MotionMode.MOVING
        self.last_accepted = None
        self.anchor = None
        self.in_radius_count = 0

    def evaluate(self, reading: Reading) -> SamplingDecision:
        if not is_valid_coordinate(reading.lat, reading.lon):
            return self._reject(REASON_INVALID_COORDINATES)
        if reading.accuracy_m is not None and reading.accuracy_m > self.params.max_accuracy_m:
            return self._reject(REASON_LOW_ACCURACY)

        last = self.last_accepted
        if last is None:
            self.anchor = reading
            self.in_radius_count = 1
            return self._accept(reading, REASON_FIRST_FIX, None)

        anchor = self.anchor or last
        elapsed = elapsed_seconds(last.recorded_at, reading.recorded_at)
        displacement = distance_m(last.lat, last.lon, reading.lat, reading.lon)

        if self.mode == MotionMode.STATIONARY:
            return self._evaluate_stationary(reading, anchor, elapsed, displacement)

        if elapsed < self.params.min_interval_seconds:
            return self._reject(REASON_RATE_LIMITED, displacement)
        if displacement >= self.displacement_threshold_m(reading, displacement, elapsed):
            return self._accept_moving(reading, anchor, REASON_DISPLACEMENT, displacement)
        if elapsed >= self.params.max_interval_seconds:
            return self._accept_moving(reading, anchor, REASON_HEARTBEAT, displacement)
        return self._reject(REASON_BELOW_DISPLACEMENT, displacement)

    def displacement_threshold_m(self, reading: Reading, displacement: float, elapsed: float) -> float:
        speed = reading.speed_mps
        if speed is None and elapsed > 0:
            speed = displacement / elapsed
        if speed is not None and speed >= self.params.bike_speed_threshold_mps:
            return self.params.vehicle_displacement_m
        return self.params.bike_displacement_m

    def _evaluate_stationary(
        self,
        reading: Reading,
        anchor: Reading,
        elapsed: float,
        displacement: float,
    ) -> SamplingDecision:
        from_anchor = distance_m(anchor.lat, anchor.lon, reading.lat, reading.lon)
        if from_anchor > self.params.stationary_radius_m:
            self.mode = MotionMode.MOVING
            self.anchor = reading
            self.in_radius_count = 1
            return self._accept(reading, REASON_LEFT_STATIONARY_RADIUS, displacement)
        if elapsed >= self.params.stationary_poll_seconds:
            return self._accept(reading, REASON_HEARTBEAT, displacement)
        return self._reject(REASON_STATIONARY_HOLD, displacement)

    def _accept_moving(self, reading: Reading, anchor: Reading, reason: str, displacement: float) -> SamplingDecision:
        from_anchor = distance_m(anchor.lat, anchor.lon, reading.lat, reading.lon)
        if from_anchor <= self.params.stationary_radius_m:
            self.in_radius_count += 1
        else:
            self.anchor = reading
            self.in_radius_count = 1
        if self.in_radius_count >= self.params.stationary_confirm_count:
            self.mode = MotionMode.STATIONARY
        return self._accept(reading, reason, displacement)

    def _accept(self, reading: Reading, reason: str, displacement: float | None) -> SamplingDecision:
        self.last_accepted = reading
        return SamplingDecision(accepted=True, reason=reason, mode=self.mode, displacement_m=displacement)

    def _reject(self, reason: str, displacement: float | None = None) -> SamplingDecision:
        return SamplingDecision(accepted=False, reason=reason, mode=self.mode, displacement_m=displacement)
