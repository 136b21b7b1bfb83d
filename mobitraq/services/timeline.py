"""Online STOP/MOVE segmentation of a session's point stream.

An open cluster is anchored at the first unclustered point. Points inside the
stop radius of the anchor extend it; the first point outside breaks it. A broken
cluster that dwelled at least the minimum stop duration becomes a STOP, a shorter
one is dropped as noise. Travel between clusters is a MOVE that keeps extending
over consecutive noise clusters until the next STOP or the end of the session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mobitraq.models import TimelineEventType
from mobitraq.services.distance_engine import TrackPoint
from mobitraq.services.geo import distance_m, elapsed_seconds, normalize_ts
from mobitraq.settings import Settings, get_settings


@dataclass(frozen=True, slots=True)
class SegmentationParams:
    stop_radius_m: float = 120.0
    stop_min_duration_seconds: int = 600

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SegmentationParams:
        settings = settings or get_settings()
        return cls(
            stop_radius_m=settings.stop_radius_m,
            stop_min_duration_seconds=settings.stop_min_duration_seconds,
        )


@dataclass(frozen=True, slots=True)
class TimelineSegment:
    seq: int
    event_type: TimelineEventType
    start_time: datetime
    end_time: datetime | None
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


@dataclass
class _Cluster:
    anchor_lat: float
    anchor_lon: float
    first_ts: datetime
    last_ts: datetime
    last_lat: float
    last_lon: float
    last_cum_m: float
    sum_lat: float
    sum_lon: float
    count: int = 1
    stop_seq: int | None = None

    @classmethod
    def start(cls, point: TrackPoint, cumulative_m: float) -> _Cluster:
        return cls(
            anchor_lat=point.lat,
            anchor_lon=point.lon,
            first_ts=point.ts,
            last_ts=point.ts,
            last_lat=point.lat,
            last_lon=point.lon,
            last_cum_m=cumulative_m,
            sum_lat=point.lat,
            sum_lon=point.lon,
        )

    def extend(self, point: TrackPoint, cumulative_m: float) -> None:
        self.last_ts = point.ts
        self.last_lat = point.lat
        self.last_lon = point.lon
        self.last_cum_m = cumulative_m
        self.sum_lat += point.lat
        self.sum_lon += point.lon
        self.count += 1

    @property
    def dwell_seconds(self) -> float:
        return elapsed_seconds(self.first_ts, self.last_ts)

    def to_dict(self) -> dict[str, Any]:
        payload = {key: getattr(self, key) for key in self.__dataclass_fields__}
        payload["first_ts"] = normalize_ts(self.first_ts).isoformat()
        payload["last_ts"] = normalize_ts(self.last_ts).isoformat()
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> _Cluster | None:
        if not raw:
            return None
        values = dict(raw)
        values["first_ts"] = normalize_ts(datetime.fromisoformat(values["first_ts"]))
        values["last_ts"] = normalize_ts(datetime.fromisoformat(values["last_ts"]))
        return cls(**values)


@dataclass
class _Move:
    seq: int
    start_ts: datetime
    start_lat: float
    start_lon: float
    start_cum_m: float
    end_ts: datetime
    end_lat: float
    end_lon: float
    end_cum_m: float
    count: int

    def to_dict(self) -> dict[str, Any]:
        payload = {key: getattr(self, key) for key in self.__dataclass_fields__}
        payload["start_ts"] = normalize_ts(self.start_ts).isoformat()
        payload["end_ts"] = normalize_ts(self.end_ts).isoformat()
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> _Move | None:
        if not raw:
            return None
        values = dict(raw)
        values["start_ts"] = normalize_ts(datetime.fromisoformat(values["start_ts"]))
        values["end_ts"] = normalize_ts(datetime.fromisoformat(values["end_ts"]))
        return cls(**values)


@dataclass
class TimelineSegmenter:
    params: SegmentationParams = field(default_factory=SegmentationParams)
    cluster: _Cluster | None = None
    move: _Move | None = None
    next_seq: int = 1

    def feed(self, point: TrackPoint, cumulative_m: float) -> list[TimelineSegment]:
        """Consume one point; `cumulative_m` is the session's filtered distance after it."""
        cluster = self.cluster
        if cluster is None:
            self.cluster = _Cluster.start(point, cumulative_m)
            return []

        from_anchor_m = distance_m(cluster.anchor_lat, cluster.anchor_lon, point.lat, point.lon)
        if from_anchor_m <= self.params.stop_radius_m:
            cluster.extend(point, cumulative_m)
            if self._is_stop(cluster):
                return self._surface_stop(cluster, closing=False)
            return []

        changed: list[TimelineSegment] = []
        if self._is_stop(cluster):
            changed.extend(self._surface_stop(cluster, closing=True))

        if self.move is None:
            self.move = _Move(
                seq=self._take_seq(),
                start_ts=cluster.last_ts,
                start_lat=cluster.last_lat,
                start_lon=cluster.last_lon,
                start_cum_m=cluster.last_cum_m,
                end_ts=point.ts,
                end_lat=point.lat,
                end_lon=point.lon,
                end_cum_m=cumulative_m,
                count=2,
            )
        else:
            self.move.end_ts = point.ts
            self.move.end_lat = point.lat
            self.move.end_lon = point.lon
            self.move.end_cum_m = cumulative_m
            self.move.count += cluster.count
        changed.append(self._move_segment(self.move, is_open=True))

        self.cluster = _Cluster.start(point, cumulative_m)
        return changed

    def finalize(self) -> list[TimelineSegment]:
        """Force-close the open cluster and move at session end."""
        changed: list[TimelineSegment] = []
        cluster = self.cluster
        if cluster is not None:
            if self._is_stop(cluster):
                changed.extend(self._surface_stop(cluster, closing=True))
            elif self.move is not None and cluster.count > 1:
                self.move.end_ts = cluster.last_ts
                self.move.end_lat = cluster.last_lat
                self.move.end_lon = cluster.last_lon
                self.move.end_cum_m = cluster.last_cum_m
                self.move.count += cluster.count - 1
        if self.move is not None:
            changed.append(self._move_segment(self.move, is_open=False))

        self.cluster = None
        self.move = None
        return changed

    def _is_stop(self, cluster: _Cluster) -> bool:
        return cluster.count >= 2 and cluster.dwell_seconds >= self.params.stop_min_duration_seconds

    def _surface_stop(self, cluster: _Cluster, *, closing: bool) -> list[TimelineSegment]:
        changed: list[TimelineSegment] = []
        seq = cluster.stop_seq
        if seq is None:
            # The move leading into this stop ends where the stop begins.
            if self.move is not None:
                changed.append(self._move_segment(self.move, is_open=False))
                self.move = None
            seq = cluster.stop_seq = self._take_seq()
        changed.append(self._stop_segment(cluster, seq, is_open=not closing))
        return changed

    def _take_seq(self) -> int:
        seq = self.next_seq
        self.next_seq += 1
        return seq

    @staticmethod
    def _stop_segment(cluster: _Cluster, seq: int, *, is_open: bool) -> TimelineSegment:
        return TimelineSegment(
            seq=seq,
            event_type=TimelineEventType.STOP,
            start_time=cluster.first_ts,
            end_time=None if is_open else cluster.last_ts,
            duration_seconds=int(cluster.dwell_seconds),
            point_count=cluster.count,
            is_open=is_open,
            center_lat=cluster.sum_lat / cluster.count,
            center_lon=cluster.sum_lon / cluster.count,
        )

    @staticmethod
    def _move_segment(move: _Move, *, is_open: bool) -> TimelineSegment:
        return TimelineSegment(
            seq=move.seq,
            event_type=TimelineEventType.MOVE,
            start_time=move.start_ts,
            end_time=move.end_ts,
            duration_seconds=int(elapsed_seconds(move.start_ts, move.end_ts)),
            point_count=move.count,
            is_open=is_open,
            start_lat=move.start_lat,
            start_lon=move.start_lon,
            end_lat=move.end_lat,
            end_lon=move.end_lon,
            distance_m=max(0.0, move.end_cum_m - move.start_cum_m),
        )

    def to_state(self) -> dict[str, Any]:
        return {
            "cluster": self.cluster.to_dict() if self.cluster else None,
            "move": self.move.to_dict() if self.move else None,
            "next_seq": self.next_seq,
        }

    @classmethod
    def from_state(
        cls,
        state: dict[str, Any] | None,
        params: SegmentationParams | None = None,
    ) -> TimelineSegmenter:
        state = state or {}
        return cls(
            params=params or SegmentationParams(),
            cluster=_Cluster.from_dict(state.get("cluster")),
            move=_Move.from_dict(state.get("move")),
            next_seq=int(state.get("next_seq") or 1),
        )


def segment_points(
    points: list[TrackPoint],
    cumulative_m: list[float],
    params: SegmentationParams | None = None,
) -> list[TimelineSegment]:
    """Batch helper: segments a whole ordered session and returns final events by seq."""
    segmenter = TimelineSegmenter(params=params or SegmentationParams())
    latest: dict[int, TimelineSegment] = {}
    for point, cum in zip(points, cumulative_m):
        for segment in segmenter.feed(point, cum):
            latest[segment.seq] = segment
    for segment in segmenter.finalize():
        latest[segment.seq] = segment
    return [latest[seq] for seq in sorted(latest)]


def downsample_for_rendering(
    points: list[TrackPoint],
    *,
    interval_seconds: int = 15,
    min_distance_m: float = 40.0,
) -> list[TrackPoint]:
    if len(points) <= 2:
        return list(points)

    result = [points[0]]
    for current in points[1:-1]:
        previous = result[-1]
        gap_seconds = elapsed_seconds(previous.ts, current.ts)
        moved_m = distance_m(previous.lat, previous.lon, current.lat, current.lon)
        if gap_seconds >= interval_seconds or moved_m >= min_distance_m:
            result.append(current)
    result.append(points[-1])
    return result
