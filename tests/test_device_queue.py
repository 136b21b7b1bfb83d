from __future__ import annotations

from datetime import datetime, timedelta, timezone
import io
import json
import threading
import unittest
from unittest.mock import patch
from urllib import error as urllib_error

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from mobitraq.device.queue import (
    OfflineQueue,
    QueueParams,
    backoff_delay,
    build_point_payload,
)
from mobitraq.device.sampling import Reading
from mobitraq.device.uploader import HttpBatchTransport, QueueUploader, UploadError

T0 = datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc)


def _memory_queue() -> OfflineQueue:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return OfflineQueue(engine=engine)


def _payload(seconds: int, lon: float = 77.5946) -> dict:
    reading = Reading(lat=12.9716, lon=lon, recorded_at=T0 + timedelta(seconds=seconds), accuracy_m=8.0)
    return build_point_payload(employee_id=7, session_id=11, reading=reading)


class OfflineQueueTests(unittest.TestCase):
    def setUp(self) -> None:
        self.queue = _memory_queue()

    def test_payload_carries_wire_fields_and_hash(self) -> None:
        payload = _payload(0)
        self.assertEqual(payload["lng"], 77.5946)
        self.assertEqual(payload["recorded_at"], "2026-03-02T04:00:00+00:00")
        self.assertEqual(len(payload["idempotency_key"]), 64)
        self.assertEqual(payload["idempotency_key"], _payload(0)["idempotency_key"])

    def test_enqueue_is_idempotent_per_key(self) -> None:
        first = self.queue.enqueue(_payload(0), now_utc=T0)
        again = self.queue.enqueue(_payload(0), now_utc=T0)
        self.queue.enqueue(_payload(5), now_utc=T0)

        self.assertEqual(first.id, again.id)
        self.assertEqual(self.queue.pending_count(), 2)
        with self.assertRaises(ValueError):
            self.queue.enqueue({"lat": 1.0}, now_utc=T0)

    def test_failed_rows_wait_for_backoff(self) -> None:
        row = self.queue.enqueue(_payload(0), now_utc=T0)
        self.queue.mark_failed([row.id], "timeout", now_utc=T0)

        self.assertEqual(self.queue.next_batch(now_utc=T0 + timedelta(seconds=29)), [])
        self.assertEqual(len(self.queue.next_batch(now_utc=T0 + timedelta(seconds=30))), 1)
        self.assertEqual(self.queue.next_attempt_at(), T0 + timedelta(seconds=30))

        self.queue.mark_failed([row.id], "timeout", now_utc=T0)
        self.assertEqual(self.queue.next_attempt_at(), T0 + timedelta(seconds=60))

    def test_backoff_is_capped(self) -> None:
        params = QueueParams()
        self.assertEqual(backoff_delay(1, params), timedelta(seconds=30))
        self.assertEqual(backoff_delay(3, params), timedelta(seconds=120))
        self.assertEqual(backoff_delay(12, params), timedelta(seconds=900))

    def test_rejected_rows_are_kept_until_requeued(self) -> None:
        row = self.queue.enqueue(_payload(0), now_utc=T0)
        self.queue.mark_rejected([row.id], "SESSION_NOT_ACTIVE")

        self.assertEqual(self.queue.pending_count(), 0)
        rejected = self.queue.list_rejected()
        self.assertEqual([item.last_error for item in rejected], ["SESSION_NOT_ACTIVE"])

        self.assertEqual(self.queue.requeue_rejected(now_utc=T0), 1)
        self.assertEqual(self.queue.pending_count(), 1)

    def test_tracker_marker_detects_unclean_termination(self) -> None:
        self.assertIsNone(self.queue.detect_unclean_termination())
        self.queue.mark_tracking_started(session_id=11, now_utc=T0)

        relaunched = OfflineQueue(engine=self.queue.engine)
        details = relaunched.detect_unclean_termination()
        assert details is not None
        self.assertEqual(details["session_id"], 11)

        relaunched.mark_tracking_stopped()
        self.assertIsNone(relaunched.detect_unclean_termination())


class _FakeTransport:
    def __init__(self, responses: list) -> None:  # type: ignore[type-arg]
        self._responses = responses
        self.sent: list[list[dict]] = []

    def send(self, points):  # type: ignore[no-untyped-def]
        self.sent.append(points)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class QueueUploaderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.queue = _memory_queue()
        for seconds in (0, 5, 10):
            self.queue.enqueue(_payload(seconds), now_utc=T0)

    def test_per_point_results_drive_queue_cleanup(self) -> None:
        transport = _FakeTransport(
            [
                [
                    {"index": 0, "status": "accepted", "point_id": 1},
                    {"index": 1, "status": "duplicate", "point_id": 1},
                    {"index": 2, "status": "rejected", "reason": "INVALID_COORDINATES"},
                ]
            ]
        )
        summary = QueueUploader(self.queue, transport).drain(now_utc=T0)

        self.assertEqual((summary.uploaded, summary.duplicates, summary.rejected), (1, 1, 1))
        self.assertEqual(self.queue.pending_count(), 0)
        self.assertEqual([item.last_error for item in self.queue.list_rejected()], ["INVALID_COORDINATES"])

    def test_transient_failure_keeps_rows_for_retry(self) -> None:
        transport = _FakeTransport([UploadError("connection reset")])
        summary = QueueUploader(self.queue, transport).drain(now_utc=T0)

        self.assertEqual(summary.failed_batches, 1)
        self.assertEqual(self.queue.pending_count(), 3)
        self.assertEqual(self.queue.next_batch(now_utc=T0), [])
        self.assertEqual(self.queue.next_attempt_at(), T0 + timedelta(seconds=30))

    def test_permanent_failure_rejects_batch(self) -> None:
        transport = _FakeTransport([UploadError("bad payload", permanent=True, status_code=422)])
        summary = QueueUploader(self.queue, transport).drain(now_utc=T0)

        self.assertEqual(summary.rejected, 3)
        self.assertEqual(len(self.queue.list_rejected()), 3)
        self.assertEqual(self.queue.pending_count(), 0)

    def test_points_missing_from_response_are_retried(self) -> None:
        transport = _FakeTransport([[{"index": 0, "status": "accepted"}]])
        QueueUploader(self.queue, transport).drain(now_utc=T0)

        self.assertEqual(self.queue.pending_count(), 2)
        self.assertEqual(self.queue.next_batch(now_utc=T0), [])


class _FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


def _accepted(count: int) -> list[dict]:
    return [{"index": index, "status": "accepted", "point_id": index + 1} for index in range(count)]


class QueueUploaderRunTests(unittest.TestCase):
    def setUp(self) -> None:
        self.queue = _memory_queue()
        for seconds in (0, 5, 10):
            self.queue.enqueue(_payload(seconds), now_utc=T0)
        self.clock = _FakeClock(T0)

    def _uploader(self, transport: _FakeTransport) -> QueueUploader:
        return QueueUploader(self.queue, transport, clock=self.clock, sleep=self.clock.sleep)

    def test_waits_out_backoff_then_uploads(self) -> None:
        transport = _FakeTransport([UploadError("connection reset"), _accepted(3)])
        cycles = self._uploader(transport).run(threading.Event(), max_cycles=2)

        self.assertEqual(cycles, 2)
        self.assertEqual(self.clock.sleeps, [30.0])
        self.assertEqual(len(transport.sent), 2)
        self.assertEqual(self.queue.pending_count(), 0)

    def test_idle_queue_polls_at_idle_interval(self) -> None:
        transport = _FakeTransport([_accepted(3)])
        self._uploader(transport).run(threading.Event(), max_cycles=2)

        self.assertEqual(self.clock.sleeps, [60.0])
        self.assertEqual(len(transport.sent), 1)

    def test_stop_event_ends_the_loop(self) -> None:
        stop_event = threading.Event()
        transport = _FakeTransport([_accepted(3)])

        def sleep_then_stop(seconds: float) -> None:
            self.clock.sleep(seconds)
            stop_event.set()

        uploader = QueueUploader(self.queue, transport, clock=self.clock, sleep=sleep_then_stop)
        self.assertEqual(uploader.run(stop_event), 1)

    def test_relaunch_retries_backed_off_rows_and_reports_unclean_stop(self) -> None:
        self.queue.mark_tracking_started(session_id=11, now_utc=T0)
        ids = [item.id for item in self.queue.next_batch(now_utc=T0)]
        for _ in range(4):
            self.queue.mark_failed(ids, "offline", now_utc=T0)
        self.assertEqual(self.queue.next_batch(now_utc=T0), [])

        transport = _FakeTransport([_accepted(3)])
        uploader = self._uploader(transport)
        uploader.run(threading.Event(), max_cycles=1)

        self.assertEqual(len(transport.sent), 1)
        self.assertEqual(self.queue.pending_count(), 0)
        assert uploader.last_unclean_termination is not None
        self.assertEqual(uploader.last_unclean_termination["session_id"], 11)

    def test_connectivity_restored_makes_rows_due_now(self) -> None:
        uploader = self._uploader(_FakeTransport([UploadError("offline")]))
        uploader.drain(now_utc=T0)
        self.assertEqual(uploader.seconds_until_due(), 30.0)

        self.assertEqual(uploader.connectivity_restored(), 3)
        self.assertEqual(uploader.seconds_until_due(), 0.0)
        self.assertEqual(len(self.queue.next_batch(now_utc=T0)), 3)


class _FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return self._body


class HttpBatchTransportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = HttpBatchTransport("https://tracking.example.com/", headers={"X-Device-Id": "dev-1"})

    def test_posts_batch_and_returns_results(self) -> None:
        body = json.dumps({"accepted": 1, "duplicates": 0, "rejected": 0, "results": [{"index": 0}]}).encode()
        with patch("mobitraq.device.uploader.urllib_request.urlopen", return_value=_FakeResponse(body)) as urlopen:
            results = self.transport.send([_payload(0)])

        self.assertEqual(results, [{"index": 0}])
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://tracking.example.com/api/tracking/points/batch")
        self.assertEqual(request.get_header("X-device-id"), "dev-1")
        self.assertEqual(len(json.loads(request.data)["points"]), 1)

    def _http_error(self, code: int) -> urllib_error.HTTPError:
        return urllib_error.HTTPError(self.transport.url, code, "error", {}, io.BytesIO(b'{"error": {}}'))

    def test_client_errors_are_permanent_except_throttling(self) -> None:
        with patch("mobitraq.device.uploader.urllib_request.urlopen", side_effect=self._http_error(422)):
            with self.assertRaises(UploadError) as ctx:
                self.transport.send([_payload(0)])
        self.assertTrue(ctx.exception.permanent)
        self.assertEqual(ctx.exception.status_code, 422)

        with patch("mobitraq.device.uploader.urllib_request.urlopen", side_effect=self._http_error(429)):
            with self.assertRaises(UploadError) as ctx:
                self.transport.send([_payload(0)])
        self.assertFalse(ctx.exception.permanent)

    def test_network_errors_are_transient(self) -> None:
        with patch(
            "mobitraq.device.uploader.urllib_request.urlopen",
            side_effect=urllib_error.URLError("connection refused"),
        ):
            with self.assertRaises(UploadError) as ctx:
                self.transport.send([_payload(0)])
        self.assertFalse(ctx.exception.permanent)


if __name__ == "__main__":
    unittest.main()
