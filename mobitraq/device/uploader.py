from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import threading
import time
from typing import Any, Protocol
from urllib import error as urllib_error
from urllib import request as urllib_request

from mobitraq.device.queue import OfflineQueue, QueuedPoint
from mobitraq.services.geo import normalize_ts

logger = logging.getLogger("mobitraq.device.uploader")

BATCH_PATH = "/api/tracking/points/batch"

# Statuses worth retrying; any other 4xx means the batch can never succeed as sent.
RETRYABLE_STATUS_CODES = {408, 425, 429}

WAIT_SLICE_SECONDS = 1.0


class UploadError(Exception):
    def __init__(self, message: str, *, permanent: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.permanent = permanent
        self.status_code = status_code


class BatchTransport(Protocol):
    def send(self, points: list[dict[str, Any]]) -> list[dict[str, Any]]: ...


class HttpBatchTransport:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: int = 10,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.url = base_url.rstrip("/") + BATCH_PATH
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}

    def send(self, points: list[dict[str, Any]]) -> list[dict[str, Any]]:
        body = json.dumps({"points": points}).encode("utf-8")
        request = urllib_request.Request(
            url=self.url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        for key, value in self.headers.items():
            normalized_key = str(key or "").strip()
            normalized_value = str(value or "").strip()
            if normalized_key and normalized_value:
                request.add_header(normalized_key, normalized_value)

        try:
            with urllib_request.urlopen(request, timeout=max(1, self.timeout_seconds)) as response:
                payload = json.loads(response.read().decode("utf-8") or "{}")
        except urllib_error.HTTPError as exc:
            error_body = exc.read(512).decode("utf-8", errors="ignore")
            status_code = int(exc.code)
            permanent = 400 <= status_code < 500 and status_code not in RETRYABLE_STATUS_CODES
            raise UploadError(error_body or str(exc), permanent=permanent, status_code=status_code) from exc
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            raise UploadError(str(exc)) from exc
        except ValueError as exc:
            raise UploadError(f"invalid response body: {exc}") from exc

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise UploadError("response has no per-point results")
        return results


@dataclass(slots=True)
class DrainSummary:
    batches: int = 0
    uploaded: int = 0
    duplicates: int = 0
    rejected: int = 0
    failed_batches: int = 0


class QueueUploader:
    def __init__(
        self,
        queue: OfflineQueue,
        transport: BatchTransport,
        *,
        idle_poll_seconds: int = 60,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.queue = queue
        self.transport = transport
        self.idle_poll_seconds = idle_poll_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep or self._wait
        self.last_unclean_termination: dict[str, Any] | None = None
        self._wake = threading.Event()
        self._stop_event = threading.Event()

    def drain(self, *, now_utc: datetime | None = None, max_batches: int = 10) -> DrainSummary:
        """Uploads due rows until the queue is empty, a batch fails, or max_batches is hit."""
        now = normalize_ts(now_utc)
        summary = DrainSummary()
        for _ in range(max(1, max_batches)):
            batch = self.queue.next_batch(now_utc=now)
            if not batch:
                break
            summary.batches += 1
            ids = [item.id for item in batch]
            try:
                results = self.transport.send([item.payload for item in batch])
            except UploadError as exc:
                if exc.permanent:
                    self.queue.mark_rejected(ids, f"HTTP {exc.status_code}: {exc}")
                    summary.rejected += len(ids)
                    continue
                self.queue.mark_failed(ids, str(exc), now_utc=now)
                summary.failed_batches += 1
                logger.warning(
                    "device_upload_failed",
                    extra={"point_count": len(ids), "status_code": exc.status_code, "error": str(exc)},
                )
                break

            self._apply_results(batch, results, now_utc=now, summary=summary)
        return summary

    def _apply_results(
        self,
        batch: list[QueuedPoint],
        results: list[dict[str, Any]],
        *,
        now_utc: datetime,
        summary: DrainSummary,
    ) -> None:
        by_index: dict[int, dict[str, Any]] = {}
        for item in results:
            if isinstance(item, dict) and isinstance(item.get("index"), int):
                by_index[item["index"]] = item

        done: list[int] = []
        unanswered: list[int] = []
        rejected_by_reason: dict[str, list[int]] = {}
        for index, queued in enumerate(batch):
            result = by_index.get(index)
            status = result.get("status") if result else None
            if status == "accepted":
                done.append(queued.id)
                summary.uploaded += 1
            elif status == "duplicate":
                done.append(queued.id)
                summary.duplicates += 1
            elif status == "rejected":
                reason = str(result.get("reason") or "REJECTED") if result else "REJECTED"
                rejected_by_reason.setdefault(reason, []).append(queued.id)
                summary.rejected += 1
            else:
                unanswered.append(queued.id)

        self.queue.mark_uploaded(done)
        for reason, ids in rejected_by_reason.items():
            self.queue.mark_rejected(ids, reason)
        if unanswered:
            self.queue.mark_failed(unanswered, "missing result for point", now_utc=now_utc)

    def list_rejected(self) -> list[QueuedPoint]:
        return self.queue.list_rejected()

    def wake(self) -> None:
        """Cuts the current wait short, e.g. right after new readings were queued."""
        self._wake.set()

    def connectivity_restored(self, *, now_utc: datetime | None = None) -> int:
        rescheduled = self.queue.reschedule_pending(now_utc=now_utc or self.clock())
        logger.info("device_connectivity_restored", extra={"rescheduled": rescheduled})
        self.wake()
        return rescheduled

    def resume_after_launch(self, *, now_utc: datetime | None = None) -> dict[str, Any] | None:
        """Picks the queue back up after an app start; reports a session the OS killed."""
        unclean = self.queue.detect_unclean_termination()
        rescheduled = self.queue.reschedule_pending(now_utc=now_utc or self.clock())
        logger.info(
            "device_uploader_resumed",
            extra={
                "pending": self.queue.pending_count(),
                "rescheduled": rescheduled,
                "unclean_termination": unclean is not None,
            },
        )
        return unclean

    def seconds_until_due(self, *, now_utc: datetime | None = None) -> float:
        due = self.queue.next_attempt_at()
        if due is None:
            return float(self.idle_poll_seconds)
        now = normalize_ts(now_utc or self.clock())
        return min(max(0.0, (due - now).total_seconds()), float(self.idle_poll_seconds))

    def run(self, stop_event: threading.Event, *, max_cycles: int | None = None) -> int:
        """Drains whenever rows fall due until stop_event is set. Returns the cycle count.

        Meant for a daemon thread started at app launch; it resumes the queue
        left behind by a previous run before the first drain.
        """
        self._stop_event = stop_event
        self.last_unclean_termination = self.resume_after_launch()
        cycles = 0
        while not stop_event.is_set():
            try:
                self.drain(now_utc=self.clock())
            except Exception:
                logger.exception("device_upload_cycle_failed")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            self.sleep(self.seconds_until_due())
            self._wake.clear()
        return cycles

    def _wait(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_event.is_set() and not self._wake.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._wake.wait(min(remaining, WAIT_SLICE_SECONDS))
