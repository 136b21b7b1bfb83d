import asyncio
from contextlib import suppress
from datetime import date, datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mobitraq.db import engine
from mobitraq.errors import ApiError, error_response
from mobitraq.logging_utils import setup_json_logging
from mobitraq.routers import admin, tracking
from mobitraq.services.detector import run_tracking_sweep
from mobitraq.services.geo import local_day_of, tracking_timezone
from mobitraq.services.retention import purge_expired_tracking_data
from mobitraq.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from mobitraq.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level, service=settings.app_name)
logger = logging.getLogger("mobitraq.request")
worker_logger = logging.getLogger("mobitraq.worker")

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "employee_id": getattr(request.state, "employee_id", None),
                "flags": getattr(request.state, "flags", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(tracking.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _tracking_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(30, int(settings.tracking_sweep_interval_seconds))
    last_retention_day: date | None = None
    while not stop_event.is_set():
        now_utc = datetime.now(timezone.utc)
        try:
            summary = await asyncio.to_thread(run_tracking_sweep, now_utc)
        except Exception:
            worker_logger.exception("tracking_sweep_tick_failed")
        else:
            if summary.failed_employee_ids:
                worker_logger.warning(
                    "tracking_sweep_partial_failure",
                    extra={"failed_employee_ids": summary.failed_employee_ids},
                )

        local_today = local_day_of(now_utc)
        if last_retention_day != local_today:
            try:
                await asyncio.to_thread(purge_expired_tracking_data, now_utc)
            except Exception:
                worker_logger.exception("tracking_retention_tick_failed")
            else:
                last_retention_day = local_today

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    worker_logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_tracking_worker() -> None:
    if not settings.tracking_sweep_enabled:
        return
    if getattr(app.state, "tracking_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_tracking_worker_loop(stop_event))
    app.state.tracking_worker_stop_event = stop_event
    app.state.tracking_worker_task = task
    worker_logger.info(
        "tracking_worker_started",
        extra={
            "interval_seconds": max(30, int(settings.tracking_sweep_interval_seconds)),
            "retention_days": settings.retention_days,
            "timezone": tracking_timezone().key,
        },
    )


@app.on_event("shutdown")
async def stop_tracking_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "tracking_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "tracking_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.tracking_worker_stop_event = None
    app.state.tracking_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    worker_task = getattr(app.state, "tracking_worker_task", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "tracking_worker": {
            "enabled": settings.tracking_sweep_enabled,
            "running": worker_task is not None and not worker_task.done(),
            "interval_seconds": settings.tracking_sweep_interval_seconds,
        },
        "timezone": tracking_timezone().key,
    }
