#!/usr/bin/env python
"""Checks run before a deploy: migration graph, tracking thresholds, live schema.

Prints one JSON report and exits non-zero when any check fails. The database
check is skipped (``warn``) when no DATABASE_URL is configured.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import json
import os
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine

from mobitraq.services.schema_guard import verify_runtime_schema
from mobitraq.settings import get_settings

ROOT_DIR = Path(__file__).resolve().parents[1]

# alembic_version.version_num is VARCHAR(32).
MAX_REVISION_ID_LENGTH = 32


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any] = field(default_factory=dict)


def _script_directory() -> ScriptDirectory:
    config = Config(str(ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT_DIR / "mobitraq" / "migrations"))
    return ScriptDirectory.from_config(config)


def check_migration_graph() -> CheckResult:
    script = _script_directory()
    revisions = [item.revision for item in script.walk_revisions()]
    heads = sorted(script.get_heads())
    too_long = [revision for revision in revisions if len(revision) > MAX_REVISION_ID_LENGTH]
    failed = bool(too_long) or len(heads) != 1
    return CheckResult(
        name="migration_graph",
        status="fail" if failed else "ok",
        details={"heads": heads, "revision_count": len(revisions), "too_long": too_long},
    )


def check_tracking_thresholds() -> CheckResult:
    settings = get_settings()
    problems: list[str] = []
    if settings.clock_drift_extreme_minutes <= settings.clock_drift_flag_minutes:
        problems.append("clock_drift_extreme_minutes must exceed clock_drift_flag_minutes")
    if settings.tracking_sweep_interval_seconds > settings.no_signal_minutes * 60:
        problems.append("tracking_sweep_interval_seconds is longer than the no-signal window")
    if settings.stuck_duration_minutes * 60 < settings.tracking_sweep_interval_seconds:
        problems.append("stuck_duration_minutes is shorter than one sweep")
    if settings.jitter_base_m <= 0 or settings.max_accuracy_m <= 0:
        problems.append("jitter_base_m and max_accuracy_m must be positive")
    if settings.ingest_max_batch_size < 1:
        problems.append("ingest_max_batch_size must be at least 1")
    try:
        ZoneInfo(settings.tracking_timezone)
    except ZoneInfoNotFoundError:
        problems.append(f"unknown tracking_timezone {settings.tracking_timezone!r}")

    return CheckResult(
        name="tracking_thresholds",
        status="fail" if problems else "ok",
        details={
            "problems": problems,
            "retention_days": settings.retention_days,
            "stop_radius_m": settings.stop_radius_m,
            "stuck_radius_m": settings.stuck_radius_m,
        },
    )


def check_live_schema() -> CheckResult:
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        return CheckResult(name="live_schema", status="warn", details={"reason": "DATABASE_URL_NOT_SET"})

    heads = set(_script_directory().get_heads())
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            applied = set(MigrationContext.configure(connection).get_current_heads())
        guard = verify_runtime_schema(engine)
    finally:
        engine.dispose()

    pending = sorted(heads - applied)
    return CheckResult(
        name="live_schema",
        status="ok" if guard.ok and not pending else "fail",
        details={"applied": sorted(applied), "pending_heads": pending, **guard.to_dict()},
    )


CHECKS: tuple[Callable[[], CheckResult], ...] = (
    check_migration_graph,
    check_tracking_thresholds,
    check_live_schema,
)


def main() -> int:
    results = [check() for check in CHECKS]
    ok = all(result.status != "fail" for result in results)
    report = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": ok,
        "checks": [asdict(result) for result in results],
    }
    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
