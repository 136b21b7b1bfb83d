#!/usr/bin/env python
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text


EXPECTED_HEAD = "0001_initial"

REQUIRED_TABLES = [
    "employees",
    "tracking_sessions",
    "location_points",
    "session_rollups",
    "timeline_events",
    "employee_tracking_states",
    "tracking_alerts",
]


def load_env_if_exists() -> None:
    env_file = Path(".env")
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def run() -> dict:
    load_env_if_exists()
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not found (.env or env vars).")

    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing_tables else "ok", {"missing": missing_tables})
        if missing_tables:
            return report

        duplicate_active_sessions = conn.execute(
            text(
                """
                select employee_id, count(*)
                from tracking_sessions
                where status = 'active'
                group by employee_id
                having count(*) > 1
                """
            )
        ).fetchall()
        add(
            "duplicate_active_sessions",
            "fail" if duplicate_active_sessions else "ok",
            {"rows": [list(row) for row in duplicate_active_sessions]},
        )

        duplicate_open_alerts = conn.execute(
            text(
                """
                select employee_id, alert_type, count(*)
                from tracking_alerts
                where is_open
                group by employee_id, alert_type
                having count(*) > 1
                """
            )
        ).fetchall()
        add(
            "duplicate_open_alerts",
            "fail" if duplicate_open_alerts else "ok",
            {"rows": [[row[0], str(row[1]), row[2]] for row in duplicate_open_alerts]},
        )

        sessions_without_rollup = conn.execute(
            text(
                """
                select s.id
                from tracking_sessions s
                left join session_rollups r on r.session_id = s.id
                where r.session_id is null
                limit 20
                """
            )
        ).fetchall()
        add(
            "sessions_without_rollup",
            "warn" if sessions_without_rollup else "ok",
            {"sample_ids": [row[0] for row in sessions_without_rollup]},
        )

        closed_but_open_events = conn.execute(
            text(
                """
                select e.id
                from timeline_events e
                join tracking_sessions s on s.id = e.session_id
                where s.status <> 'active' and e.is_open
                limit 20
                """
            )
        ).fetchall()
        add(
            "open_events_on_closed_sessions",
            "fail" if closed_but_open_events else "ok",
            {"sample_ids": [row[0] for row in closed_but_open_events]},
        )

        stale_state_refs = conn.execute(
            text(
                """
                select t.employee_id
                from employee_tracking_states t
                join tracking_sessions s on s.id = t.active_session_id
                where s.status <> 'active'
                limit 20
                """
            )
        ).fetchall()
        add(
            "tracking_state_points_at_closed_session",
            "warn" if stale_state_refs else "ok",
            {"sample_employee_ids": [row[0] for row in stale_state_refs]},
        )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
