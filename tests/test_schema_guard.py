from __future__ import annotations

import unittest
from unittest.mock import patch

from mobitraq.services.schema_guard import expected_schema, verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        indexes_by_table: dict[str, set[str]],
        enums: list[dict[str, object]],
    ):
        self._columns_by_table = columns_by_table
        self._indexes_by_table = indexes_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table.get(table_name, set())
        return [{"name": item} for item in columns]

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._indexes_by_table.get(table_name, set())]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


def _complete_columns() -> dict[str, set[str]]:
    return {name: set(columns) for name, columns in expected_schema().columns.items()}


def _complete_indexes() -> dict[str, set[str]]:
    return {name: set(indexes) for name, indexes in expected_schema().unique_indexes.items()}


_COMPLETE_ENUMS: list[dict[str, object]] = [
    {"name": "tracking_session_status", "labels": ["active", "closed", "cancelled"]},
    {"name": "timeline_event_type", "labels": ["STOP", "MOVE"]},
    {"name": "tracking_alert_type", "labels": ["stuck", "no_signal", "clock_drift"]},
    {"name": "tracking_alert_severity", "labels": ["info", "warn", "critical"]},
]


class SchemaGuardTests(unittest.TestCase):
    def test_expected_schema_follows_models(self) -> None:
        expected = expected_schema()

        self.assertIn("filter_status", expected.columns["location_points"])
        self.assertIn("version_num", expected.columns["alembic_version"])
        self.assertEqual(
            expected.unique_indexes["tracking_sessions"],
            {"uq_tracking_sessions_one_active_per_employee"},
        )
        self.assertIn("ix_location_points_idempotency_key", expected.unique_indexes["location_points"])
        self.assertEqual(expected.enums["tracking_alert_type"], {"stuck", "no_signal", "clock_drift"})

    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_complete_columns(),
            indexes_by_table=_complete_indexes(),
            enums=_COMPLETE_ENUMS,
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("mobitraq.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns_and_indexes(self) -> None:
        columns = _complete_columns()
        columns["location_points"] = {"id", "session_id"}
        indexes = _complete_indexes()
        indexes["tracking_sessions"] = set()
        enums = [
            item for item in _COMPLETE_ENUMS if item["name"] not in {"tracking_session_status", "tracking_alert_type"}
        ]
        enums.append({"name": "tracking_alert_type", "labels": ["stuck", "no_signal"]})
        fake_inspector = _FakeInspector(columns_by_table=columns, indexes_by_table=indexes, enums=enums)
        fake_engine = _FakeEngine("")

        with patch("mobitraq.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        missing_columns = [item for item in result.issues if item.startswith("MISSING_COLUMNS:location_points:")]
        self.assertEqual(len(missing_columns), 1)
        self.assertIn("filter_status", missing_columns[0])
        self.assertIn(
            "MISSING_INDEX:tracking_sessions:uq_tracking_sessions_one_active_per_employee",
            result.issues,
        )
        self.assertIn("MISSING_ENUM_VALUES:tracking_alert_type:clock_drift", result.issues)
        self.assertIn("ENUM_NOT_FOUND:tracking_session_status", result.warnings)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)


if __name__ == "__main__":
    unittest.main()
