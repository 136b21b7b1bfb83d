from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Enum as SAEnum
from sqlalchemy import MetaData, inspect, text
from sqlalchemy.engine import Engine, Inspector

from mobitraq.db import Base

# Imported for its side effect of registering every table on Base.metadata.
import mobitraq.models  # noqa: F401


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class ExpectedSchema:
    columns: dict[str, set[str]]
    unique_indexes: dict[str, set[str]]
    enums: dict[str, set[str]]


def expected_schema(metadata: MetaData | None = None) -> ExpectedSchema:
    """What the ORM models need from the live database."""
    metadata = metadata or Base.metadata
    columns: dict[str, set[str]] = {"alembic_version": {"version_num"}}
    unique_indexes: dict[str, set[str]] = {}
    enums: dict[str, set[str]] = {}

    for table in metadata.sorted_tables:
        columns[table.name] = {column.name for column in table.columns}
        names = {str(index.name) for index in table.indexes if index.unique and index.name}
        if names:
            unique_indexes[table.name] = names
        for column in table.columns:
            if isinstance(column.type, SAEnum) and column.type.name:
                enums[column.type.name] = set(column.type.enums)

    return ExpectedSchema(columns=columns, unique_indexes=unique_indexes, enums=enums)


def _check_columns(inspector: Inspector, expected: ExpectedSchema) -> list[str]:
    issues: list[str] = []
    for table_name, required_columns in expected.columns.items():
        try:
            present = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        missing = sorted(required_columns - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return issues


def _check_unique_indexes(
    inspector: Inspector,
    expected: ExpectedSchema,
    warnings: list[str],
) -> list[str]:
    # The one-active-session and one-open-alert rules live only in these indexes.
    issues: list[str] = []
    for table_name, required_names in expected.unique_indexes.items():
        try:
            present = {str(item.get("name")) for item in inspector.get_indexes(table_name)}
        except Exception as exc:
            warnings.append(f"INDEX_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        for index_name in sorted(required_names - present):
            issues.append(f"MISSING_INDEX:{table_name}:{index_name}")
    return issues


def _check_enums(inspector: Inspector, expected: ExpectedSchema, warnings: list[str]) -> list[str]:
    try:
        reflected = inspector.get_enums() or []
    except Exception as exc:
        # Only PostgreSQL reflects named enums.
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return []

    labels_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in reflected
        if item.get("name")
    }
    issues: list[str] = []
    for enum_name, required_values in sorted(expected.enums.items()):
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required_values - labels_by_name[enum_name])
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")
    return issues


def _check_alembic_version(engine: Engine) -> list[str]:
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:
        return [f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}"]
    if row is None or not str(row).strip():
        return ["ALEMBIC_VERSION_EMPTY"]
    return []


def verify_runtime_schema(engine: Engine, expected: ExpectedSchema | None = None) -> SchemaGuardResult:
    expected = expected or expected_schema()
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    warnings: list[str] = []

    issues = _check_columns(inspector, expected)
    issues += _check_unique_indexes(inspector, expected, warnings)
    issues += _check_enums(inspector, expected, warnings)
    issues += _check_alembic_version(engine)

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
