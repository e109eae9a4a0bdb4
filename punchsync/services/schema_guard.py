from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

EXPECTED_ALEMBIC_HEAD = "0002_quality_and_feed"


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    alembic_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "alembic_version": self.alembic_version,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "raw_punch_events": {"source_id", "employee_code", "punch_ts_utc", "direction", "consumed_at", "is_access_control"},
    "attendance_sessions": {"employee_code", "work_date", "check_in_utc", "check_out_utc", "status", "total_hours"},
    "attendance_session_events": {"source_id", "session_id", "role"},
    "session_transitions": {"id", "session_id", "status"},
    "gap_records": {"start_id", "end_id", "status", "attempts", "next_attempt_at"},
    "ingest_counters": {"day", "inserted_count", "duplicate_count"},
    "task_states": {"name", "consecutive_failures", "details"},
    "daily_quality_reports": {"day", "score", "flagged"},
    "alembic_version": {"version_num"},
}

# Constraints that ingestion and folding rely on for exactly-once behaviour.
REQUIRED_UNIQUE_KEYS: dict[str, set[str]] = {
    "raw_punch_events": {"source_id"},
    "attendance_sessions": {"uq_attendance_sessions_open_key"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_session_status": {"OPEN", "COMPLETE", "AUTO_CLOSED", "ORPHANED"},
    "gap_status": {"OPEN", "RESOLVED", "STALE"},
}


def _unique_markers(inspector: Any, table_name: str) -> set[str]:
    markers: set[str] = set()
    for index in inspector.get_indexes(table_name) or []:
        if not index.get("unique"):
            continue
        if index.get("name"):
            markers.add(str(index["name"]))
        markers.update(str(column) for column in index.get("column_names") or [] if column)
    for constraint in inspector.get_unique_constraints(table_name) or []:
        if constraint.get("name"):
            markers.add(str(constraint["name"]))
        markers.update(str(column) for column in constraint.get("column_names") or [] if column)
    return markers


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:  # pragma: no cover - defensive
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    for table_name, required_markers in REQUIRED_UNIQUE_KEYS.items():
        try:
            markers = _unique_markers(inspector, table_name)
        except Exception as exc:  # pragma: no cover - defensive
            warnings.append(f"INDEX_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        missing_markers = sorted(item for item in required_markers if item not in markers)
        if missing_markers:
            issues.append(f"MISSING_UNIQUE_KEYS:{table_name}:{','.join(missing_markers)}")

    try:
        enums = inspector.get_enums() or []
    except Exception as exc:  # pragma: no cover - defensive
        # Dialects without native enums (SQLite) land here.
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        enums = []

    enum_values_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        if not name:
            continue
        labels = enum_item.get("labels")
        if isinstance(labels, list):
            enum_values_by_name[name] = {str(label) for label in labels}

    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in enum_values_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    version: str | None = None
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
            elif version != EXPECTED_ALEMBIC_HEAD:
                warnings.append(f"ALEMBIC_VERSION_MISMATCH:{version}:{EXPECTED_ALEMBIC_HEAD}")
    except Exception as exc:  # pragma: no cover - defensive
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
        alembic_version=version or None,
    )
