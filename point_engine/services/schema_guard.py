from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

EXPECTED_ALEMBIC_HEAD = "0002_attendance_points"


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


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "full_name", "role"},
    "attendances": {"id", "user_id", "shift_date", "status", "is_advised", "admin_verified"},
    "attendance_points": {
        "id",
        "user_id",
        "attendance_id",
        "shift_date",
        "point_type",
        "points",
        "is_manual",
        "is_excused",
        "expires_at",
        "expiration_type",
        "is_expired",
        "expired_at",
        "eligible_for_gbro",
        "gbro_expires_at",
    },
    "notification_jobs": {"id", "job_type", "idempotency_key"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_point_type": {
        "TARDY",
        "UNDERTIME",
        "UNDERTIME_SEVERE",
        "HALF_DAY_ABSENCE",
        "WHOLE_DAY_ABSENCE_ADVISED",
        "WHOLE_DAY_ABSENCE_UNADVISED",
    },
    "attendance_point_expiration_type": {"NONE", "SRO", "GBRO"},
}

# The cascade and the expiry sweep scan by these; missing ones only slow things down.
EXPECTED_POINT_INDEXES = {
    "ix_attendance_points_user_shift_date",
    "ix_attendance_points_expiry_scan",
    "ix_attendance_points_attendance_id",
}


def _check_columns(inspector: Any, issues: list[str]) -> None:
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")


def _check_enums(inspector: Any, issues: list[str], warnings: list[str]) -> None:
    try:
        enums = inspector.get_enums() or []
    except Exception as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in enums
        if item.get("name")
    }
    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in labels_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")


def _check_indexes(inspector: Any, warnings: list[str]) -> None:
    try:
        present = {str(item.get("name")) for item in inspector.get_indexes("attendance_points")}
    except Exception as exc:
        warnings.append(f"INDEX_INSPECTION_FAILED:{exc.__class__.__name__}")
        return
    for index_name in sorted(EXPECTED_POINT_INDEXES - present):
        warnings.append(f"MISSING_INDEX:attendance_points:{index_name}")


def _check_alembic_version(engine: Engine, issues: list[str], warnings: list[str]) -> None:
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return

    version = str(row).strip() if row is not None else ""
    if not version:
        issues.append("ALEMBIC_VERSION_EMPTY")
    elif version != EXPECTED_ALEMBIC_HEAD:
        warnings.append(f"ALEMBIC_VERSION_MISMATCH:{version}:{EXPECTED_ALEMBIC_HEAD}")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Check that the live database carries everything the point engine writes to.

    Issues fail startup when strict mode is on; warnings are only reported.
    """
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    _check_columns(inspector, issues)
    _check_enums(inspector, issues, warnings)
    _check_indexes(inspector, warnings)
    _check_alembic_version(engine, issues, warnings)

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
