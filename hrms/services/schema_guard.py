from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.reflection import Inspector
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

EXPECTED_ALEMBIC_HEAD = "0001_initial"


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
    "employees": {"id", "biometric_id", "reporting_manager_id", "salary"},
    "raw_punches": {"id", "biometric_id", "punch_ts_utc", "device_ip", "process_status"},
    "attendance_records": {"id", "employee_id", "day_date", "status", "is_locked", "source"},
    "leave_requests": {"id", "employee_id", "status", "manager_id", "days"},
    "leave_balances": {"id", "employee_id", "leave_type", "year", "total", "used", "remaining"},
    "payroll_batches": {"id", "month", "year", "status", "total_amount"},
    "salary_slips": {"id", "batch_id", "employee_id", "deductions", "net_salary"},
    "system_configurations": {"id", "key", "version", "payload"},
    "alembic_version": {"version_num"},
}

# Natural keys that punch dedup and the per-day/per-month upserts depend on.
REQUIRED_UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "raw_punches": ("biometric_id", "punch_ts_utc", "device_ip"),
    "attendance_records": ("employee_id", "day_date"),
    "leave_balances": ("employee_id", "leave_type", "year"),
    "salary_slips": ("employee_id", "month", "year"),
    # Partial unique index: cancelled batches are excluded.
    "payroll_batches": ("month", "year"),
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_status": {"present", "absent", "half_day", "on_leave", "holiday", "weekend"},
    "leave_status": {"pending_manager", "pending_hr", "approved", "rejected", "cancelled", "withdrawn"},
    "payroll_status": {"draft", "processed", "paid", "cancelled"},
}


def _check_columns(inspector: Inspector, issues: list[str]) -> set[str]:
    present_tables: set[str] = set()
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            columns = inspector.get_columns(table_name)
        except NoSuchTableError:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        present_tables.add(table_name)
        column_names = {str(item.get("name")) for item in columns}
        missing = sorted(required_columns - column_names)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return present_tables


def _unique_column_sets(inspector: Inspector, table_name: str) -> set[frozenset[str]]:
    column_sets = {frozenset(item.get("column_names") or []) for item in inspector.get_unique_constraints(table_name)}
    for index in inspector.get_indexes(table_name):
        if index.get("unique"):
            column_sets.add(frozenset(name for name in index.get("column_names") or [] if name))
    return column_sets


def _check_unique_keys(inspector: Inspector, present_tables: set[str], issues: list[str]) -> None:
    for table_name, key_columns in REQUIRED_UNIQUE_KEYS.items():
        if table_name not in present_tables:
            continue
        try:
            column_sets = _unique_column_sets(inspector, table_name)
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        if frozenset(key_columns) not in column_sets:
            issues.append(f"MISSING_UNIQUE_KEY:{table_name}:{','.join(key_columns)}")


def _check_enums(inspector: Inspector, issues: list[str], warnings: list[str]) -> None:
    get_enums = getattr(inspector, "get_enums", None)
    if get_enums is None:
        # Dialects without native enums store the values as plain strings.
        return

    try:
        enums = get_enums() or []
    except SQLAlchemyError as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name: dict[str, set[str]] = {}
    for item in enums:
        name = str(item.get("name") or "").strip()
        labels = item.get("labels")
        if name and isinstance(labels, list):
            labels_by_name[name] = {str(label) for label in labels}
    if not labels_by_name:
        return

    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required_values - labels_by_name[enum_name])
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")


def _check_alembic_version(engine: Engine, issues: list[str], warnings: list[str]) -> None:
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except SQLAlchemyError as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return

    version = str(row).strip() if row is not None else ""
    if not version:
        issues.append("ALEMBIC_VERSION_EMPTY")
    elif version != EXPECTED_ALEMBIC_HEAD:
        warnings.append(f"ALEMBIC_VERSION_NOT_HEAD:{version}")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Compare the live database with the tables, keys and enums the services rely on."""
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)

    inspector = inspect(engine)
    present_tables = _check_columns(inspector, issues)
    _check_unique_keys(inspector, present_tables, issues)
    _check_enums(inspector, issues, warnings)
    _check_alembic_version(engine, issues, warnings)

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
