from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy.exc import NoSuchTableError

from hrms.services.schema_guard import (
    EXPECTED_ALEMBIC_HEAD,
    REQUIRED_TABLE_COLUMNS,
    REQUIRED_UNIQUE_KEYS,
    verify_runtime_schema,
)
from tests.support import make_engine


class _StubConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return self

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._version_value


class _StubEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _StubConnection(self._version_value)


class _StubInspector:
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        unique_keys: dict[str, tuple[str, ...]],
        enums: list[dict[str, object]] | None = None,
    ):
        self._columns_by_table = columns_by_table
        self._unique_keys = unique_keys
        if enums is not None:
            self.get_enums = lambda: enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        if table_name not in self._columns_by_table:
            raise NoSuchTableError(table_name)
        return [{"name": item} for item in self._columns_by_table[table_name]]

    def get_unique_constraints(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._unique_keys.get(table_name)
        return [{"name": f"uq_{table_name}", "column_names": list(columns)}] if columns else []

    def get_indexes(self, _table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": "ix_plain", "column_names": ["id"], "unique": False}]


_FULL_ENUMS = [
    {"name": "attendance_status", "labels": ["present", "absent", "half_day", "on_leave", "holiday", "weekend"]},
    {
        "name": "leave_status",
        "labels": ["pending_manager", "pending_hr", "approved", "rejected", "cancelled", "withdrawn"],
    },
    {"name": "payroll_status", "labels": ["draft", "processed", "paid", "cancelled"]},
]


def _complete_columns() -> dict[str, set[str]]:
    return {name: set(columns) | {"extra"} for name, columns in REQUIRED_TABLE_COLUMNS.items()}


class SchemaGuardTests(unittest.TestCase):
    def _verify(self, inspector: _StubInspector, version_value):  # type: ignore[no-untyped-def]
        with patch("hrms.services.schema_guard.inspect", return_value=inspector):
            return verify_runtime_schema(_StubEngine(version_value))  # type: ignore[arg-type]

    def test_complete_postgres_schema_passes(self) -> None:
        inspector = _StubInspector(
            columns_by_table=_complete_columns(),
            unique_keys=dict(REQUIRED_UNIQUE_KEYS),
            enums=_FULL_ENUMS,
        )

        result = self._verify(inspector, EXPECTED_ALEMBIC_HEAD)

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_dialect_without_enum_reflection_skips_enum_checks(self) -> None:
        inspector = _StubInspector(columns_by_table=_complete_columns(), unique_keys=dict(REQUIRED_UNIQUE_KEYS))

        result = self._verify(inspector, EXPECTED_ALEMBIC_HEAD)

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, [])

    def test_reports_missing_columns_keys_and_enum_values(self) -> None:
        columns_by_table = _complete_columns()
        columns_by_table["attendance_records"] = {"id", "employee_id", "day_date", "status"}
        columns_by_table["salary_slips"] = {"id", "batch_id", "employee_id"}
        del columns_by_table["system_configurations"]
        unique_keys = dict(REQUIRED_UNIQUE_KEYS)
        del unique_keys["raw_punches"]
        inspector = _StubInspector(
            columns_by_table=columns_by_table,
            unique_keys=unique_keys,
            enums=[
                {"name": "attendance_status", "labels": ["present", "absent"]},
                {"name": "payroll_status", "labels": ["draft", "processed", "paid", "cancelled"]},
            ],
        )

        result = self._verify(inspector, "")

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:attendance_records:is_locked,source", result.issues)
        self.assertIn("MISSING_COLUMNS:salary_slips:deductions,net_salary", result.issues)
        self.assertIn("MISSING_TABLE:system_configurations", result.issues)
        self.assertIn("MISSING_UNIQUE_KEY:raw_punches:biometric_id,punch_ts_utc,device_ip", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:attendance_status:half_day,holiday,on_leave,weekend", result.issues)
        self.assertIn("ENUM_NOT_FOUND:leave_status", result.warnings)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_live_payroll_batch_key_is_required(self) -> None:
        unique_keys = dict(REQUIRED_UNIQUE_KEYS)
        del unique_keys["payroll_batches"]
        inspector = _StubInspector(columns_by_table=_complete_columns(), unique_keys=unique_keys)

        result = self._verify(inspector, EXPECTED_ALEMBIC_HEAD)

        self.assertFalse(result.ok)
        self.assertEqual(result.issues, ["MISSING_UNIQUE_KEY:payroll_batches:month,year"])

    def test_older_revision_is_a_warning(self) -> None:
        inspector = _StubInspector(columns_by_table=_complete_columns(), unique_keys=dict(REQUIRED_UNIQUE_KEYS))

        result = self._verify(inspector, "0000_bootstrap")

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, ["ALEMBIC_VERSION_NOT_HEAD:0000_bootstrap"])

    def test_unmigrated_sqlite_database_fails_on_alembic_version(self) -> None:
        engine = make_engine()
        try:
            result = verify_runtime_schema(engine)
        finally:
            engine.dispose()

        self.assertFalse(result.ok)
        self.assertIn("MISSING_TABLE:alembic_version", result.issues)
        self.assertTrue(any(item.startswith("ALEMBIC_VERSION_CHECK_FAILED") for item in result.issues))
        self.assertFalse(any(item.startswith("MISSING_COLUMNS") for item in result.issues))
        self.assertFalse(any(item.startswith("MISSING_UNIQUE_KEY") for item in result.issues))
        self.assertEqual(result.to_dict()["issue_count"], len(result.issues))


if __name__ == "__main__":
    unittest.main()
