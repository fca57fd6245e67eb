#!/usr/bin/env python
from __future__ import annotations

import calendar
import json
import os
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine

ROOT_DIR = Path(__file__).resolve().parents[1]
EXPECTED_HEAD = "0001_initial"

# Rows returned by these queries violate a pipeline invariant; an empty result is healthy.
INTEGRITY_QUERIES: dict[str, tuple[set[str], str]] = {
    "leave_balance_mismatch": (
        {"leave_balances"},
        """
        select id
        from leave_balances
        where used <= total and remaining <> total - used
        limit 20
        """,
    ),
    "negative_leave_balance": (
        {"leave_balances"},
        """
        select id
        from leave_balances
        where remaining < 0 or used < 0
        limit 20
        """,
    ),
    "duplicate_active_payroll_batch": (
        {"payroll_batches"},
        """
        select month, year, count(*)
        from payroll_batches
        where status <> 'cancelled'
        group by month, year
        having count(*) > 1
        """,
    ),
    "batch_employee_count_mismatch": (
        {"payroll_batches", "salary_slips"},
        """
        select b.id
        from payroll_batches b
        left join salary_slips s on s.batch_id = b.id
        where b.status <> 'cancelled'
        group by b.id, b.total_employees
        having count(s.id) <> b.total_employees
        limit 20
        """,
    ),
    "orphan_attendance_employee": (
        {"attendance_records", "employees"},
        """
        select a.id
        from attendance_records a
        left join employees e on e.id = a.employee_id
        where e.id is null
        limit 20
        """,
    ),
}


def load_env_if_exists() -> None:
    env_file = ROOT_DIR / ".env"
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def _unlocked_rows_in_paid_months(conn: Connection) -> list[dict[str, Any]]:
    offenders: list[dict[str, Any]] = []
    paid = conn.execute(text("select month, year from payroll_batches where status = 'paid'")).fetchall()
    for month, year in paid:
        start = date(int(year), int(month), 1)
        end = date(int(year), int(month), calendar.monthrange(int(year), int(month))[1])
        count = conn.execute(
            text(
                """
                select count(*)
                from attendance_records
                where day_date >= :start and day_date <= :end and is_locked = :unlocked
                """
            ),
            {"start": start, "end": end, "unlocked": False},
        ).scalar()
        if count:
            offenders.append({"month": int(month), "year": int(year), "unlocked": int(count)})
    return offenders


def run_checks(engine: Engine) -> dict[str, Any]:
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append({"name": name, "status": status, "details": details})

    tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [row[0] for row in conn.execute(text("select version_num from alembic_version")).fetchall()]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        for name, (required_tables, query) in INTEGRITY_QUERIES.items():
            missing_tables = sorted(required_tables - tables)
            if missing_tables:
                add(name, "warn", {"missing_tables": missing_tables})
                continue
            rows = conn.execute(text(query)).fetchall()
            add(name, "fail" if rows else "ok", {"rows": [list(row) for row in rows]})

        if {"attendance_records", "payroll_batches"} <= tables:
            offenders = _unlocked_rows_in_paid_months(conn)
            add("unlocked_attendance_in_paid_month", "fail" if offenders else "ok", {"months": offenders})

    report["ok"] = all(item["status"] != "fail" for item in report["checks"])
    return report


def run() -> dict[str, Any]:
    load_env_if_exists()
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not found (.env or env vars).")

    engine = create_engine(database_url)
    try:
        report = run_checks(engine)
    finally:
        engine.dispose()
    report["database_url"] = engine.url.render_as_string(hide_password=True)
    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2, default=str))
