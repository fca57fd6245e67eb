#!/usr/bin/env python
"""Pre-deploy gate: settings sanity, migration heads and the stored core config.

Prints a JSON summary and exits non-zero when any check fails.
"""
from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alembic.config import Config
from alembic.script import ScriptDirectory
from pydantic import ValidationError
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from hrms.services.configuration import CONFIG_KEY, CoreConfig, migrate_payload
from hrms.services.schema_guard import verify_runtime_schema
from hrms.settings import Settings, get_cors_origins, get_settings

MIN_JWT_SECRET_LENGTH = 32
MAX_REVISION_ID_LENGTH = 32


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any] = field(default_factory=dict)


def _script_directory() -> ScriptDirectory:
    return ScriptDirectory.from_config(Config(str(ROOT_DIR / "alembic.ini")))


def check_revisions(script: ScriptDirectory) -> CheckResult:
    revisions = [item.revision for item in script.walk_revisions()]
    too_long = sorted(revision for revision in revisions if len(revision) > MAX_REVISION_ID_LENGTH)
    heads = sorted(script.get_heads())
    status = "ok"
    if too_long or len(heads) != 1:
        status = "fail"
    return CheckResult(
        name="migration_revisions",
        status=status,
        details={"total": len(revisions), "heads": heads, "too_long": too_long},
    )


def check_settings(settings: Settings) -> list[CheckResult]:
    secret_length = len((settings.jwt_secret or "").strip())
    results = [
        CheckResult(
            name="jwt_secret_strength",
            status="ok" if secret_length >= MIN_JWT_SECRET_LENGTH else "fail",
            details={"length": secret_length, "min_length": MIN_JWT_SECRET_LENGTH},
        )
    ]

    try:
        ZoneInfo(settings.attendance_timezone)
        results.append(CheckResult(name="attendance_timezone", status="ok", details={"tz": settings.attendance_timezone}))
    except (ZoneInfoNotFoundError, ValueError):
        results.append(CheckResult(name="attendance_timezone", status="fail", details={"tz": settings.attendance_timezone}))

    origins = get_cors_origins()
    results.append(
        CheckResult(
            name="cors_origins",
            status="warn" if "*" in origins else "ok",
            details={"origins": origins},
        )
    )
    return results


def check_stored_core_config(connection: Connection) -> CheckResult:
    row = connection.execute(
        text("SELECT version, payload FROM system_configurations WHERE key = :key"),
        {"key": CONFIG_KEY},
    ).first()
    if row is None:
        # Seeded with defaults on first startup.
        return CheckResult(name="core_config", status="warn", details={"reason": "NOT_SEEDED"})

    stored_version, payload = int(row[0]), row[1]
    if isinstance(payload, str):
        payload = json.loads(payload)
    try:
        CoreConfig.model_validate(migrate_payload(dict(payload or {}), stored_version))
    except (ValueError, ValidationError) as exc:
        return CheckResult(name="core_config", status="fail", details={"stored_version": stored_version, "error": str(exc)})
    return CheckResult(name="core_config", status="ok", details={"stored_version": stored_version})


def check_database(database_url: str, expected_heads: list[str]) -> list[CheckResult]:
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        try:
            with engine.connect() as connection:
                current = sorted(
                    str(row[0]).strip()
                    for row in connection.execute(text("SELECT version_num FROM alembic_version")).fetchall()
                    if row[0] is not None
                )
                config_result = check_stored_core_config(connection)
        except SQLAlchemyError as exc:
            return [CheckResult(name="database", status="fail", details={"error": exc.__class__.__name__})]
        guard = verify_runtime_schema(engine)
    finally:
        engine.dispose()

    missing_heads = [head for head in expected_heads if head not in current]
    schema_result = CheckResult(
        name="database_schema",
        status="fail" if missing_heads or not guard.ok else "ok",
        details={
            "expected_heads": expected_heads,
            "current_versions": current,
            "missing_heads": missing_heads,
            "schema_guard": guard.to_dict(),
        },
    )
    return [schema_result, config_result]


def main() -> int:
    settings = get_settings()
    script = _script_directory()
    checks = [check_revisions(script), *check_settings(settings)]

    database_url = (settings.database_url or "").strip()
    if database_url:
        checks.extend(check_database(database_url, sorted(script.get_heads())))
    else:
        checks.append(CheckResult(name="database_schema", status="warn", details={"reason": "DATABASE_URL_NOT_SET"}))

    failed = [check.name for check in checks if check.status == "fail"]
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": not failed,
        "failed": failed,
        "checks": [{"name": check.name, "status": check.status, "details": check.details} for check in checks],
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2, default=str))
    return 0 if not failed else 1


if __name__ == "__main__":
    raise SystemExit(main())
