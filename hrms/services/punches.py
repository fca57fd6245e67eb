from __future__ import annotations

import csv
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

from sqlalchemy import column, create_engine, func, select, table
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from hrms.errors import ApiError, upstream_error, validation_error
from hrms.models import Employee, PunchDirection, PunchSourceType, PunchStatus, RawPunch
from hrms.services.attendance import record_biometric_day
from hrms.services.attendance_calc import attendance_timezone, normalize_ts
from hrms.services.configuration import BiometricConfig

logger = logging.getLogger("hrms.punches")

TIME_SYNC_TOLERANCE = timedelta(minutes=5)


@dataclass(frozen=True)
class PunchRecord:
    biometric_id: str
    punch_time: datetime
    device_ip: str = ""
    direction: PunchDirection = PunchDirection.AUTO

    @property
    def dedup_key(self) -> tuple[str, datetime, str]:
        return self.biometric_id, self.punch_time, self.device_ip

    def to_dict(self) -> dict[str, Any]:
        return {
            "biometric_id": self.biometric_id,
            "punch_time": self.punch_time.isoformat(),
            "device_ip": self.device_ip,
            "direction": self.direction.value,
        }


@dataclass
class IngestResult:
    fetched_count: int = 0
    inserted_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    dry_run: bool = False
    sample_rows: list[dict[str, Any]] = field(default_factory=list)


class PunchSource(Protocol):
    source_type: PunchSourceType

    def fetch(self, *, limit: int | None = None) -> list[PunchRecord]: ...


def _parse_direction(value: Any) -> PunchDirection:
    text = str(value or "").strip().upper()
    if text in {"IN", "I", "0"}:
        return PunchDirection.IN
    if text in {"OUT", "O", "1"}:
        return PunchDirection.OUT
    return PunchDirection.AUTO


def _parse_punch_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=attendance_timezone())
    return parsed.astimezone(timezone.utc)


def make_punch(
    biometric_id: Any,
    punch_time: Any,
    device_ip: Any = None,
    direction: Any = None,
) -> PunchRecord:
    identifier = str(biometric_id or "").strip()
    if not identifier:
        raise ValueError("biometric_id is required")
    return PunchRecord(
        biometric_id=identifier,
        punch_time=_parse_punch_time(punch_time),
        device_ip=str(device_ip or "").strip(),
        direction=_parse_direction(direction),
    )


class CsvPunchSource:
    source_type = PunchSourceType.CSV

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def fetch(self, *, limit: int | None = None) -> list[PunchRecord]:
        punches: list[PunchRecord] = []
        with self.path.open("r", encoding="utf-8-sig", newline="") as handle:
            reader = csv.DictReader(handle)
            missing = {"biometric_id", "punch_time"} - set(reader.fieldnames or [])
            if missing:
                raise ValueError(f"CSV is missing columns: {','.join(sorted(missing))}")
            for line_no, row in enumerate(reader, start=2):
                try:
                    punches.append(
                        make_punch(
                            row.get("biometric_id"),
                            row.get("punch_time"),
                            row.get("device_ip"),
                            row.get("direction"),
                        )
                    )
                except ValueError:
                    logger.warning("punch_row_unparseable", extra={"line": line_no, "path": str(self.path)})
                if limit is not None and len(punches) >= limit:
                    break
        return punches


class SqlPunchSource:
    """Reads device logs from an external attendance database (eSSL style)."""

    source_type = PunchSourceType.ESSL_DB

    def __init__(self, url: str, table_name: str, columns: dict[str, str], *, since: datetime | None = None) -> None:
        self.url = url
        self.table_name = table_name
        self.columns = columns
        self.since = since

    def _statement(self, limit: int | None):
        source_table = table(self.table_name)
        punch_col = column(self.columns["punch_time"])
        stmt = select(
            column(self.columns["biometric_id"]).label("biometric_id"),
            punch_col.label("punch_time"),
            column(self.columns["device_ip"]).label("device_ip"),
            column(self.columns["direction"]).label("direction"),
        ).select_from(source_table)
        if self.since is not None:
            stmt = stmt.where(punch_col >= self.since)
        stmt = stmt.order_by(punch_col.desc() if limit is not None else punch_col.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return stmt

    def fetch(self, *, limit: int | None = None) -> list[PunchRecord]:
        engine = create_engine(self.url, pool_pre_ping=True)
        try:
            with engine.connect() as connection:
                rows = connection.execute(self._statement(limit)).mappings().all()
        finally:
            engine.dispose()

        punches: list[PunchRecord] = []
        for row in rows:
            try:
                punches.append(make_punch(row["biometric_id"], row["punch_time"], row["device_ip"], row["direction"]))
            except ValueError:
                logger.warning("punch_row_unparseable", extra={"biometric_id": str(row["biometric_id"])})
        return punches


class InlinePunchSource:
    source_type = PunchSourceType.API

    def __init__(self, punches: Iterable[PunchRecord]) -> None:
        self._punches = list(punches)

    def fetch(self, *, limit: int | None = None) -> list[PunchRecord]:
        if limit is None:
            return list(self._punches)
        return self._punches[:limit]


def build_punch_source(config: BiometricConfig, *, since: datetime | None = None) -> PunchSource:
    """``since`` bounds SQL reads to device-local times at or after it; file sources ignore it."""
    if config.source_type == "DIRECT_DEVICE":
        raise validation_error(
            "PUNCH_SOURCE_UNSUPPORTED",
            "Direct device polling is not supported; export logs to CSV or the device database.",
            source_type=config.source_type,
        )
    if config.source_type == "CSV":
        if not config.csv_path:
            raise validation_error("PUNCH_SOURCE_INCOMPLETE", "csv_path is not configured.")
        return CsvPunchSource(config.csv_path)
    if not config.essl_db_url:
        raise validation_error("PUNCH_SOURCE_INCOMPLETE", "essl_db_url is not configured.")
    return SqlPunchSource(config.essl_db_url, config.essl_table, config.columns.model_dump(), since=since)


def ingested_high_water_mark(db: Session) -> datetime | None:
    """Latest stored device-database punch, as naive attendance-local time, minus the clock tolerance."""
    latest = db.scalar(select(func.max(RawPunch.punch_ts_utc)).where(RawPunch.source_type == PunchSourceType.ESSL_DB))
    if latest is None:
        return None
    return (normalize_ts(latest) - TIME_SYNC_TOLERANCE).astimezone(attendance_timezone()).replace(tzinfo=None)


def fetch_from_source(source: PunchSource, *, limit: int | None = None) -> list[PunchRecord]:
    try:
        return source.fetch(limit=limit)
    except ApiError:
        raise
    except (OSError, ValueError, SQLAlchemyError) as exc:
        logger.warning(
            "punch_source_unavailable",
            extra={"source_type": source.source_type.value, "error": exc.__class__.__name__},
        )
        raise upstream_error(
            "PUNCH_SOURCE_UNAVAILABLE",
            "Punch source could not be read.",
            source_type=source.source_type.value,
            reason=str(exc),
        ) from exc


def _existing_keys(db: Session, punches: list[PunchRecord]) -> set[tuple[str, datetime, str]]:
    if not punches:
        return set()
    biometric_ids = sorted({item.biometric_id for item in punches})
    earliest = min(item.punch_time for item in punches)
    latest = max(item.punch_time for item in punches)
    rows = db.execute(
        select(RawPunch.biometric_id, RawPunch.punch_ts_utc, RawPunch.device_ip).where(
            RawPunch.biometric_id.in_(biometric_ids),
            RawPunch.punch_ts_utc >= earliest,
            RawPunch.punch_ts_utc <= latest,
        )
    ).all()
    return {(row[0], normalize_ts(row[1]), row[2] or "") for row in rows}


def ingest_punches(
    db: Session,
    source: PunchSource,
    *,
    dry_run: bool = False,
    sample_size: int = 5,
) -> IngestResult:
    punches = fetch_from_source(source)
    result = IngestResult(fetched_count=len(punches), dry_run=dry_run)
    seen = _existing_keys(db, punches)

    for punch in punches:
        if punch.dedup_key in seen:
            result.skipped_count += 1
            continue
        seen.add(punch.dedup_key)

        if dry_run:
            result.inserted_count += 1
            if len(result.sample_rows) < sample_size:
                result.sample_rows.append(punch.to_dict())
            continue

        try:
            with db.begin_nested():
                db.add(
                    RawPunch(
                        biometric_id=punch.biometric_id,
                        punch_ts_utc=punch.punch_time,
                        device_ip=punch.device_ip,
                        direction=punch.direction,
                        source_type=source.source_type,
                        process_status=PunchStatus.PENDING,
                    )
                )
                db.flush()
        except IntegrityError:
            # Concurrent ingest already stored it.
            result.skipped_count += 1
            continue
        except SQLAlchemyError as exc:
            result.failed_count += 1
            logger.warning(
                "punch_insert_failed",
                extra={"biometric_id": punch.biometric_id, "error": exc.__class__.__name__},
            )
            continue
        result.inserted_count += 1

    if not dry_run:
        db.commit()
    logger.info(
        "punch_ingest_completed",
        extra={
            "source_type": source.source_type.value,
            "dry_run": dry_run,
            "fetched": result.fetched_count,
            "inserted": result.inserted_count,
            "skipped": result.skipped_count,
            "failed": result.failed_count,
        },
    )
    return result


def _overall_status(checks: dict[str, str]) -> str:
    values = set(checks.values())
    if "FAIL" in values:
        return "FAIL"
    if "WARN" in values:
        return "WARN"
    return "PASS"


def validate_punch_source(db: Session, config: BiometricConfig) -> dict[str, Any]:
    checks = {
        "connection": "FAIL",
        "sample_read": "FAIL",
        "mapping_check": "FAIL",
        "time_sync": "FAIL",
    }
    warnings: list[str] = []
    sample: list[PunchRecord] = []

    try:
        source = build_punch_source(config)
        sample = fetch_from_source(source, limit=config.sample_size)
    except ApiError as exc:
        warnings.append(exc.message)
        return {
            "overall_status": "FAIL",
            "success": False,
            "checks": checks,
            "warnings": warnings,
            "sample_data": [],
        }

    checks["connection"] = "PASS"
    if sample:
        checks["sample_read"] = "PASS"
    else:
        checks["sample_read"] = "WARN"
        warnings.append("Source returned no punches.")

    sample_ids = {item.biometric_id for item in sample}
    if sample_ids:
        known_ids = set(db.scalars(select(Employee.biometric_id).where(Employee.biometric_id.in_(sorted(sample_ids)))).all())
        unknown = sorted(sample_ids - known_ids)
        if not unknown:
            checks["mapping_check"] = "PASS"
        elif known_ids:
            checks["mapping_check"] = "WARN"
            warnings.append(f"Unmapped biometric ids: {','.join(unknown)}")
        else:
            warnings.append("No sampled biometric id maps to an employee.")
    else:
        checks["mapping_check"] = "WARN"

    now_utc = datetime.now(timezone.utc)
    future = [item for item in sample if item.punch_time - now_utc > TIME_SYNC_TOLERANCE]
    if future:
        checks["time_sync"] = "WARN"
        drift_minutes = round(max((item.punch_time - now_utc) for item in future).total_seconds() / 60)
        warnings.append(f"Device time is ahead by about {drift_minutes} minutes.")
    else:
        checks["time_sync"] = "PASS"

    overall = _overall_status(checks)
    return {
        "overall_status": overall,
        "success": overall != "FAIL",
        "checks": checks,
        "warnings": warnings,
        "sample_data": [item.to_dict() for item in sample],
    }


def _local_day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    tz = attendance_timezone()
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = local_start + timedelta(days=1)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def _pick_bounds(punches: list[RawPunch]) -> tuple[datetime, datetime | None]:
    ordered = sorted(punches, key=lambda item: normalize_ts(item.punch_ts_utc))
    ins = [item for item in ordered if item.direction == PunchDirection.IN]
    outs = [item for item in ordered if item.direction == PunchDirection.OUT]
    first = normalize_ts((ins[0] if ins else ordered[0]).punch_ts_utc)
    last_punch = outs[-1] if outs else ordered[-1]
    last = normalize_ts(last_punch.punch_ts_utc)
    if len(ordered) == 1 or last <= first:
        return first, None
    return first, last


def _fail(punches: list[RawPunch], message: str) -> None:
    for punch in punches:
        punch.process_status = PunchStatus.FAILED
        punch.error_log = message


def process_pending_punches(db: Session, day: date) -> dict[str, int]:
    """Consolidate the day's pending punches into attendance rows."""
    start_utc, end_utc = _local_day_bounds_utc(day)
    pending = db.scalars(
        select(RawPunch).where(
            RawPunch.process_status == PunchStatus.PENDING,
            RawPunch.punch_ts_utc >= start_utc,
            RawPunch.punch_ts_utc < end_utc,
        )
    ).all()

    grouped: dict[str, list[RawPunch]] = defaultdict(list)
    for punch in pending:
        grouped[punch.biometric_id].append(punch)

    employees = {
        employee.biometric_id: employee
        for employee in db.scalars(select(Employee).where(Employee.biometric_id.in_(sorted(grouped)))).all()
    }

    processed = 0
    failed = 0
    for biometric_id, punches in grouped.items():
        employee = employees.get(biometric_id)
        if employee is None or not employee.is_active:
            _fail(punches, f"No active employee for biometric id {biometric_id}.")
            failed += len(punches)
            continue

        first, last = _pick_bounds(punches)
        try:
            with db.begin_nested():
                record_biometric_day(db, employee=employee, day=day, first_punch=first, last_punch=last)
                db.flush()
        except ApiError as exc:
            _fail(punches, exc.message)
            failed += len(punches)
            logger.warning(
                "punch_consolidation_failed",
                extra={"biometric_id": biometric_id, "day": day.isoformat(), "code": exc.code},
            )
            continue

        for punch in punches:
            punch.process_status = PunchStatus.PROCESSED
            punch.error_log = None
        processed += len(punches)

    db.commit()
    logger.info(
        "punch_processing_completed",
        extra={"day": day.isoformat(), "processed": processed, "failed": failed, "employees": len(grouped)},
    )
    return {"processed": processed, "failed": failed, "employees": len(grouped)}
