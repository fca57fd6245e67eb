from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hrms.models import (
    AttendanceRecord,
    AttendanceSource,
    AttendanceStatus,
    Employee,
    LeaveRequest,
    LeaveStatus,
)
from hrms.services.attendance import is_holiday, is_month_closed
from hrms.services.attendance_calc import is_past_half_day_cutoff, is_weekend, local_now
from hrms.services.configuration import get_core_config, parse_clock_time

logger = logging.getLogger("hrms.maintenance_worker")

AUTO_HALF_DAY_NOTE = "Auto half-day: no check-out recorded."
SWEEP_ABSENT_NOTE = "Marked absent by daily sweep."
SWEEP_LEAVE_NOTE = "Approved leave applied by daily sweep."


@dataclass
class SweepResult:
    day: date
    skipped_reason: str | None = None
    created_absent: int = 0
    created_on_leave: int = 0
    already_recorded: int = 0
    employee_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["day"] = self.day.isoformat()
        return payload


def auto_half_day_pass(db: Session, *, now_local: datetime | None = None) -> int:
    """Close stale open check-ins as half days. Re-running is a no-op."""
    config = get_core_config().attendance
    now_value = now_local or local_now()
    candidates = db.scalars(
        select(AttendanceRecord).where(
            AttendanceRecord.check_in.is_not(None),
            AttendanceRecord.check_out.is_(None),
            AttendanceRecord.status == AttendanceStatus.PRESENT,
            AttendanceRecord.is_locked.is_(False),
            AttendanceRecord.day_date <= now_value.date(),
        )
    ).all()

    closed_months: dict[tuple[int, int], bool] = {}
    corrected = 0
    for record in candidates:
        if not is_past_half_day_cutoff(record.day_date, now_value, config):
            continue
        month_key = (record.day_date.year, record.day_date.month)
        if month_key not in closed_months:
            closed_months[month_key] = is_month_closed(db, record.day_date)
        if closed_months[month_key]:
            continue
        record.status = AttendanceStatus.HALF_DAY
        record.notes = f"{record.notes} | {AUTO_HALF_DAY_NOTE}" if record.notes else AUTO_HALF_DAY_NOTE
        corrected += 1

    db.commit()
    if corrected:
        logger.info("auto_half_day_completed", extra={"corrected": corrected})
    return corrected


def absence_sweep(db: Session, day: date) -> SweepResult:
    """Create absent/on_leave rows for active employees with no row for ``day``."""
    config = get_core_config().attendance
    result = SweepResult(day=day)
    if is_weekend(day, config.weekend_days):
        result.skipped_reason = "WEEKEND"
        return result
    if is_holiday(db, day):
        result.skipped_reason = "HOLIDAY"
        return result
    if is_month_closed(db, day):
        result.skipped_reason = "MONTH_CLOSED"
        return result

    active_ids = list(db.scalars(select(Employee.id).where(Employee.is_active.is_(True)).order_by(Employee.id)).all())
    recorded_ids = set(
        db.scalars(select(AttendanceRecord.employee_id).where(AttendanceRecord.day_date == day)).all()
    )
    on_leave_ids = set(
        db.scalars(
            select(LeaveRequest.employee_id).where(
                LeaveRequest.status == LeaveStatus.APPROVED,
                LeaveRequest.start_date <= day,
                LeaveRequest.end_date >= day,
            )
        ).all()
    )

    for employee_id in active_ids:
        if employee_id in recorded_ids:
            result.already_recorded += 1
            continue
        on_leave = employee_id in on_leave_ids
        record = AttendanceRecord(
            employee_id=employee_id,
            day_date=day,
            status=AttendanceStatus.ON_LEAVE if on_leave else AttendanceStatus.ABSENT,
            notes=SWEEP_LEAVE_NOTE if on_leave else SWEEP_ABSENT_NOTE,
            source=AttendanceSource.ADJUSTED,
            overtime_minutes=0,
            late_minutes=0,
            is_locked=False,
        )
        try:
            with db.begin_nested():
                db.add(record)
                db.flush()
        except IntegrityError:
            # Another writer created the row after our snapshot; keep theirs.
            result.already_recorded += 1
            continue
        if on_leave:
            result.created_on_leave += 1
        else:
            result.created_absent += 1
        result.employee_ids.append(employee_id)

    db.commit()
    logger.info("absence_sweep_completed", extra=result.to_dict())
    return result


def run_scheduled_maintenance(
    db: Session,
    *,
    now_local: datetime | None = None,
    last_sweep_day: date | None = None,
) -> dict[str, Any]:
    """One worker tick: half-day pass always, absence sweep once per day after the cutoff."""
    config = get_core_config().attendance
    now_value = now_local or local_now()
    corrected = auto_half_day_pass(db, now_local=now_value)

    sweep: SweepResult | None = None
    today = now_value.date()
    if last_sweep_day != today and now_value.time() >= parse_clock_time(config.absence_sweep_cutoff_time):
        sweep = absence_sweep(db, today)

    return {
        "half_day_corrected": corrected,
        "sweep": sweep.to_dict() if sweep is not None else None,
        "swept_day": today if sweep is not None else last_sweep_day,
    }
