from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from hrms.errors import conflict, not_found, validation_error
from hrms.models import (
    AttendanceRecord,
    AttendanceSource,
    AttendanceStatus,
    Employee,
    Holiday,
    PayrollBatch,
    PayrollStatus,
)
from hrms.security import Actor
from hrms.services import policy
from hrms.services.attendance_calc import (
    DayComputation,
    determine_day,
    month_bounds,
    normalize_ts,
    to_utc_input,
)
from hrms.services.configuration import AttendanceConfig, get_core_config

logger = logging.getLogger("hrms.attendance")

# Statuses that are facts from another workflow; recomputation from timestamps keeps them.
_STICKY_STATUSES = {AttendanceStatus.ON_LEAVE, AttendanceStatus.HOLIDAY}


def get_employee(db: Session, employee_id: int) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise not_found("EMPLOYEE_NOT_FOUND", "Employee not found.", employee_id=employee_id)
    return employee


def get_attendance_record(db: Session, employee_id: int, day: date) -> AttendanceRecord | None:
    return db.scalar(
        select(AttendanceRecord).where(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.day_date == day,
        )
    )


def is_month_closed(db: Session, day: date) -> bool:
    paid_batch_id = db.scalar(
        select(PayrollBatch.id).where(
            PayrollBatch.month == day.month,
            PayrollBatch.year == day.year,
            PayrollBatch.status == PayrollStatus.PAID,
        )
    )
    return paid_batch_id is not None


def is_holiday(db: Session, day: date) -> bool:
    return db.scalar(select(Holiday.id).where(Holiday.day_date == day)) is not None


def ensure_attendance_writable(db: Session, day: date, record: AttendanceRecord | None = None) -> None:
    """Single gate for every writer of attendance rows."""
    if record is not None and record.is_locked:
        raise conflict(
            "ATTENDANCE_LOCKED",
            "Attendance record is locked.",
            record_id=record.id,
            date=day.isoformat(),
        )
    if is_month_closed(db, day):
        raise conflict(
            "ATTENDANCE_LOCKED",
            "Payroll for this month is paid; attendance is frozen.",
            month=day.month,
            year=day.year,
        )


def writable_record(db: Session, employee_id: int, day: date) -> tuple[AttendanceRecord, bool]:
    """Return the (employee, day) row ready for writing, creating it when missing."""
    record = get_attendance_record(db, employee_id, day)
    ensure_attendance_writable(db, day, record)
    if record is not None:
        return record, False
    record = AttendanceRecord(
        employee_id=employee_id,
        day_date=day,
        status=AttendanceStatus.ABSENT,
        overtime_minutes=0,
        late_minutes=0,
        is_locked=False,
    )
    db.add(record)
    return record, True


def apply_computation(record: AttendanceRecord, computation: DayComputation) -> None:
    record.status = computation.status
    record.work_hours = computation.work_hours
    record.overtime_minutes = computation.overtime_minutes
    record.late_minutes = computation.late_minutes


def recompute_record(
    record: AttendanceRecord,
    config: AttendanceConfig,
    *,
    explicit_status: AttendanceStatus | None = None,
) -> None:
    check_in = normalize_ts(record.check_in) if record.check_in is not None else None
    check_out = normalize_ts(record.check_out) if record.check_out is not None else None
    if check_out is not None and check_in is None:
        raise validation_error(
            "CHECK_OUT_WITHOUT_CHECK_IN",
            "A check-out requires a check-in on the same record.",
            date=record.day_date.isoformat(),
        )
    apply_computation(
        record,
        determine_day(
            day=record.day_date,
            check_in=check_in,
            check_out=check_out,
            explicit_status=explicit_status,
            config=config,
        ),
    )


def mark_attendance(
    db: Session,
    actor: Actor,
    *,
    employee_id: int,
    day: date,
    check_in: datetime | None = None,
    check_out: datetime | None = None,
    status: AttendanceStatus | None = None,
    notes: str | None = None,
) -> AttendanceRecord:
    config = get_core_config()
    employee = get_employee(db, employee_id)
    policy.authorize("attendance.mark", actor, employee, config)

    record, created = writable_record(db, employee.id, day)
    if check_in is not None:
        record.check_in = to_utc_input(check_in)
    if check_out is not None:
        record.check_out = to_utc_input(check_out)
    if notes is not None:
        record.notes = notes
    if created:
        record.source = AttendanceSource.MANUAL
    if status is None and not created and record.status in _STICKY_STATUSES:
        status = record.status
    recompute_record(record, config.attendance, explicit_status=status)

    db.commit()
    db.refresh(record)
    logger.info(
        "attendance_marked",
        extra={
            "employee_id": employee.id,
            "day": day.isoformat(),
            "status": record.status.value,
            "created": created,
            "actor_id": actor.employee_id,
        },
    )
    return record


def update_attendance(
    db: Session,
    actor: Actor,
    record_id: int,
    *,
    fields: dict[str, Any],
    reason: str,
) -> AttendanceRecord:
    """Apply an HR/admin edit. ``fields`` only carries keys the caller actually sent."""
    config = get_core_config()
    record = db.get(AttendanceRecord, record_id)
    if record is None:
        raise not_found("ATTENDANCE_NOT_FOUND", "Attendance record not found.", record_id=record_id)
    employee = get_employee(db, record.employee_id)
    policy.authorize("attendance.update", actor, employee, config)
    ensure_attendance_writable(db, record.day_date, record)

    if "check_in" in fields:
        record.check_in = to_utc_input(fields["check_in"])
    if "check_out" in fields:
        record.check_out = to_utc_input(fields["check_out"])
    if "notes" in fields:
        record.notes = fields["notes"]
    record.edited_by = actor.employee_id
    record.edit_reason = reason
    record.source = AttendanceSource.ADJUSTED
    explicit = fields.get("status")
    if explicit is None and record.status in _STICKY_STATUSES:
        explicit = record.status
    recompute_record(record, config.attendance, explicit_status=explicit)

    db.commit()
    db.refresh(record)
    logger.info(
        "attendance_updated",
        extra={
            "record_id": record.id,
            "employee_id": record.employee_id,
            "status": record.status.value,
            "actor_id": actor.employee_id,
        },
    )
    return record


def lock_attendance(db: Session, actor: Actor, *, month: int, year: int) -> int:
    policy.authorize("attendance.lock", actor, None, get_core_config())
    count = lock_month(db, month=month, year=year)
    db.commit()
    logger.info("attendance_locked", extra={"month": month, "year": year, "count": count})
    return count


def lock_month(db: Session, *, month: int, year: int) -> int:
    """Lock every unlocked row of the month without committing."""
    start, end = month_bounds(year, month)
    records = db.scalars(
        select(AttendanceRecord).where(
            AttendanceRecord.day_date >= start,
            AttendanceRecord.day_date <= end,
            AttendanceRecord.is_locked.is_(False),
        )
    ).all()
    for record in records:
        record.is_locked = True
    db.flush()
    return len(records)


def list_attendance(
    db: Session,
    actor: Actor,
    *,
    employee_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    status: AttendanceStatus | None = None,
) -> list[AttendanceRecord]:
    config = get_core_config()
    stmt = select(AttendanceRecord)
    if employee_id is not None:
        policy.authorize("attendance.read", actor, get_employee(db, employee_id), config)
        stmt = stmt.where(AttendanceRecord.employee_id == employee_id)
    elif not actor.is_privileged:
        stmt = stmt.where(AttendanceRecord.employee_id == actor.employee_id)

    if start_date is not None:
        stmt = stmt.where(AttendanceRecord.day_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(AttendanceRecord.day_date <= end_date)
    if status is not None:
        stmt = stmt.where(AttendanceRecord.status == status)
    stmt = stmt.order_by(AttendanceRecord.day_date.desc(), AttendanceRecord.employee_id.asc())
    return list(db.scalars(stmt).all())


def attendance_summary(
    db: Session,
    actor: Actor,
    *,
    employee_id: int,
    month: int,
    year: int,
) -> dict[str, Any]:
    config = get_core_config()
    policy.authorize("attendance.read", actor, get_employee(db, employee_id), config)
    start, end = month_bounds(year, month)
    rows = db.execute(
        select(
            AttendanceRecord.status,
            func.count(AttendanceRecord.id),
            func.coalesce(func.sum(AttendanceRecord.work_hours), 0),
            func.coalesce(func.sum(AttendanceRecord.overtime_minutes), 0),
            func.coalesce(func.sum(AttendanceRecord.late_minutes), 0),
        )
        .where(
            and_(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.day_date >= start,
                AttendanceRecord.day_date <= end,
            )
        )
        .group_by(AttendanceRecord.status)
    ).all()

    counts = {item.value: 0 for item in AttendanceStatus}
    total_hours = Decimal("0.00")
    overtime_minutes = 0
    late_minutes = 0
    for status_value, count, hours, overtime, late in rows:
        key = status_value.value if isinstance(status_value, AttendanceStatus) else str(status_value)
        counts[key] = int(count)
        total_hours += Decimal(str(hours))
        overtime_minutes += int(overtime)
        late_minutes += int(late)

    return {
        "employee_id": employee_id,
        "month": month,
        "year": year,
        "counts": counts,
        "total_work_hours": total_hours.quantize(Decimal("0.01")),
        "overtime_minutes": overtime_minutes,
        "late_minutes": late_minutes,
    }


def record_biometric_day(
    db: Session,
    *,
    employee: Employee,
    day: date,
    first_punch: datetime,
    last_punch: datetime | None,
) -> AttendanceRecord:
    """Merge consolidated punches into the day's row through the lock gate. Does not commit."""
    config = get_core_config()
    record, created = writable_record(db, employee.id, day)

    check_in = first_punch
    if record.check_in is not None:
        check_in = min(normalize_ts(record.check_in), first_punch)
    check_out = last_punch
    if record.check_out is not None:
        existing_out = normalize_ts(record.check_out)
        check_out = existing_out if last_punch is None else max(existing_out, last_punch)
    if check_out is not None and check_out <= check_in:
        check_out = None

    record.check_in = check_in
    record.check_out = check_out
    if created:
        record.source = AttendanceSource.BIOMETRIC
    explicit = record.status if not created and record.status in _STICKY_STATUSES else None
    recompute_record(record, config.attendance, explicit_status=explicit)
    return record
