from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from hrms.errors import ApiError, conflict, not_found, validation_error
from hrms.models import (
    AttendanceRecord,
    AttendanceStatus,
    Employee,
    EmployeeRole,
    PayrollBatch,
    PayrollStatus,
    Reimbursement,
    ReimbursementStatus,
    SalarySlip,
)
from hrms.security import Actor
from hrms.services import policy
from hrms.services.attendance import lock_month
from hrms.services.attendance_calc import days_in_month, month_bounds
from hrms.services.configuration import CoreConfig, get_core_config
from hrms.services.payroll_calc import (
    DEDUCTION_KEYS,
    ZERO,
    AttendanceCounts,
    SalaryInputs,
    SlipComputation,
    compute_slip,
    money,
    recompute_from_components,
)

logger = logging.getLogger("hrms.payroll")

SLIP_COMPONENT_FIELDS = ("basic_salary", "hra", "da", "bonus", "reimbursements")
TREND_SIZE = 6


@dataclass
class SlipAdjustment:
    bonus: Decimal = ZERO
    other_deductions: Decimal = ZERO


@dataclass
class SlipPreview:
    employee_id: int
    employee_name: str
    counts: AttendanceCounts
    total_days: int
    computation: SlipComputation

    def to_dict(self) -> dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "employee_name": self.employee_name,
            "present_days": self.counts.present_days,
            "half_days": self.counts.half_days,
            "absent_days": self.counts.absent_days,
            "total_days": self.total_days,
            "basic_salary": self.computation.basic_salary,
            "hra": self.computation.hra,
            "da": self.computation.da,
            "reimbursements": self.computation.reimbursements,
            "bonus": self.computation.bonus,
            "deductions": self.computation.deductions(),
            "gross_salary": self.computation.gross_salary,
            "net_salary": self.computation.net_salary,
        }


@dataclass
class PayrollRunResult:
    batch: PayrollBatch
    slips: list[SalarySlip]
    intended_count: int
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.slips)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_period(month: int, year: int) -> None:
    if not 1 <= month <= 12:
        raise validation_error("INVALID_MONTH", "month must be between 1 and 12.", month=month)
    if not 2000 <= year <= 2100:
        raise validation_error("INVALID_YEAR", "year is out of range.", year=year)


def _get_batch(db: Session, batch_id: int) -> PayrollBatch:
    batch = db.get(PayrollBatch, batch_id)
    if batch is None:
        raise not_found("PAYROLL_BATCH_NOT_FOUND", "Payroll batch not found.", batch_id=batch_id)
    return batch


def _active_batch(db: Session, month: int, year: int) -> PayrollBatch | None:
    return db.scalar(
        select(PayrollBatch).where(
            PayrollBatch.month == month,
            PayrollBatch.year == year,
            PayrollBatch.status != PayrollStatus.CANCELLED,
        )
    )


def month_attendance_counts(db: Session, employee_id: int, month: int, year: int) -> AttendanceCounts:
    """Only explicit absent and half-day rows reduce pay."""
    start, end = month_bounds(year, month)
    rows = db.execute(
        select(AttendanceRecord.status, func.count(AttendanceRecord.id))
        .where(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.day_date >= start,
            AttendanceRecord.day_date <= end,
        )
        .group_by(AttendanceRecord.status)
    ).all()
    by_status = {status: int(count) for status, count in rows}
    return AttendanceCounts(
        present_days=by_status.get(AttendanceStatus.PRESENT, 0),
        half_days=by_status.get(AttendanceStatus.HALF_DAY, 0),
        absent_days=by_status.get(AttendanceStatus.ABSENT, 0),
    )


def _open_reimbursements(db: Session, employee_id: int) -> list[Reimbursement]:
    return list(
        db.scalars(
            select(Reimbursement).where(
                Reimbursement.employee_id == employee_id,
                Reimbursement.status == ReimbursementStatus.APPROVED,
                Reimbursement.payroll_batch_id.is_(None),
            )
        ).all()
    )


def _salary_inputs(
    employee: Employee,
    config: CoreConfig,
    *,
    reimbursements: Decimal,
    adjustment: SlipAdjustment,
) -> SalaryInputs:
    payroll = config.payroll
    deduction_type = employee.absent_deduction_type or payroll.default_absent_deduction_type
    if deduction_type not in {"percentage", "amount"}:
        deduction_type = payroll.default_absent_deduction_type
    return SalaryInputs(
        monthly_salary=money(employee.salary),
        pf_percentage=employee.pf_percentage if employee.pf_percentage is not None else payroll.default_pf_percentage,
        esi_percentage=employee.esi_percentage if employee.esi_percentage is not None else payroll.default_esi_percentage,
        absent_deduction_type=deduction_type,
        absent_deduction_value=(
            employee.absent_deduction_value
            if employee.absent_deduction_value is not None
            else payroll.default_absent_deduction_value
        ),
        reimbursements=reimbursements,
        bonus=money(adjustment.bonus),
        other_deductions=money(adjustment.other_deductions),
    )


def _preview_for(
    db: Session,
    employee: Employee,
    *,
    month: int,
    year: int,
    config: CoreConfig,
    adjustment: SlipAdjustment,
    reimbursements: list[Reimbursement],
) -> SlipPreview:
    if not employee.is_active:
        raise validation_error("EMPLOYEE_INACTIVE", "Employee is not active.", employee_id=employee.id)
    if employee.salary is None or money(employee.salary) <= ZERO:
        raise validation_error("SALARY_NOT_SET", "Employee has no monthly salary.", employee_id=employee.id)

    counts = month_attendance_counts(db, employee.id, month, year)
    total_days = days_in_month(year, month)
    reimbursement_total = sum((money(item.amount) for item in reimbursements), ZERO)
    computation = compute_slip(
        _salary_inputs(employee, config, reimbursements=reimbursement_total, adjustment=adjustment),
        counts,
        days_in_month=total_days,
        config=config.payroll,
    )
    return SlipPreview(
        employee_id=employee.id,
        employee_name=employee.full_name,
        counts=counts,
        total_days=total_days,
        computation=computation,
    )


def _resolve_population(db: Session, actor: Actor, employee_ids: list[int] | None) -> tuple[list[Employee], list[int]]:
    if employee_ids is None:
        stmt = select(Employee).where(Employee.is_active.is_(True))
        if actor.role == EmployeeRole.HR:
            stmt = stmt.where(Employee.role != EmployeeRole.ADMIN)
        return list(db.scalars(stmt.order_by(Employee.id)).all()), []

    unique_ids = list(dict.fromkeys(employee_ids))
    found = {item.id: item for item in db.scalars(select(Employee).where(Employee.id.in_(unique_ids))).all()}
    missing = [item for item in unique_ids if item not in found]
    return [found[item] for item in unique_ids if item in found], missing


def _adjustment_for(adjustments: dict[int, SlipAdjustment] | None, employee_id: int) -> SlipAdjustment:
    if not adjustments:
        return SlipAdjustment()
    return adjustments.get(employee_id) or SlipAdjustment()


def preview_payroll(
    db: Session,
    actor: Actor,
    *,
    month: int,
    year: int,
    employee_ids: list[int] | None = None,
    adjustments: dict[int, SlipAdjustment] | None = None,
) -> tuple[list[SlipPreview], list[dict[str, Any]]]:
    config = get_core_config()
    policy.authorize("payroll.manage", actor, None, config)
    _validate_period(month, year)

    employees, missing = _resolve_population(db, actor, employee_ids)
    failures = [
        {"employee_id": item, "code": "EMPLOYEE_NOT_FOUND", "message": "Employee not found."} for item in missing
    ]
    previews: list[SlipPreview] = []
    for employee in employees:
        try:
            previews.append(
                _preview_for(
                    db,
                    employee,
                    month=month,
                    year=year,
                    config=config,
                    adjustment=_adjustment_for(adjustments, employee.id),
                    reimbursements=_open_reimbursements(db, employee.id),
                )
            )
        except ApiError as exc:
            failures.append({"employee_id": employee.id, "code": exc.code, "message": exc.message})
    return previews, failures


def _release_batch(db: Session, batch: PayrollBatch) -> None:
    for reimbursement in db.scalars(select(Reimbursement).where(Reimbursement.payroll_batch_id == batch.id)).all():
        reimbursement.payroll_batch_id = None
    for slip in db.scalars(select(SalarySlip).where(SalarySlip.batch_id == batch.id)).all():
        db.delete(slip)
    db.flush()


def _refresh_batch_totals(db: Session, batch: PayrollBatch) -> None:
    db.flush()
    nets = [money(value) for value in db.scalars(select(SalarySlip.net_salary).where(SalarySlip.batch_id == batch.id)).all()]
    batch.total_employees = len(nets)
    batch.total_amount = sum(nets, ZERO)


def generate_payroll(
    db: Session,
    actor: Actor,
    *,
    month: int,
    year: int,
    employee_ids: list[int] | None = None,
    adjustments: dict[int, SlipAdjustment] | None = None,
) -> PayrollRunResult:
    """Full population when ``employee_ids`` is None, otherwise the replacing selective flow."""
    config = get_core_config()
    policy.authorize("payroll.manage", actor, None, config)
    _validate_period(month, year)
    selective = employee_ids is not None
    if selective and not employee_ids:
        raise validation_error("EMPLOYEE_IDS_REQUIRED", "employee_ids cannot be empty.")

    batch = _active_batch(db, month, year)
    if batch is not None:
        if not selective:
            raise conflict(
                "PAYROLL_BATCH_EXISTS",
                "A payroll batch already exists for this month.",
                batch_id=batch.id,
                status=batch.status.value,
            )
        if batch.status == PayrollStatus.PAID:
            raise conflict("PAYROLL_ALREADY_PAID", "Payroll for this month is already paid.", batch_id=batch.id)
        _release_batch(db, batch)
    else:
        batch = PayrollBatch(month=month, year=year, status=PayrollStatus.DRAFT, total_employees=0, total_amount=ZERO)
        try:
            with db.begin_nested():
                db.add(batch)
                db.flush()
        except IntegrityError as exc:
            # Concurrent run for the same month.
            db.rollback()
            raise conflict(
                "PAYROLL_BATCH_EXISTS",
                "A payroll batch already exists for this month.",
                month=month,
                year=year,
            ) from exc

    employees, missing = _resolve_population(db, actor, employee_ids)
    failures = [
        {"employee_id": item, "code": "EMPLOYEE_NOT_FOUND", "message": "Employee not found."} for item in missing
    ]
    slips: list[SalarySlip] = []
    for employee in employees:
        reimbursements = _open_reimbursements(db, employee.id)
        try:
            preview = _preview_for(
                db,
                employee,
                month=month,
                year=year,
                config=config,
                adjustment=_adjustment_for(adjustments, employee.id),
                reimbursements=reimbursements,
            )
        except ApiError as exc:
            failures.append({"employee_id": employee.id, "code": exc.code, "message": exc.message})
            logger.warning(
                "payroll_slip_skipped",
                extra={"employee_id": employee.id, "code": exc.code, "month": month, "year": year},
            )
            continue

        computation = preview.computation
        slip = SalarySlip(
            employee_id=employee.id,
            batch_id=batch.id,
            month=month,
            year=year,
            basic_salary=computation.basic_salary,
            hra=computation.hra,
            da=computation.da,
            bonus=computation.bonus,
            reimbursements=computation.reimbursements,
            deductions=computation.deductions(),
            gross_salary=computation.gross_salary,
            net_salary=computation.net_salary,
            present_days=preview.counts.present_days,
            half_days=preview.counts.half_days,
            absent_days=preview.counts.absent_days,
            total_days=preview.total_days,
            status=PayrollStatus.PROCESSED,
        )
        db.add(slip)
        for reimbursement in reimbursements:
            reimbursement.payroll_batch_id = batch.id
        slips.append(slip)

    batch.status = PayrollStatus.PROCESSED
    batch.processed_by = actor.employee_id
    batch.processed_at = _utcnow()
    _refresh_batch_totals(db, batch)
    db.commit()
    db.refresh(batch)
    for slip in slips:
        db.refresh(slip)

    intended = len(employees) + len(missing)
    logger.info(
        "payroll_generated",
        extra={
            "batch_id": batch.id,
            "month": month,
            "year": year,
            "selective": selective,
            "intended": intended,
            "processed": len(slips),
            "failed": len(failures),
            "total_amount": str(batch.total_amount),
        },
    )
    return PayrollRunResult(batch=batch, slips=slips, intended_count=intended, failures=failures)


def mark_payroll_paid(db: Session, actor: Actor, batch_id: int) -> tuple[PayrollBatch, int]:
    policy.authorize("payroll.manage", actor, None, get_core_config())
    batch = _get_batch(db, batch_id)
    if batch.status == PayrollStatus.PAID:
        raise conflict("PAYROLL_ALREADY_PAID", "Payroll batch is already paid.", batch_id=batch.id)
    if batch.status != PayrollStatus.PROCESSED:
        raise conflict(
            "PAYROLL_NOT_PROCESSED",
            "Only processed batches can be marked paid.",
            batch_id=batch.id,
            status=batch.status.value,
        )

    for slip in db.scalars(select(SalarySlip).where(SalarySlip.batch_id == batch.id)).all():
        slip.status = PayrollStatus.PAID
    for reimbursement in db.scalars(select(Reimbursement).where(Reimbursement.payroll_batch_id == batch.id)).all():
        reimbursement.status = ReimbursementStatus.PAID
    batch.status = PayrollStatus.PAID
    batch.paid_at = _utcnow()
    locked = lock_month(db, month=batch.month, year=batch.year)
    db.commit()
    db.refresh(batch)
    logger.info(
        "payroll_paid",
        extra={"batch_id": batch.id, "month": batch.month, "year": batch.year, "attendance_locked": locked},
    )
    return batch, locked


def cancel_payroll_batch(db: Session, actor: Actor, batch_id: int) -> PayrollBatch:
    policy.authorize("payroll.manage", actor, None, get_core_config())
    batch = _get_batch(db, batch_id)
    if batch.status == PayrollStatus.PAID:
        raise conflict("PAYROLL_ALREADY_PAID", "Paid batches cannot be cancelled.", batch_id=batch.id)
    if batch.status == PayrollStatus.CANCELLED:
        raise conflict("PAYROLL_BATCH_CANCELLED", "Payroll batch is already cancelled.", batch_id=batch.id)

    _release_batch(db, batch)
    batch.status = PayrollStatus.CANCELLED
    _refresh_batch_totals(db, batch)
    db.commit()
    db.refresh(batch)
    logger.info("payroll_cancelled", extra={"batch_id": batch.id, "month": batch.month, "year": batch.year})
    return batch


def update_salary_slip(db: Session, actor: Actor, slip_id: int, *, fields: dict[str, Any]) -> SalarySlip:
    policy.authorize("payroll.manage", actor, None, get_core_config())
    slip = db.get(SalarySlip, slip_id)
    if slip is None:
        raise not_found("SALARY_SLIP_NOT_FOUND", "Salary slip not found.", slip_id=slip_id)
    batch = _get_batch(db, slip.batch_id)
    if slip.status == PayrollStatus.PAID or batch.status == PayrollStatus.PAID:
        raise conflict("SALARY_SLIP_PAID", "Paid salary slips cannot be edited.", slip_id=slip.id)
    if batch.status == PayrollStatus.CANCELLED:
        raise conflict("PAYROLL_BATCH_CANCELLED", "Payroll batch is cancelled.", batch_id=batch.id)

    for key in SLIP_COMPONENT_FIELDS:
        if fields.get(key) is not None:
            setattr(slip, key, money(fields[key]))
    deductions = dict(slip.deductions or {})
    for key in DEDUCTION_KEYS:
        if fields.get(key) is not None:
            deductions[key] = fields[key]

    gross, net, normalized = recompute_from_components(
        basic_salary=slip.basic_salary,
        hra=slip.hra,
        da=slip.da,
        reimbursements=slip.reimbursements,
        bonus=slip.bonus,
        deductions=deductions,
    )
    slip.gross_salary = gross
    slip.net_salary = net
    slip.deductions = normalized
    _refresh_batch_totals(db, batch)
    db.commit()
    db.refresh(slip)
    logger.info(
        "salary_slip_updated",
        extra={"slip_id": slip.id, "batch_id": batch.id, "net_salary": str(slip.net_salary), "actor_id": actor.employee_id},
    )
    return slip


def list_batches(db: Session, actor: Actor, *, year: int | None = None) -> list[PayrollBatch]:
    policy.authorize("payroll.read", actor, None, get_core_config())
    stmt = select(PayrollBatch)
    if year is not None:
        stmt = stmt.where(PayrollBatch.year == year)
    stmt = stmt.order_by(PayrollBatch.year.desc(), PayrollBatch.month.desc(), PayrollBatch.id.desc())
    return list(db.scalars(stmt).all())


def get_batch(db: Session, actor: Actor, batch_id: int) -> PayrollBatch:
    policy.authorize("payroll.read", actor, None, get_core_config())
    batch = db.scalar(
        select(PayrollBatch).options(selectinload(PayrollBatch.slips)).where(PayrollBatch.id == batch_id)
    )
    if batch is None:
        raise not_found("PAYROLL_BATCH_NOT_FOUND", "Payroll batch not found.", batch_id=batch_id)
    return batch


def list_slips(
    db: Session,
    actor: Actor,
    *,
    batch_id: int | None = None,
    employee_id: int | None = None,
    month: int | None = None,
    year: int | None = None,
) -> list[SalarySlip]:
    config = get_core_config()
    stmt = select(SalarySlip)
    if employee_id is not None:
        subject = db.get(Employee, employee_id)
        if subject is None:
            raise not_found("EMPLOYEE_NOT_FOUND", "Employee not found.", employee_id=employee_id)
        policy.authorize("payroll.read", actor, subject, config)
        stmt = stmt.where(SalarySlip.employee_id == employee_id)
    elif not actor.is_privileged:
        stmt = stmt.where(SalarySlip.employee_id == actor.employee_id)
    if batch_id is not None:
        stmt = stmt.where(SalarySlip.batch_id == batch_id)
    if month is not None:
        stmt = stmt.where(SalarySlip.month == month)
    if year is not None:
        stmt = stmt.where(SalarySlip.year == year)
    stmt = stmt.order_by(SalarySlip.year.desc(), SalarySlip.month.desc(), SalarySlip.employee_id.asc())
    return list(db.scalars(stmt).all())


def payroll_trend(db: Session, actor: Actor) -> list[dict[str, Any]]:
    policy.authorize("payroll.read", actor, None, get_core_config())
    batches = db.scalars(
        select(PayrollBatch)
        .where(PayrollBatch.status.in_([PayrollStatus.PROCESSED, PayrollStatus.PAID]))
        .order_by(PayrollBatch.year.desc(), PayrollBatch.month.desc())
        .limit(TREND_SIZE)
    ).all()
    return [
        {
            "month": batch.month,
            "year": batch.year,
            "status": batch.status.value,
            "total_employees": batch.total_employees,
            "total_amount": money(batch.total_amount),
        }
        for batch in reversed(batches)
    ]
