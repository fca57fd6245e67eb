from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from hrms.errors import conflict, not_found, validation_error
from hrms.models import (
    AttendanceSource,
    AttendanceStatus,
    RegularizationRequest,
    RegularizationStatus,
    RegularizationType,
)
from hrms.security import Actor
from hrms.services import policy
from hrms.services.attendance import (
    ensure_attendance_writable,
    get_attendance_record,
    get_employee,
    recompute_record,
    writable_record,
)
from hrms.services.attendance_calc import local_today, to_utc_input
from hrms.services.configuration import get_core_config

logger = logging.getLogger("hrms.attendance")

CORRECTABLE_STATUSES = {AttendanceStatus.PRESENT, AttendanceStatus.HALF_DAY, AttendanceStatus.ABSENT}


def _validate_payload(
    request_type: RegularizationType,
    new_check_in: datetime | None,
    new_check_out: datetime | None,
    new_status: AttendanceStatus | None,
) -> None:
    needs_in = request_type in {RegularizationType.CHECK_IN, RegularizationType.BOTH}
    needs_out = request_type in {RegularizationType.CHECK_OUT, RegularizationType.BOTH}
    if needs_in and new_check_in is None:
        raise validation_error("NEW_CHECK_IN_REQUIRED", "new_check_in is required for this request type.")
    if needs_out and new_check_out is None:
        raise validation_error("NEW_CHECK_OUT_REQUIRED", "new_check_out is required for this request type.")
    if request_type == RegularizationType.STATUS_CHANGE:
        if new_status is None:
            raise validation_error("NEW_STATUS_REQUIRED", "new_status is required for a status change.")
        if new_status not in CORRECTABLE_STATUSES:
            raise validation_error(
                "INVALID_NEW_STATUS",
                "Status changes are limited to present, half_day and absent.",
                new_status=new_status.value,
            )


def request_regularization(
    db: Session,
    actor: Actor,
    *,
    attendance_date: date,
    request_type: RegularizationType,
    reason: str,
    new_check_in: datetime | None = None,
    new_check_out: datetime | None = None,
    new_status: AttendanceStatus | None = None,
) -> RegularizationRequest:
    config = get_core_config()
    employee = get_employee(db, actor.employee_id)
    policy.authorize("regularization.request", actor, employee, config)
    _validate_payload(request_type, new_check_in, new_check_out, new_status)

    if attendance_date > local_today():
        raise validation_error("FUTURE_DATE", "Attendance in the future cannot be regularized.")
    ensure_attendance_writable(db, attendance_date, get_attendance_record(db, employee.id, attendance_date))

    pending = db.scalar(
        select(RegularizationRequest.id).where(
            RegularizationRequest.employee_id == employee.id,
            RegularizationRequest.attendance_date == attendance_date,
            RegularizationRequest.status == RegularizationStatus.PENDING,
        )
    )
    if pending is not None:
        raise conflict(
            "REGULARIZATION_PENDING",
            "A regularization request for this date is already pending.",
            regularization_id=pending,
        )

    item = RegularizationRequest(
        employee_id=employee.id,
        attendance_date=attendance_date,
        type=request_type,
        new_check_in=to_utc_input(new_check_in) if request_type != RegularizationType.STATUS_CHANGE else None,
        new_check_out=to_utc_input(new_check_out) if request_type != RegularizationType.STATUS_CHANGE else None,
        new_status=new_status if request_type == RegularizationType.STATUS_CHANGE else None,
        reason=reason,
        status=RegularizationStatus.PENDING,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    logger.info(
        "regularization_requested",
        extra={"regularization_id": item.id, "employee_id": employee.id, "type": request_type.value},
    )
    return item


def process_regularization(
    db: Session,
    actor: Actor,
    regularization_id: int,
    *,
    approve: bool,
    remarks: str | None = None,
) -> RegularizationRequest:
    config = get_core_config()
    item = db.get(RegularizationRequest, regularization_id)
    if item is None:
        raise not_found(
            "REGULARIZATION_NOT_FOUND",
            "Regularization request not found.",
            regularization_id=regularization_id,
        )
    policy.authorize("regularization.process", actor, get_employee(db, item.employee_id), config)
    if item.status != RegularizationStatus.PENDING:
        raise conflict(
            "REGULARIZATION_ALREADY_PROCESSED",
            "Regularization request has already been processed.",
            regularization_id=item.id,
            status=item.status.value,
        )

    if approve:
        record, _created = writable_record(db, item.employee_id, item.attendance_date)
        explicit_status: AttendanceStatus | None = None
        if item.type in {RegularizationType.CHECK_IN, RegularizationType.BOTH}:
            record.check_in = item.new_check_in
        if item.type in {RegularizationType.CHECK_OUT, RegularizationType.BOTH}:
            record.check_out = item.new_check_out
        if item.type == RegularizationType.STATUS_CHANGE:
            explicit_status = item.new_status
        recompute_record(record, config.attendance, explicit_status=explicit_status)
        record.edited_by = actor.employee_id
        record.edit_reason = f"Regularization: {item.reason}"
        record.source = AttendanceSource.ADJUSTED
        item.status = RegularizationStatus.APPROVED
    else:
        item.status = RegularizationStatus.REJECTED

    item.approved_by = actor.employee_id
    item.remarks = remarks
    db.commit()
    db.refresh(item)
    logger.info(
        "regularization_processed",
        extra={"regularization_id": item.id, "status": item.status.value, "actor_id": actor.employee_id},
    )
    return item


def list_regularizations(
    db: Session,
    actor: Actor,
    *,
    employee_id: int | None = None,
    status: RegularizationStatus | None = None,
) -> list[RegularizationRequest]:
    stmt = select(RegularizationRequest)
    if employee_id is not None:
        policy.authorize("regularization.read", actor, get_employee(db, employee_id), get_core_config())
        stmt = stmt.where(RegularizationRequest.employee_id == employee_id)
    elif not actor.is_privileged:
        stmt = stmt.where(RegularizationRequest.employee_id == actor.employee_id)
    if status is not None:
        stmt = stmt.where(RegularizationRequest.status == status)
    stmt = stmt.order_by(RegularizationRequest.created_at.desc(), RegularizationRequest.id.desc())
    return list(db.scalars(stmt).all())
