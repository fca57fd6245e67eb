from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Literal

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from hrms.errors import conflict, forbidden, not_found, validation_error
from hrms.models import (
    AttendanceSource,
    AttendanceStatus,
    Employee,
    EmployeeRole,
    LeaveBalance,
    LeaveRequest,
    LeaveStatus,
    LeaveTypeLimit,
    ManagerDecision,
)
from hrms.security import Actor
from hrms.services import policy
from hrms.services.attendance import (
    ensure_attendance_writable,
    get_attendance_record,
    get_employee,
    is_holiday,
    recompute_record,
    writable_record,
)
from hrms.services.attendance_calc import count_leave_days, is_weekend, iter_days, local_today
from hrms.services.configuration import CoreConfig, get_core_config

logger = logging.getLogger("hrms.leaves")

PENDING_STATUSES = {LeaveStatus.PENDING_MANAGER, LeaveStatus.PENDING_HR}
TERMINAL_STATUSES = {LeaveStatus.REJECTED, LeaveStatus.CANCELLED, LeaveStatus.WITHDRAWN}
LEGACY_LEAVE_TYPES = ("casual", "sick", "earned")

DecisionLevel = Literal["manager", "final"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_leave_type(value: str) -> str:
    leave_type = (value or "").strip().lower()
    if not leave_type:
        raise validation_error("LEAVE_TYPE_REQUIRED", "Leave type is required.")
    return leave_type


def resolve_leave_limit(db: Session, leave_type: str, config: CoreConfig) -> int:
    """Explicit per-type limit, then the legacy aggregate limits, then the fallback."""
    explicit = db.scalar(select(LeaveTypeLimit.annual_limit).where(LeaveTypeLimit.leave_type == leave_type))
    if explicit is not None:
        return int(explicit)
    legacy = config.leave.legacy_limit(leave_type)
    if legacy is not None:
        return legacy
    return config.leave.fallback_limit


def _sync_total(balance: LeaveBalance, total: int) -> bool:
    if balance.total == total and balance.remaining == max(0, total - balance.used):
        return False
    balance.total = total
    balance.remaining = max(0, total - balance.used)
    return True


def get_or_create_balance(
    db: Session,
    *,
    employee_id: int,
    leave_type: str,
    year: int,
    config: CoreConfig,
) -> LeaveBalance:
    limit = resolve_leave_limit(db, leave_type, config)
    balance = db.scalar(
        select(LeaveBalance).where(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.leave_type == leave_type,
            LeaveBalance.year == year,
        )
    )
    if balance is None:
        balance = LeaveBalance(
            employee_id=employee_id,
            leave_type=leave_type,
            year=year,
            total=limit,
            used=0,
            remaining=limit,
        )
        db.add(balance)
        db.flush()
        return balance
    _sync_total(balance, limit)
    return balance


def _ensure_available(balance: LeaveBalance, days: int) -> None:
    if balance.remaining < days:
        raise validation_error(
            "INSUFFICIENT_BALANCE",
            "Insufficient leave balance.",
            leave_type=balance.leave_type,
            year=balance.year,
            remaining=balance.remaining,
            requested=days,
        )


def _consume(balance: LeaveBalance, days: int) -> None:
    balance.used += days
    balance.remaining = max(0, balance.total - balance.used)


def _release(balance: LeaveBalance, days: int) -> None:
    balance.used = max(0, balance.used - days)
    balance.remaining = max(0, balance.total - balance.used)


def _get_request(db: Session, request_id: int) -> LeaveRequest:
    leave = db.get(LeaveRequest, request_id)
    if leave is None:
        raise not_found("LEAVE_NOT_FOUND", "Leave request not found.", leave_request_id=request_id)
    return leave


def _compute_days(start_date: date, end_date: date, config: CoreConfig) -> int:
    if end_date < start_date:
        raise validation_error(
            "INVALID_DATE_RANGE",
            "end_date must be greater than or equal to start_date.",
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )
    days = count_leave_days(start_date, end_date, config.attendance.weekend_days)
    if days <= 0:
        raise validation_error("NO_WORKING_DAYS", "The selected range has no working days.")
    return days


def _ensure_no_overlap(db: Session, *, employee_id: int, start_date: date, end_date: date, exclude_id: int | None) -> None:
    stmt = select(LeaveRequest.id).where(
        LeaveRequest.employee_id == employee_id,
        LeaveRequest.status.in_([*PENDING_STATUSES, LeaveStatus.APPROVED]),
        LeaveRequest.start_date <= end_date,
        LeaveRequest.end_date >= start_date,
    )
    if exclude_id is not None:
        stmt = stmt.where(LeaveRequest.id != exclude_id)
    overlapping = db.scalar(stmt.limit(1))
    if overlapping is not None:
        raise conflict("LEAVE_OVERLAP", "Another leave request covers these dates.", leave_request_id=overlapping)


def _initial_route(employee: Employee) -> tuple[LeaveStatus, int | None, ManagerDecision | None]:
    manager = employee.reporting_manager
    if manager is None:
        return LeaveStatus.PENDING_HR, None, None
    if manager.role in {EmployeeRole.HR, EmployeeRole.ADMIN}:
        return LeaveStatus.PENDING_HR, manager.id, None
    return LeaveStatus.PENDING_MANAGER, manager.id, ManagerDecision.PENDING


def submit_leave(
    db: Session,
    actor: Actor,
    *,
    leave_type: str,
    start_date: date,
    end_date: date,
    reason: str,
) -> LeaveRequest:
    config = get_core_config()
    employee = get_employee(db, actor.employee_id)
    policy.authorize("leave.submit", actor, employee, config)

    normalized_type = normalize_leave_type(leave_type)
    days = _compute_days(start_date, end_date, config)
    _ensure_no_overlap(db, employee_id=employee.id, start_date=start_date, end_date=end_date, exclude_id=None)

    balance = get_or_create_balance(
        db,
        employee_id=employee.id,
        leave_type=normalized_type,
        year=start_date.year,
        config=config,
    )
    _ensure_available(balance, days)

    status, manager_id, manager_status = _initial_route(employee)
    leave = LeaveRequest(
        employee_id=employee.id,
        leave_type=normalized_type,
        start_date=start_date,
        end_date=end_date,
        days=days,
        reason=reason,
        status=status,
        manager_id=manager_id,
        manager_status=manager_status,
    )
    db.add(leave)
    db.commit()
    db.refresh(leave)
    logger.info(
        "leave_submitted",
        extra={
            "leave_request_id": leave.id,
            "employee_id": employee.id,
            "leave_type": normalized_type,
            "days": days,
            "status": status.value,
        },
    )
    return leave


def _write_leave_days(db: Session, leave: LeaveRequest, actor: Actor) -> int:
    written = 0
    for day in iter_days(leave.start_date, leave.end_date):
        record, _created = writable_record(db, leave.employee_id, day)
        record.status = AttendanceStatus.ON_LEAVE
        record.source = AttendanceSource.ADJUSTED
        record.edited_by = actor.employee_id
        record.edit_reason = f"Approved {leave.leave_type} leave #{leave.id}"
        written += 1
    return written


def _revert_leave_days(db: Session, leave: LeaveRequest) -> int:
    """Give back the days an approved leave stamped; unrecorded upcoming days return to the sweep."""
    config = get_core_config()
    today = local_today()
    reverted = 0
    for day in iter_days(leave.start_date, leave.end_date):
        record = get_attendance_record(db, leave.employee_id, day)
        if record is None or record.status != AttendanceStatus.ON_LEAVE:
            continue
        ensure_attendance_writable(db, day, record)
        reverted += 1
        if record.check_in is None:
            if is_holiday(db, day):
                recompute_record(record, config.attendance, explicit_status=AttendanceStatus.HOLIDAY)
                record.edit_reason = f"Leave #{leave.id} cancelled"
                continue
            if day >= today and not is_weekend(day, config.attendance.weekend_days):
                db.delete(record)
                continue
        recompute_record(record, config.attendance)
        record.edit_reason = f"Leave #{leave.id} cancelled"
    return reverted


def _reverse_approved(db: Session, leave: LeaveRequest, config: CoreConfig) -> None:
    balance = get_or_create_balance(
        db,
        employee_id=leave.employee_id,
        leave_type=leave.leave_type,
        year=leave.start_date.year,
        config=config,
    )
    _release(balance, leave.days)
    _revert_leave_days(db, leave)


def _manager_relationship_check(actor: Actor, leave: LeaveRequest) -> None:
    if leave.manager_id is None or leave.manager_id != actor.employee_id:
        raise forbidden(
            "NOT_ASSIGNED_MANAGER",
            "Only the assigned reporting manager can act on this request.",
            leave_request_id=leave.id,
        )


def decide_leave(
    db: Session,
    actor: Actor,
    request_id: int,
    *,
    level: DecisionLevel,
    approve: bool,
    remarks: str | None = None,
) -> LeaveRequest:
    config = get_core_config()
    leave = _get_request(db, request_id)
    subject = get_employee(db, leave.employee_id)

    if leave.status not in PENDING_STATUSES:
        raise conflict(
            "LEAVE_ALREADY_PROCESSED",
            "Leave request has already been processed.",
            leave_request_id=leave.id,
            status=leave.status.value,
        )

    if level == "manager":
        policy.authorize("leave.manager_decision", actor, subject, config)
        _manager_relationship_check(actor, leave)
        if leave.status != LeaveStatus.PENDING_MANAGER:
            raise conflict(
                "LEAVE_ALREADY_PROCESSED",
                "Manager decision was already recorded.",
                leave_request_id=leave.id,
                status=leave.status.value,
            )
        leave.manager_remarks = remarks
        if approve:
            leave.manager_status = ManagerDecision.APPROVED
            leave.status = LeaveStatus.PENDING_HR
        else:
            leave.manager_status = ManagerDecision.REJECTED
            leave.status = LeaveStatus.REJECTED
            leave.remarks = remarks
    else:
        policy.authorize("leave.final_decision", actor, subject, config)
        if leave.status == LeaveStatus.PENDING_MANAGER and actor.role != EmployeeRole.ADMIN:
            raise conflict(
                "LEAVE_AWAITING_MANAGER",
                "The reporting manager has not acted on this request yet.",
                leave_request_id=leave.id,
            )
        leave.approved_by = actor.employee_id
        leave.approved_at = _utcnow()
        leave.remarks = remarks
        if approve:
            balance = get_or_create_balance(
                db,
                employee_id=leave.employee_id,
                leave_type=leave.leave_type,
                year=leave.start_date.year,
                config=config,
            )
            _ensure_available(balance, leave.days)
            _consume(balance, leave.days)
            _write_leave_days(db, leave, actor)
            leave.status = LeaveStatus.APPROVED
        else:
            leave.status = LeaveStatus.REJECTED

    db.commit()
    db.refresh(leave)
    logger.info(
        "leave_decided",
        extra={
            "leave_request_id": leave.id,
            "level": level,
            "approve": approve,
            "status": leave.status.value,
            "actor_id": actor.employee_id,
        },
    )
    return leave


def approve_leave(db: Session, actor: Actor, request_id: int, *, level: DecisionLevel, remarks: str | None = None) -> LeaveRequest:
    return decide_leave(db, actor, request_id, level=level, approve=True, remarks=remarks)


def reject_leave(db: Session, actor: Actor, request_id: int, *, level: DecisionLevel, remarks: str | None = None) -> LeaveRequest:
    return decide_leave(db, actor, request_id, level=level, approve=False, remarks=remarks)


def cancel_leave(db: Session, actor: Actor, request_id: int, *, remarks: str | None = None) -> LeaveRequest:
    config = get_core_config()
    leave = _get_request(db, request_id)
    policy.authorize("leave.cancel", actor, get_employee(db, leave.employee_id), config)
    if leave.status in TERMINAL_STATUSES:
        raise conflict(
            "LEAVE_ALREADY_PROCESSED",
            "Leave request can no longer be cancelled.",
            leave_request_id=leave.id,
            status=leave.status.value,
        )

    was_approved = leave.status == LeaveStatus.APPROVED
    if was_approved:
        _reverse_approved(db, leave, config)
    leave.status = LeaveStatus.CANCELLED
    if remarks:
        leave.remarks = remarks

    db.commit()
    db.refresh(leave)
    logger.info(
        "leave_cancelled",
        extra={"leave_request_id": leave.id, "was_approved": was_approved, "actor_id": actor.employee_id},
    )
    return leave


def withdraw_leave(db: Session, actor: Actor, request_id: int) -> LeaveRequest:
    leave = _get_request(db, request_id)
    policy.authorize("leave.withdraw", actor, get_employee(db, leave.employee_id), get_core_config())
    if leave.status not in PENDING_STATUSES:
        raise conflict(
            "LEAVE_ALREADY_PROCESSED",
            "Only pending requests can be withdrawn.",
            leave_request_id=leave.id,
            status=leave.status.value,
        )
    leave.status = LeaveStatus.WITHDRAWN
    db.commit()
    db.refresh(leave)
    logger.info("leave_withdrawn", extra={"leave_request_id": leave.id})
    return leave


def _is_initial_pending(leave: LeaveRequest) -> bool:
    # Nobody has acted yet: still at the first approval stage it was routed to.
    if leave.status == LeaveStatus.PENDING_MANAGER:
        return True
    return leave.status == LeaveStatus.PENDING_HR and leave.manager_status is None


def edit_leave(db: Session, actor: Actor, request_id: int, *, fields: dict[str, Any]) -> LeaveRequest:
    config = get_core_config()
    leave = _get_request(db, request_id)
    policy.authorize("leave.edit", actor, get_employee(db, leave.employee_id), config)
    if not _is_initial_pending(leave):
        raise conflict(
            "LEAVE_ALREADY_PROCESSED",
            "Only requests awaiting their first decision can be edited.",
            leave_request_id=leave.id,
            status=leave.status.value,
        )

    leave_type = normalize_leave_type(fields.get("leave_type", leave.leave_type))
    start_date = fields.get("start_date", leave.start_date)
    end_date = fields.get("end_date", leave.end_date)
    days = _compute_days(start_date, end_date, config)
    _ensure_no_overlap(db, employee_id=leave.employee_id, start_date=start_date, end_date=end_date, exclude_id=leave.id)
    balance = get_or_create_balance(
        db,
        employee_id=leave.employee_id,
        leave_type=leave_type,
        year=start_date.year,
        config=config,
    )
    _ensure_available(balance, days)

    leave.leave_type = leave_type
    leave.start_date = start_date
    leave.end_date = end_date
    leave.days = days
    if fields.get("reason"):
        leave.reason = fields["reason"]
    db.commit()
    db.refresh(leave)
    logger.info("leave_edited", extra={"leave_request_id": leave.id, "days": days})
    return leave


def delete_leave(db: Session, actor: Actor, request_id: int) -> None:
    config = get_core_config()
    leave = _get_request(db, request_id)
    relationship = policy.authorize("leave.delete", actor, get_employee(db, leave.employee_id), config)
    is_admin = actor.role == EmployeeRole.ADMIN
    if not is_admin and not _is_initial_pending(leave):
        raise conflict(
            "LEAVE_ALREADY_PROCESSED",
            "Only requests awaiting their first decision can be deleted.",
            leave_request_id=leave.id,
            status=leave.status.value,
        )
    if leave.status == LeaveStatus.APPROVED:
        _reverse_approved(db, leave, config)
    db.delete(leave)
    db.commit()
    logger.info(
        "leave_deleted",
        extra={"leave_request_id": request_id, "actor_id": actor.employee_id, "relationship": relationship.value},
    )


def list_leaves(
    db: Session,
    actor: Actor,
    *,
    employee_id: int | None = None,
    status: LeaveStatus | None = None,
) -> list[LeaveRequest]:
    stmt = select(LeaveRequest)
    if employee_id is not None:
        policy.authorize("leave.read", actor, get_employee(db, employee_id), get_core_config())
        stmt = stmt.where(LeaveRequest.employee_id == employee_id)
    elif not actor.is_privileged:
        stmt = stmt.where(
            or_(
                LeaveRequest.employee_id == actor.employee_id,
                LeaveRequest.manager_id == actor.employee_id,
            )
        )
    if status is not None:
        stmt = stmt.where(LeaveRequest.status == status)
    stmt = stmt.order_by(LeaveRequest.created_at.desc(), LeaveRequest.id.desc())
    return list(db.scalars(stmt).all())


def list_balances(
    db: Session,
    actor: Actor,
    *,
    employee_id: int | None = None,
    year: int,
) -> list[LeaveBalance]:
    """Balances for every known leave type, synced to the limits in force right now."""
    config = get_core_config()
    target_id = employee_id if employee_id is not None else actor.employee_id
    policy.authorize("leave.read", actor, get_employee(db, target_id), config)

    configured_types = set(db.scalars(select(LeaveTypeLimit.leave_type)).all())
    existing_types = set(
        db.scalars(
            select(LeaveBalance.leave_type).where(
                LeaveBalance.employee_id == target_id,
                LeaveBalance.year == year,
            )
        ).all()
    )
    for leave_type in sorted(set(LEGACY_LEAVE_TYPES) | configured_types | existing_types):
        get_or_create_balance(db, employee_id=target_id, leave_type=leave_type, year=year, config=config)
    db.commit()

    return list(
        db.scalars(
            select(LeaveBalance)
            .where(LeaveBalance.employee_id == target_id, LeaveBalance.year == year)
            .order_by(LeaveBalance.leave_type.asc())
        ).all()
    )


def set_leave_type_limit(db: Session, actor: Actor, *, leave_type: str, annual_limit: int) -> tuple[LeaveTypeLimit, int]:
    policy.authorize("leave.configure", actor, None, get_core_config())
    if annual_limit < 0:
        raise validation_error("INVALID_LEAVE_LIMIT", "annual_limit must be non-negative.")
    normalized_type = normalize_leave_type(leave_type)

    limit = db.scalar(select(LeaveTypeLimit).where(LeaveTypeLimit.leave_type == normalized_type))
    if limit is None:
        limit = LeaveTypeLimit(leave_type=normalized_type, annual_limit=annual_limit)
        db.add(limit)
    else:
        limit.annual_limit = annual_limit

    updated = 0
    for balance in db.scalars(select(LeaveBalance).where(LeaveBalance.leave_type == normalized_type)).all():
        if _sync_total(balance, annual_limit):
            updated += 1

    db.commit()
    db.refresh(limit)
    logger.info(
        "leave_type_limit_set",
        extra={"leave_type": normalized_type, "annual_limit": annual_limit, "balances_updated": updated},
    )
    return limit, updated
