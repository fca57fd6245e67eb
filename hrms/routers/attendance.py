from datetime import date

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from hrms.db import get_db
from hrms.models import AttendanceStatus, RegularizationStatus
from hrms.routers.common import audit_action
from hrms.schemas import (
    AttendanceLockRequest,
    AttendanceLockResponse,
    AttendanceMarkRequest,
    AttendanceRecordRead,
    AttendanceSummaryRead,
    AttendanceUpdateRequest,
    RegularizationCreateRequest,
    RegularizationDecisionRequest,
    RegularizationRead,
)
from hrms.security import Actor, require_actor
from hrms.services.attendance import (
    attendance_summary,
    list_attendance,
    lock_attendance,
    mark_attendance,
    update_attendance,
)
from hrms.services.attendance_calc import local_today
from hrms.services.regularization import (
    list_regularizations,
    process_regularization,
    request_regularization,
)

router = APIRouter(tags=["attendance"])


@router.post("/api/attendance/mark", response_model=AttendanceRecordRead)
def mark_attendance_endpoint(
    payload: AttendanceMarkRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    record = mark_attendance(
        db,
        actor,
        employee_id=payload.employee_id,
        day=payload.day,
        check_in=payload.check_in,
        check_out=payload.check_out,
        status=payload.status,
        notes=payload.notes,
    )
    request.state.employee_id = record.employee_id
    audit_action(
        request,
        actor,
        "ATTENDANCE_MARK",
        entity_type="attendance",
        entity_id=record.id,
        details={"employee_id": record.employee_id, "day": record.day_date.isoformat(), "status": record.status.value},
    )
    return record


@router.patch("/api/attendance/{record_id}", response_model=AttendanceRecordRead)
def update_attendance_endpoint(
    record_id: int,
    payload: AttendanceUpdateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    fields = payload.model_dump(exclude_unset=True, exclude={"reason"})
    record = update_attendance(db, actor, record_id, fields=fields, reason=payload.reason)
    audit_action(
        request,
        actor,
        "ATTENDANCE_UPDATE",
        entity_type="attendance",
        entity_id=record.id,
        details={"fields": sorted(fields), "reason": payload.reason},
    )
    return record


@router.post("/api/attendance/lock", response_model=AttendanceLockResponse)
def lock_attendance_endpoint(
    payload: AttendanceLockRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendanceLockResponse:
    locked_count = lock_attendance(db, actor, month=payload.month, year=payload.year)
    audit_action(
        request,
        actor,
        "ATTENDANCE_LOCK",
        details={"month": payload.month, "year": payload.year, "locked_count": locked_count},
    )
    return AttendanceLockResponse(month=payload.month, year=payload.year, locked_count=locked_count)


@router.get("/api/attendance", response_model=list[AttendanceRecordRead])
def list_attendance_endpoint(
    employee_id: int | None = Query(default=None, ge=1),
    start_date: date | None = None,
    end_date: date | None = None,
    status_filter: AttendanceStatus | None = Query(default=None, alias="status"),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[AttendanceRecordRead]:
    return list_attendance(
        db,
        actor,
        employee_id=employee_id,
        start_date=start_date,
        end_date=end_date,
        status=status_filter,
    )


@router.get("/api/attendance/summary", response_model=AttendanceSummaryRead)
def attendance_summary_endpoint(
    employee_id: int | None = Query(default=None, ge=1),
    month: int | None = Query(default=None, ge=1, le=12),
    year: int | None = Query(default=None, ge=2000, le=2100),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendanceSummaryRead:
    today = local_today()
    summary = attendance_summary(
        db,
        actor,
        employee_id=employee_id or actor.employee_id,
        month=month or today.month,
        year=year or today.year,
    )
    return AttendanceSummaryRead(**summary)


@router.post(
    "/api/regularizations",
    response_model=RegularizationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_regularization_endpoint(
    payload: RegularizationCreateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> RegularizationRead:
    item = request_regularization(
        db,
        actor,
        attendance_date=payload.attendance_date,
        request_type=payload.type,
        reason=payload.reason,
        new_check_in=payload.new_check_in,
        new_check_out=payload.new_check_out,
        new_status=payload.new_status,
    )
    audit_action(
        request,
        actor,
        "REGULARIZATION_REQUEST",
        entity_type="regularization",
        entity_id=item.id,
        details={"attendance_date": item.attendance_date.isoformat(), "type": item.type.value},
    )
    return item


@router.get("/api/regularizations", response_model=list[RegularizationRead])
def list_regularizations_endpoint(
    employee_id: int | None = Query(default=None, ge=1),
    status_filter: RegularizationStatus | None = Query(default=None, alias="status"),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[RegularizationRead]:
    return list_regularizations(db, actor, employee_id=employee_id, status=status_filter)


@router.post("/api/regularizations/{regularization_id}/decision", response_model=RegularizationRead)
def decide_regularization_endpoint(
    regularization_id: int,
    payload: RegularizationDecisionRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> RegularizationRead:
    item = process_regularization(
        db,
        actor,
        regularization_id,
        approve=payload.approve,
        remarks=payload.remarks,
    )
    audit_action(
        request,
        actor,
        "REGULARIZATION_APPROVE" if payload.approve else "REGULARIZATION_REJECT",
        entity_type="regularization",
        entity_id=item.id,
        details={"employee_id": item.employee_id, "status": item.status.value},
    )
    return item
