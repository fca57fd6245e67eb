from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from hrms.db import get_db
from hrms.models import LeaveRequest, LeaveStatus
from hrms.routers.common import audit_action
from hrms.schemas import (
    LeaveBalanceRead,
    LeaveCancelRequest,
    LeaveDecisionRequest,
    LeaveEditRequest,
    LeaveRequestRead,
    LeaveSubmitRequest,
)
from hrms.security import Actor, require_actor
from hrms.services.attendance_calc import local_today
from hrms.services.leaves import (
    approve_leave,
    cancel_leave,
    delete_leave,
    edit_leave,
    list_balances,
    list_leaves,
    reject_leave,
    submit_leave,
    withdraw_leave,
)

router = APIRouter(tags=["leaves"])


def _leave_details(leave: LeaveRequest) -> dict:
    return {
        "employee_id": leave.employee_id,
        "leave_type": leave.leave_type,
        "days": leave.days,
        "status": leave.status.value,
    }


@router.post("/api/leaves", response_model=LeaveRequestRead, status_code=status.HTTP_201_CREATED)
def submit_leave_endpoint(
    payload: LeaveSubmitRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = submit_leave(
        db,
        actor,
        leave_type=payload.leave_type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
    )
    audit_action(request, actor, "LEAVE_SUBMIT", entity_type="leave", entity_id=leave.id, details=_leave_details(leave))
    return leave


@router.get("/api/leaves", response_model=list[LeaveRequestRead])
def list_leaves_endpoint(
    employee_id: int | None = Query(default=None, ge=1),
    status_filter: LeaveStatus | None = Query(default=None, alias="status"),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[LeaveRequestRead]:
    return list_leaves(db, actor, employee_id=employee_id, status=status_filter)


@router.get("/api/leaves/balances", response_model=list[LeaveBalanceRead])
def list_balances_endpoint(
    employee_id: int | None = Query(default=None, ge=1),
    year: int | None = Query(default=None, ge=2000, le=2100),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[LeaveBalanceRead]:
    return list_balances(db, actor, employee_id=employee_id, year=year or local_today().year)


@router.patch("/api/leaves/{leave_id}", response_model=LeaveRequestRead)
def edit_leave_endpoint(
    leave_id: int,
    payload: LeaveEditRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    fields = payload.model_dump(exclude_none=True)
    leave = edit_leave(db, actor, leave_id, fields=fields)
    audit_action(
        request,
        actor,
        "LEAVE_EDIT",
        entity_type="leave",
        entity_id=leave.id,
        details={**_leave_details(leave), "fields": sorted(fields)},
    )
    return leave


@router.delete("/api/leaves/{leave_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_leave_endpoint(
    leave_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> Response:
    delete_leave(db, actor, leave_id)
    audit_action(request, actor, "LEAVE_DELETE", entity_type="leave", entity_id=leave_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/api/leaves/{leave_id}/approve", response_model=LeaveRequestRead)
def approve_leave_endpoint(
    leave_id: int,
    payload: LeaveDecisionRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = approve_leave(db, actor, leave_id, level=payload.level, remarks=payload.remarks)
    audit_action(
        request,
        actor,
        "LEAVE_APPROVE",
        entity_type="leave",
        entity_id=leave.id,
        details={**_leave_details(leave), "level": payload.level},
    )
    return leave


@router.post("/api/leaves/{leave_id}/reject", response_model=LeaveRequestRead)
def reject_leave_endpoint(
    leave_id: int,
    payload: LeaveDecisionRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = reject_leave(db, actor, leave_id, level=payload.level, remarks=payload.remarks)
    audit_action(
        request,
        actor,
        "LEAVE_REJECT",
        entity_type="leave",
        entity_id=leave.id,
        details={**_leave_details(leave), "level": payload.level},
    )
    return leave


@router.post("/api/leaves/{leave_id}/cancel", response_model=LeaveRequestRead)
def cancel_leave_endpoint(
    leave_id: int,
    payload: LeaveCancelRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = cancel_leave(db, actor, leave_id, remarks=payload.remarks)
    audit_action(request, actor, "LEAVE_CANCEL", entity_type="leave", entity_id=leave.id, details=_leave_details(leave))
    return leave


@router.post("/api/leaves/{leave_id}/withdraw", response_model=LeaveRequestRead)
def withdraw_leave_endpoint(
    leave_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = withdraw_leave(db, actor, leave_id)
    audit_action(request, actor, "LEAVE_WITHDRAW", entity_type="leave", entity_id=leave.id, details=_leave_details(leave))
    return leave
