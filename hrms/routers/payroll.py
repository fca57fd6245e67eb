from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from hrms.db import get_db
from hrms.routers.common import audit_action
from hrms.schemas import (
    PayrollBatchRead,
    PayrollGenerateRequest,
    PayrollPaidResponse,
    PayrollPreviewRequest,
    PayrollPreviewResponse,
    PayrollRunResponse,
    PayrollTrendPoint,
    SalarySlipRead,
    SalarySlipUpdateRequest,
    SlipAdjustmentIn,
)
from hrms.security import Actor, require_actor
from hrms.services.exports import build_payroll_batch_xlsx_bytes
from hrms.services.payroll import (
    SlipAdjustment,
    cancel_payroll_batch,
    generate_payroll,
    get_batch,
    list_batches,
    list_slips,
    mark_payroll_paid,
    payroll_trend,
    preview_payroll,
    update_salary_slip,
)

router = APIRouter(tags=["payroll"])
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _adjustments(payload: dict[int, SlipAdjustmentIn]) -> dict[int, SlipAdjustment]:
    return {
        employee_id: SlipAdjustment(bonus=item.bonus, other_deductions=item.other_deductions)
        for employee_id, item in payload.items()
    }


@router.post("/api/payroll/preview", response_model=PayrollPreviewResponse)
def preview_payroll_endpoint(
    payload: PayrollPreviewRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PayrollPreviewResponse:
    previews, failures = preview_payroll(
        db,
        actor,
        month=payload.month,
        year=payload.year,
        employee_ids=payload.employee_ids,
        adjustments=_adjustments(payload.adjustments),
    )
    return PayrollPreviewResponse(slips=[item.to_dict() for item in previews], failures=failures)


@router.post("/api/payroll/generate", response_model=PayrollRunResponse)
def generate_payroll_endpoint(
    payload: PayrollGenerateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PayrollRunResponse:
    result = generate_payroll(
        db,
        actor,
        month=payload.month,
        year=payload.year,
        employee_ids=payload.employee_ids,
        adjustments=_adjustments(payload.adjustments),
    )
    audit_action(
        request,
        actor,
        "PAYROLL_GENERATE",
        entity_type="payroll_batch",
        entity_id=result.batch.id,
        details={
            "month": payload.month,
            "year": payload.year,
            "selective": payload.employee_ids is not None,
            "intended": result.intended_count,
            "processed": result.processed_count,
            "failed": len(result.failures),
        },
    )
    return PayrollRunResponse(
        batch=PayrollBatchRead.model_validate(result.batch),
        slips=[SalarySlipRead.model_validate(slip) for slip in result.slips],
        intended_count=result.intended_count,
        processed_count=result.processed_count,
        failures=result.failures,
    )


@router.get("/api/payroll/batches", response_model=list[PayrollBatchRead])
def list_batches_endpoint(
    year: int | None = Query(default=None, ge=2000, le=2100),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[PayrollBatchRead]:
    return list_batches(db, actor, year=year)


@router.get("/api/payroll/batches/{batch_id}", response_model=PayrollBatchRead)
def get_batch_endpoint(
    batch_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PayrollBatchRead:
    return get_batch(db, actor, batch_id)


@router.post("/api/payroll/batches/{batch_id}/paid", response_model=PayrollPaidResponse)
def mark_paid_endpoint(
    batch_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PayrollPaidResponse:
    batch, locked = mark_payroll_paid(db, actor, batch_id)
    audit_action(
        request,
        actor,
        "PAYROLL_PAID",
        entity_type="payroll_batch",
        entity_id=batch.id,
        details={"month": batch.month, "year": batch.year, "attendance_locked": locked},
    )
    return PayrollPaidResponse(batch=PayrollBatchRead.model_validate(batch), attendance_locked=locked)


@router.post("/api/payroll/batches/{batch_id}/cancel", response_model=PayrollBatchRead)
def cancel_batch_endpoint(
    batch_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PayrollBatchRead:
    batch = cancel_payroll_batch(db, actor, batch_id)
    audit_action(
        request,
        actor,
        "PAYROLL_CANCEL",
        entity_type="payroll_batch",
        entity_id=batch.id,
        details={"month": batch.month, "year": batch.year},
    )
    return batch


@router.get("/api/payroll/batches/{batch_id}/export.xlsx")
def export_batch_endpoint(
    batch_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> Response:
    batch = get_batch(db, actor, batch_id)
    content = build_payroll_batch_xlsx_bytes(db, batch.id)
    filename = f"payroll-{batch.year}-{batch.month:02d}.xlsx"
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/api/payroll/slips", response_model=list[SalarySlipRead])
def list_slips_endpoint(
    batch_id: int | None = Query(default=None, ge=1),
    employee_id: int | None = Query(default=None, ge=1),
    month: int | None = Query(default=None, ge=1, le=12),
    year: int | None = Query(default=None, ge=2000, le=2100),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[SalarySlipRead]:
    return list_slips(db, actor, batch_id=batch_id, employee_id=employee_id, month=month, year=year)


@router.patch("/api/payroll/slips/{slip_id}", response_model=SalarySlipRead)
def update_slip_endpoint(
    slip_id: int,
    payload: SalarySlipUpdateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> SalarySlipRead:
    fields = payload.model_dump(exclude_none=True)
    slip = update_salary_slip(db, actor, slip_id, fields=fields)
    audit_action(
        request,
        actor,
        "SALARY_SLIP_UPDATE",
        entity_type="salary_slip",
        entity_id=slip.id,
        details={"fields": sorted(fields), "net_salary": str(slip.net_salary)},
    )
    return slip


@router.get("/api/payroll/trend", response_model=list[PayrollTrendPoint])
def payroll_trend_endpoint(
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[PayrollTrendPoint]:
    return payroll_trend(db, actor)
