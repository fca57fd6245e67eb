from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from hrms.db import get_db
from hrms.errors import validation_error
from hrms.routers.common import audit_action
from hrms.schemas import (
    ConfigUpdateRequest,
    LeaveTypeLimitRequest,
    LeaveTypeLimitResponse,
    MaintenanceRunRequest,
    PunchIngestRequest,
    PunchIngestResponse,
    PunchProcessRequest,
    PunchProcessResponse,
    PunchSourceValidationResponse,
)
from hrms.security import Actor, require_actor
from hrms.services import policy
from hrms.services.attendance_calc import local_today
from hrms.services.configuration import get_core_config, update_core_config
from hrms.services.leaves import set_leave_type_limit
from hrms.services.maintenance import absence_sweep, auto_half_day_pass
from hrms.services.punches import (
    InlinePunchSource,
    PunchSource,
    build_punch_source,
    ingest_punches,
    ingested_high_water_mark,
    make_punch,
    process_pending_punches,
    validate_punch_source,
)

router = APIRouter(tags=["admin"])


@router.get("/api/admin/config")
def get_config_endpoint(actor: Actor = Depends(require_actor)) -> dict[str, Any]:
    config = get_core_config()
    policy.authorize("config.update", actor, None, config)
    return config.to_payload()


@router.patch("/api/admin/config")
def update_config_endpoint(
    payload: ConfigUpdateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    policy.authorize("config.update", actor, None, get_core_config())
    patch = payload.to_patch()
    config = update_core_config(db, patch, actor=str(actor.employee_id))
    audit_action(request, actor, "CONFIG_UPDATE", entity_type="configuration", details={"sections": sorted(patch)})
    return config.to_payload()


@router.put("/api/admin/leave-types/{leave_type}", response_model=LeaveTypeLimitResponse)
def set_leave_type_limit_endpoint(
    leave_type: str,
    payload: LeaveTypeLimitRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> LeaveTypeLimitResponse:
    limit, updated = set_leave_type_limit(db, actor, leave_type=leave_type, annual_limit=payload.annual_limit)
    audit_action(
        request,
        actor,
        "LEAVE_TYPE_LIMIT_SET",
        entity_type="leave_type_limit",
        entity_id=limit.id,
        details={"leave_type": limit.leave_type, "annual_limit": limit.annual_limit, "balances_updated": updated},
    )
    return LeaveTypeLimitResponse(leave_type=limit.leave_type, annual_limit=limit.annual_limit, balances_updated=updated)


@router.post("/api/admin/punches/ingest", response_model=PunchIngestResponse)
def ingest_punches_endpoint(
    payload: PunchIngestRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PunchIngestResponse:
    config = get_core_config()
    policy.authorize("punches.ingest", actor, None, config)

    source: PunchSource
    if payload.punches is not None:
        try:
            source = InlinePunchSource(
                make_punch(item.biometric_id, item.punch_time, item.device_ip, item.direction.value)
                for item in payload.punches
            )
        except ValueError as exc:
            raise validation_error("INVALID_PUNCH", str(exc)) from exc
    else:
        source = build_punch_source(config.biometric, since=ingested_high_water_mark(db))

    result = ingest_punches(db, source, dry_run=payload.dry_run, sample_size=config.biometric.sample_size)
    audit_action(
        request,
        actor,
        "PUNCH_INGEST",
        details={
            "source_type": source.source_type.value,
            "dry_run": result.dry_run,
            "fetched": result.fetched_count,
            "inserted": result.inserted_count,
            "skipped": result.skipped_count,
            "failed": result.failed_count,
        },
    )
    return PunchIngestResponse(
        dry_run=result.dry_run,
        fetched_count=result.fetched_count,
        inserted_count=result.inserted_count,
        skipped_count=result.skipped_count,
        failed_count=result.failed_count,
        sample_rows=result.sample_rows if result.dry_run else None,
    )


@router.post("/api/admin/punches/validate-source", response_model=PunchSourceValidationResponse)
def validate_punch_source_endpoint(
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PunchSourceValidationResponse:
    config = get_core_config()
    policy.authorize("punches.ingest", actor, None, config)
    return PunchSourceValidationResponse(**validate_punch_source(db, config.biometric))


@router.post("/api/admin/punches/process", response_model=PunchProcessResponse)
def process_punches_endpoint(
    payload: PunchProcessRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PunchProcessResponse:
    policy.authorize("punches.ingest", actor, None, get_core_config())
    summary = process_pending_punches(db, payload.day)
    audit_action(request, actor, "PUNCH_PROCESS", details={"day": payload.day.isoformat(), **summary})
    return PunchProcessResponse(day=payload.day, **summary)


@router.post("/api/admin/maintenance/run")
def run_maintenance_endpoint(
    payload: MaintenanceRunRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    policy.authorize("maintenance.run", actor, None, get_core_config())
    if payload.task == "auto_half_day":
        result: dict[str, Any] = {"task": payload.task, "half_day_corrected": auto_half_day_pass(db)}
    else:
        sweep = absence_sweep(db, payload.day or local_today())
        result = {"task": payload.task, "sweep": sweep.to_dict()}
    audit_action(request, actor, "MAINTENANCE_RUN", details=result)
    return result
