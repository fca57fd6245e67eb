import asyncio
from contextlib import suppress
from datetime import date, datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hrms.db import SessionLocal, engine
from hrms.errors import ApiError, error_response
from hrms.logging_utils import bind_request_id, reset_request_id, setup_json_logging
from hrms.routers import admin, attendance, leaves, payroll
from hrms.services.configuration import initialize_core_config
from hrms.services.maintenance import run_scheduled_maintenance
from hrms.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from hrms.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("hrms.request")
maintenance_worker_logger = logging.getLogger("hrms.maintenance_worker")

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    token = bind_request_id(request_id)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
                "employee_id": getattr(request.state, "employee_id", None),
            },
        )
        reset_request_id(token)


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        category=exc.category,
        details=exc.details,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message="Request validation failed.",
        category="VALIDATION",
        details={"errors": exc.errors()},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(attendance.router)
app.include_router(leaves.router)
app.include_router(payroll.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def _load_core_config() -> None:
    with SessionLocal() as db:
        initialize_core_config(db)


def _maintenance_tick(last_sweep_day: date | None) -> dict[str, Any]:
    with SessionLocal() as db:
        return run_scheduled_maintenance(db, last_sweep_day=last_sweep_day)


async def _maintenance_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(30, int(settings.maintenance_worker_interval_seconds))
    last_sweep_day: date | None = None
    while not stop_event.is_set():
        try:
            outcome = await asyncio.to_thread(_maintenance_tick, last_sweep_day)
        except Exception:
            maintenance_worker_logger.exception("maintenance_worker_tick_failed")
        else:
            last_sweep_day = outcome["swept_day"]
            if outcome["half_day_corrected"] or outcome["sweep"] is not None:
                maintenance_worker_logger.info(
                    "maintenance_worker_tick",
                    extra={
                        "half_day_corrected": outcome["half_day_corrected"],
                        "sweep": outcome["sweep"],
                    },
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        maintenance_worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
    else:
        maintenance_worker_logger.error(
            "schema_guard_failed",
            extra=result.to_dict(),
        )
        if settings.schema_guard_strict:
            joined_issues = "; ".join(result.issues)
            raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")
        return

    await asyncio.to_thread(_load_core_config)


@app.on_event("startup")
async def start_maintenance_worker() -> None:
    if not settings.maintenance_worker_enabled:
        return
    if getattr(app.state, "maintenance_worker_task", None) is not None:
        return
    if not getattr(app.state, "schema_guard_result", _default_schema_guard_result()).ok:
        maintenance_worker_logger.warning("maintenance_worker_not_started", extra={"reason": "SCHEMA_GUARD_FAILED"})
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_maintenance_worker_loop(stop_event))
    app.state.maintenance_worker_stop_event = stop_event
    app.state.maintenance_worker_task = task
    maintenance_worker_logger.info(
        "maintenance_worker_started",
        extra={"interval_seconds": max(30, int(settings.maintenance_worker_interval_seconds))},
    )


@app.on_event("shutdown")
async def stop_maintenance_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "maintenance_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "maintenance_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.maintenance_worker_stop_event = None
    app.state.maintenance_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    worker_task = getattr(app.state, "maintenance_worker_task", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "maintenance_worker": {
            "enabled": settings.maintenance_worker_enabled,
            "running": worker_task is not None and not worker_task.done(),
        },
    }
