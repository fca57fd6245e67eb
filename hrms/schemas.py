from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hrms.models import (
    AttendanceSource,
    AttendanceStatus,
    LeaveStatus,
    ManagerDecision,
    PayrollStatus,
    PunchDirection,
    RegularizationStatus,
    RegularizationType,
)


class AttendanceMarkRequest(BaseModel):
    employee_id: int = Field(ge=1)
    day: date
    check_in: datetime | None = None
    check_out: datetime | None = None
    status: AttendanceStatus | None = None
    notes: str | None = Field(default=None, max_length=1000)


class AttendanceUpdateRequest(BaseModel):
    check_in: datetime | None = None
    check_out: datetime | None = None
    status: AttendanceStatus | None = None
    notes: str | None = Field(default=None, max_length=1000)
    reason: str = Field(min_length=3, max_length=1000)


class AttendanceLockRequest(BaseModel):
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000, le=2100)


class AttendanceLockResponse(BaseModel):
    month: int
    year: int
    locked_count: int


class AttendanceRecordRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    check_in: datetime | None
    check_out: datetime | None
    status: AttendanceStatus
    work_hours: Decimal | None
    overtime_minutes: int
    late_minutes: int
    notes: str | None
    is_locked: bool
    edited_by: int | None
    edit_reason: str | None
    source: AttendanceSource

    model_config = ConfigDict(from_attributes=True)


class AttendanceSummaryRead(BaseModel):
    employee_id: int
    month: int
    year: int
    counts: dict[str, int]
    total_work_hours: Decimal
    overtime_minutes: int
    late_minutes: int


class PunchIn(BaseModel):
    biometric_id: str = Field(min_length=1, max_length=50)
    punch_time: datetime
    device_ip: str | None = Field(default=None, max_length=45)
    direction: PunchDirection = PunchDirection.AUTO


class PunchIngestRequest(BaseModel):
    dry_run: bool = False
    punches: list[PunchIn] | None = Field(default=None, max_length=5000)


class PunchIngestResponse(BaseModel):
    dry_run: bool
    fetched_count: int
    inserted_count: int
    skipped_count: int
    failed_count: int
    sample_rows: list[dict[str, Any]] | None = None


class PunchProcessRequest(BaseModel):
    day: date


class PunchProcessResponse(BaseModel):
    day: date
    processed: int
    failed: int
    employees: int


class PunchSourceValidationResponse(BaseModel):
    overall_status: Literal["PASS", "WARN", "FAIL"]
    success: bool
    checks: dict[str, str]
    warnings: list[str]
    sample_data: list[dict[str, Any]]


class LeaveSubmitRequest(BaseModel):
    leave_type: str = Field(min_length=1, max_length=50)
    start_date: date
    end_date: date
    reason: str = Field(min_length=3, max_length=1000)

    @model_validator(mode="after")
    def validate_range(self) -> "LeaveSubmitRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be greater than or equal to start_date")
        return self


class LeaveEditRequest(BaseModel):
    leave_type: str | None = Field(default=None, min_length=1, max_length=50)
    start_date: date | None = None
    end_date: date | None = None
    reason: str | None = Field(default=None, min_length=3, max_length=1000)


class LeaveDecisionRequest(BaseModel):
    level: Literal["manager", "final"]
    remarks: str | None = Field(default=None, max_length=1000)


class LeaveCancelRequest(BaseModel):
    remarks: str | None = Field(default=None, max_length=1000)


class LeaveRequestRead(BaseModel):
    id: int
    employee_id: int
    leave_type: str
    start_date: date
    end_date: date
    days: int
    reason: str
    status: LeaveStatus
    manager_id: int | None
    manager_status: ManagerDecision | None
    manager_remarks: str | None
    approved_by: int | None
    approved_at: datetime | None
    remarks: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaveBalanceRead(BaseModel):
    id: int
    employee_id: int
    leave_type: str
    year: int
    total: int
    used: int
    remaining: int

    model_config = ConfigDict(from_attributes=True)


class LeaveTypeLimitRequest(BaseModel):
    annual_limit: int = Field(ge=0, le=366)


class LeaveTypeLimitResponse(BaseModel):
    leave_type: str
    annual_limit: int
    balances_updated: int


class RegularizationCreateRequest(BaseModel):
    attendance_date: date
    type: RegularizationType
    new_check_in: datetime | None = None
    new_check_out: datetime | None = None
    new_status: AttendanceStatus | None = None
    reason: str = Field(min_length=3, max_length=1000)


class RegularizationDecisionRequest(BaseModel):
    approve: bool
    remarks: str | None = Field(default=None, max_length=1000)


class RegularizationRead(BaseModel):
    id: int
    employee_id: int
    attendance_date: date
    type: RegularizationType
    new_check_in: datetime | None
    new_check_out: datetime | None
    new_status: AttendanceStatus | None
    reason: str
    status: RegularizationStatus
    approved_by: int | None
    remarks: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SlipAdjustmentIn(BaseModel):
    bonus: Decimal = Field(default=Decimal("0"), ge=0)
    other_deductions: Decimal = Field(default=Decimal("0"), ge=0)


class PayrollGenerateRequest(BaseModel):
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000, le=2100)
    employee_ids: list[int] | None = Field(default=None, min_length=1)
    adjustments: dict[int, SlipAdjustmentIn] = Field(default_factory=dict)


class PayrollPreviewRequest(BaseModel):
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000, le=2100)
    employee_ids: list[int] | None = Field(default=None, min_length=1)
    adjustments: dict[int, SlipAdjustmentIn] = Field(default_factory=dict)


class SalarySlipRead(BaseModel):
    id: int
    employee_id: int
    batch_id: int
    month: int
    year: int
    basic_salary: Decimal
    hra: Decimal
    da: Decimal
    bonus: Decimal
    reimbursements: Decimal
    deductions: dict[str, Any]
    gross_salary: Decimal
    net_salary: Decimal
    present_days: int
    half_days: int
    absent_days: int
    total_days: int
    status: PayrollStatus

    model_config = ConfigDict(from_attributes=True)


class SalarySlipUpdateRequest(BaseModel):
    basic_salary: Decimal | None = Field(default=None, ge=0)
    hra: Decimal | None = Field(default=None, ge=0)
    da: Decimal | None = Field(default=None, ge=0)
    bonus: Decimal | None = Field(default=None, ge=0)
    reimbursements: Decimal | None = Field(default=None, ge=0)
    pf: Decimal | None = Field(default=None, ge=0)
    esi: Decimal | None = Field(default=None, ge=0)
    tax: Decimal | None = Field(default=None, ge=0)
    loss_of_pay: Decimal | None = Field(default=None, ge=0)
    other: Decimal | None = Field(default=None, ge=0)


class PayrollBatchRead(BaseModel):
    id: int
    month: int
    year: int
    status: PayrollStatus
    total_employees: int
    total_amount: Decimal
    processed_by: int | None
    processed_at: datetime | None
    paid_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class PayrollFailureRead(BaseModel):
    employee_id: int
    code: str
    message: str


class PayrollRunResponse(BaseModel):
    batch: PayrollBatchRead
    slips: list[SalarySlipRead]
    intended_count: int
    processed_count: int
    failures: list[PayrollFailureRead]


class PayrollPreviewResponse(BaseModel):
    slips: list[dict[str, Any]]
    failures: list[PayrollFailureRead]


class PayrollPaidResponse(BaseModel):
    batch: PayrollBatchRead
    attendance_locked: int


class PayrollTrendPoint(BaseModel):
    month: int
    year: int
    status: str
    total_employees: int
    total_amount: Decimal


class MaintenanceRunRequest(BaseModel):
    task: Literal["auto_half_day", "absence_sweep"]
    day: date | None = None


class ConfigUpdateRequest(BaseModel):
    attendance: dict[str, Any] | None = None
    leave: dict[str, Any] | None = None
    payroll: dict[str, Any] | None = None
    biometric: dict[str, Any] | None = None

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
