from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hrms.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class EmployeeRole(str, enum.Enum):
    EMPLOYEE = "employee"
    HR = "hr"
    ADMIN = "admin"


class PunchDirection(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    AUTO = "AUTO"


class PunchSourceType(str, enum.Enum):
    ESSL_DB = "ESSL_DB"
    DIRECT_DEVICE = "DIRECT_DEVICE"
    CSV = "CSV"
    API = "API"


class PunchStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class AttendanceStatus(str, enum.Enum):
    PRESENT = "present"
    ABSENT = "absent"
    HALF_DAY = "half_day"
    ON_LEAVE = "on_leave"
    HOLIDAY = "holiday"
    WEEKEND = "weekend"


class AttendanceSource(str, enum.Enum):
    BIOMETRIC = "BIOMETRIC"
    MANUAL = "MANUAL"
    ADJUSTED = "ADJUSTED"


class LeaveStatus(str, enum.Enum):
    PENDING_MANAGER = "pending_manager"
    PENDING_HR = "pending_hr"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    WITHDRAWN = "withdrawn"


class ManagerDecision(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RegularizationType(str, enum.Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    BOTH = "both"
    STATUS_CHANGE = "status_change"


class RegularizationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PayrollStatus(str, enum.Enum):
    DRAFT = "draft"
    PROCESSED = "processed"
    PAID = "paid"
    CANCELLED = "cancelled"


class ReimbursementStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class Employee(Base):
    """Read model of the external employee directory."""

    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[EmployeeRole] = mapped_column(
        _enum_column(EmployeeRole, "employee_role"),
        nullable=False,
        default=EmployeeRole.EMPLOYEE,
        server_default=text("'employee'"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    biometric_id: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True, index=True)
    reporting_manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    salary: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    pf_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    esi_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    absent_deduction_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    absent_deduction_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    reporting_manager: Mapped[Employee | None] = relationship(remote_side="Employee.id")


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    day_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True, index=True)
    is_optional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))


class Reimbursement(Base):
    __tablename__ = "reimbursements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[ReimbursementStatus] = mapped_column(
        _enum_column(ReimbursementStatus, "reimbursement_status"),
        nullable=False,
        default=ReimbursementStatus.PENDING,
    )
    payroll_batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("payroll_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )


class SystemConfiguration(Base):
    __tablename__ = "system_configurations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class RawPunch(Base):
    __tablename__ = "raw_punches"
    __table_args__ = (
        UniqueConstraint("biometric_id", "punch_ts_utc", "device_ip", name="uq_raw_punches_dedup"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    biometric_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    punch_ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    # Empty string when the source does not report an address, so the unique key stays effective.
    device_ip: Mapped[str] = mapped_column(String(45), nullable=False, default="", server_default=text("''"))
    direction: Mapped[PunchDirection] = mapped_column(
        _enum_column(PunchDirection, "punch_direction"),
        nullable=False,
        default=PunchDirection.AUTO,
    )
    source_type: Mapped[PunchSourceType] = mapped_column(
        _enum_column(PunchSourceType, "punch_source_type"),
        nullable=False,
    )
    process_status: Mapped[PunchStatus] = mapped_column(
        _enum_column(PunchStatus, "punch_status"),
        nullable=False,
        default=PunchStatus.PENDING,
        index=True,
    )
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("employee_id", "day_date", name="uq_attendance_records_employee_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    check_in: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[AttendanceStatus] = mapped_column(
        _enum_column(AttendanceStatus, "attendance_status"),
        nullable=False,
    )
    work_hours: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    overtime_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    late_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    edited_by: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    edit_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    source: Mapped[AttendanceSource] = mapped_column(
        _enum_column(AttendanceSource, "attendance_source"),
        nullable=False,
        default=AttendanceSource.MANUAL,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(foreign_keys=[employee_id])


class LeaveTypeLimit(Base):
    __tablename__ = "leave_type_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    leave_type: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    annual_limit: Mapped[int] = mapped_column(Integer, nullable=False)


class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    __table_args__ = (
        UniqueConstraint("employee_id", "leave_type", "year", name="uq_leave_balances_employee_type_year"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    leave_type: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    leave_type: Mapped[str] = mapped_column(String(50), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    days: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    status: Mapped[LeaveStatus] = mapped_column(
        _enum_column(LeaveStatus, "leave_status"),
        nullable=False,
        index=True,
    )
    manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    manager_status: Mapped[ManagerDecision | None] = mapped_column(
        _enum_column(ManagerDecision, "leave_manager_decision"),
        nullable=True,
    )
    manager_remarks: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    approved_by: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remarks: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(foreign_keys=[employee_id])


class RegularizationRequest(Base):
    __tablename__ = "regularization_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attendance_date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[RegularizationType] = mapped_column(
        _enum_column(RegularizationType, "regularization_type"),
        nullable=False,
    )
    new_check_in: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    new_check_out: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    new_status: Mapped[AttendanceStatus | None] = mapped_column(
        _enum_column(AttendanceStatus, "attendance_status"),
        nullable=True,
    )
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    status: Mapped[RegularizationStatus] = mapped_column(
        _enum_column(RegularizationStatus, "regularization_status"),
        nullable=False,
        default=RegularizationStatus.PENDING,
    )
    approved_by: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    remarks: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )


class PayrollBatch(Base):
    __tablename__ = "payroll_batches"
    __table_args__ = (
        # At most one live batch per month; cancelled batches stay as history.
        Index(
            "uq_payroll_batches_active_month",
            "month",
            "year",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PayrollStatus] = mapped_column(
        _enum_column(PayrollStatus, "payroll_status"),
        nullable=False,
        default=PayrollStatus.DRAFT,
        index=True,
    )
    total_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    processed_by: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    slips: Mapped[list[SalarySlip]] = relationship(back_populates="batch")


class SalarySlip(Base):
    __tablename__ = "salary_slips"
    __table_args__ = (
        UniqueConstraint("employee_id", "month", "year", name="uq_salary_slips_employee_month_year"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("payroll_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    basic_salary: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    hra: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    da: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    bonus: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    reimbursements: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    # {"pf", "esi", "tax", "loss_of_pay", "other"} as two-decimal strings.
    deductions: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    gross_salary: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    net_salary: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    present_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    half_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    absent_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[PayrollStatus] = mapped_column(
        _enum_column(PayrollStatus, "payroll_status"),
        nullable=False,
        default=PayrollStatus.DRAFT,
    )
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    batch: Mapped[PayrollBatch] = relationship(back_populates="slips")
    employee: Mapped[Employee] = relationship()
