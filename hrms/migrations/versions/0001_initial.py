"""Initial back office schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


employee_role = _enum("employee_role", "employee", "hr", "admin")
punch_direction = _enum("punch_direction", "IN", "OUT", "AUTO")
punch_source_type = _enum("punch_source_type", "ESSL_DB", "DIRECT_DEVICE", "CSV", "API")
punch_status = _enum("punch_status", "PENDING", "PROCESSED", "FAILED")
attendance_status = _enum("attendance_status", "present", "absent", "half_day", "on_leave", "holiday", "weekend")
attendance_source = _enum("attendance_source", "BIOMETRIC", "MANUAL", "ADJUSTED")
leave_status = _enum(
    "leave_status",
    "pending_manager",
    "pending_hr",
    "approved",
    "rejected",
    "cancelled",
    "withdrawn",
)
leave_manager_decision = _enum("leave_manager_decision", "pending", "approved", "rejected")
regularization_type = _enum("regularization_type", "check_in", "check_out", "both", "status_change")
regularization_status = _enum("regularization_status", "pending", "approved", "rejected")
payroll_status = _enum("payroll_status", "draft", "processed", "paid", "cancelled")
reimbursement_status = _enum("reimbursement_status", "pending", "approved", "rejected", "paid")

ALL_ENUMS = (
    employee_role,
    punch_direction,
    punch_source_type,
    punch_status,
    attendance_status,
    attendance_source,
    leave_status,
    leave_manager_decision,
    regularization_type,
    regularization_status,
    payroll_status,
    reimbursement_status,
)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.text("now()"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_code", sa.String(length=50), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("role", employee_role, nullable=False, server_default=sa.text("'employee'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("biometric_id", sa.String(length=50), nullable=True),
        sa.Column("reporting_manager_id", sa.Integer(), nullable=True),
        sa.Column("salary", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("pf_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("esi_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("absent_deduction_type", sa.String(length=20), nullable=True),
        sa.Column("absent_deduction_value", sa.Numeric(10, 2), nullable=True),
        sa.ForeignKeyConstraint(["reporting_manager_id"], ["employees.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_code", name="uq_employees_employee_code"),
    )
    op.create_index("ix_employees_biometric_id", "employees", ["biometric_id"], unique=True)
    op.create_index("ix_employees_reporting_manager_id", "employees", ["reporting_manager_id"])

    op.create_table(
        "holidays",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("is_optional", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("ix_holidays_day_date", "holidays", ["day_date"], unique=True)

    op.create_table(
        "system_configurations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        _timestamp("updated_at"),
        sa.UniqueConstraint("key", name="uq_system_configurations_key"),
    )

    op.create_table(
        "raw_punches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("biometric_id", sa.String(length=50), nullable=False),
        sa.Column("punch_ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("device_ip", sa.String(length=45), nullable=False, server_default=sa.text("''")),
        sa.Column("direction", punch_direction, nullable=False),
        sa.Column("source_type", punch_source_type, nullable=False),
        sa.Column("process_status", punch_status, nullable=False),
        sa.Column("error_log", sa.Text(), nullable=True),
        _timestamp("synced_at"),
        sa.UniqueConstraint("biometric_id", "punch_ts_utc", "device_ip", name="uq_raw_punches_dedup"),
    )
    op.create_index("ix_raw_punches_biometric_id", "raw_punches", ["biometric_id"])
    op.create_index("ix_raw_punches_punch_ts_utc", "raw_punches", ["punch_ts_utc"])
    op.create_index("ix_raw_punches_process_status", "raw_punches", ["process_status"])

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("check_in", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", attendance_status, nullable=False),
        sa.Column("work_hours", sa.Numeric(5, 2), nullable=True),
        sa.Column("overtime_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("late_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("edited_by", sa.Integer(), nullable=True),
        sa.Column("edit_reason", sa.String(length=1000), nullable=True),
        sa.Column("source", attendance_source, nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["edited_by"], ["employees.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_id", "day_date", name="uq_attendance_records_employee_day"),
    )
    op.create_index("ix_attendance_records_employee_id", "attendance_records", ["employee_id"])
    op.create_index("ix_attendance_records_day_date", "attendance_records", ["day_date"])

    op.create_table(
        "leave_type_limits",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("leave_type", sa.String(length=50), nullable=False),
        sa.Column("annual_limit", sa.Integer(), nullable=False),
        sa.UniqueConstraint("leave_type", name="uq_leave_type_limits_leave_type"),
    )

    op.create_table(
        "leave_balances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("leave_type", sa.String(length=50), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("remaining", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "leave_type", "year", name="uq_leave_balances_employee_type_year"),
    )
    op.create_index("ix_leave_balances_employee_id", "leave_balances", ["employee_id"])

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("leave_type", sa.String(length=50), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("days", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=1000), nullable=False),
        sa.Column("status", leave_status, nullable=False),
        sa.Column("manager_id", sa.Integer(), nullable=True),
        sa.Column("manager_status", leave_manager_decision, nullable=True),
        sa.Column("manager_remarks", sa.String(length=1000), nullable=True),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        _timestamp("approved_at", nullable=True),
        sa.Column("remarks", sa.String(length=1000), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["manager_id"], ["employees.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["approved_by"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_leave_requests_employee_id", "leave_requests", ["employee_id"])
    op.create_index("ix_leave_requests_status", "leave_requests", ["status"])
    op.create_index("ix_leave_requests_manager_id", "leave_requests", ["manager_id"])

    op.create_table(
        "regularization_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("attendance_date", sa.Date(), nullable=False),
        sa.Column("type", regularization_type, nullable=False),
        sa.Column("new_check_in", sa.DateTime(timezone=True), nullable=True),
        sa.Column("new_check_out", sa.DateTime(timezone=True), nullable=True),
        sa.Column("new_status", attendance_status, nullable=True),
        sa.Column("reason", sa.String(length=1000), nullable=False),
        sa.Column("status", regularization_status, nullable=False),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        sa.Column("remarks", sa.String(length=1000), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["approved_by"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_regularization_requests_employee_id", "regularization_requests", ["employee_id"])

    op.create_table(
        "payroll_batches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("status", payroll_status, nullable=False),
        sa.Column("total_employees", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("processed_by", sa.Integer(), nullable=True),
        _timestamp("processed_at", nullable=True),
        _timestamp("paid_at", nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["processed_by"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_payroll_batches_status", "payroll_batches", ["status"])
    # At most one live batch per month; cancelled batches stay as history.
    op.create_index(
        "uq_payroll_batches_active_month",
        "payroll_batches",
        ["month", "year"],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
        sqlite_where=sa.text("status <> 'cancelled'"),
    )

    op.create_table(
        "reimbursements",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", reimbursement_status, nullable=False),
        sa.Column("payroll_batch_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["payroll_batch_id"], ["payroll_batches.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_reimbursements_employee_id", "reimbursements", ["employee_id"])
    op.create_index("ix_reimbursements_payroll_batch_id", "reimbursements", ["payroll_batch_id"])

    op.create_table(
        "salary_slips",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("basic_salary", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("hra", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("da", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("bonus", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("reimbursements", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "deductions",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("gross_salary", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("net_salary", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("present_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("half_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("absent_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", payroll_status, nullable=False),
        _timestamp("generated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["batch_id"], ["payroll_batches.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "month", "year", name="uq_salary_slips_employee_month_year"),
    )
    op.create_index("ix_salary_slips_employee_id", "salary_slips", ["employee_id"])
    op.create_index("ix_salary_slips_batch_id", "salary_slips", ["batch_id"])


def downgrade() -> None:
    op.drop_table("salary_slips")
    op.drop_table("reimbursements")
    op.drop_index("uq_payroll_batches_active_month", table_name="payroll_batches")
    op.drop_table("payroll_batches")
    op.drop_table("regularization_requests")
    op.drop_table("leave_requests")
    op.drop_table("leave_balances")
    op.drop_table("leave_type_limits")
    op.drop_table("attendance_records")
    op.drop_table("raw_punches")
    op.drop_table("system_configurations")
    op.drop_table("holidays")
    op.drop_table("employees")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
