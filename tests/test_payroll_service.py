from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from io import BytesIO
from unittest.mock import patch
from zoneinfo import ZoneInfo

from openpyxl import load_workbook
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from hrms.errors import ApiError
from hrms.models import (
    AttendanceRecord,
    AttendanceSource,
    AttendanceStatus,
    EmployeeRole,
    PayrollBatch,
    PayrollStatus,
    Reimbursement,
    ReimbursementStatus,
    SalarySlip,
)
from hrms.services.attendance import mark_attendance
from hrms.services.exports import build_payroll_batch_xlsx_bytes
from hrms.services.payroll import (
    SlipAdjustment,
    cancel_payroll_batch,
    generate_payroll,
    list_slips,
    mark_payroll_paid,
    payroll_trend,
    preview_payroll,
    update_salary_slip,
)
from tests.support import DatabaseTestCase, actor_for, add_employee

IST = ZoneInfo("Asia/Kolkata")


class PayrollTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.admin = add_employee(self.db, "AD1", role=EmployeeRole.ADMIN, salary="0")
        self.hr = add_employee(self.db, "HR1", role=EmployeeRole.HR, salary="60000")
        self.employee = add_employee(self.db, "E1", salary="30000")
        # April 2026 has 30 days: two absences and one half day.
        for day, status in (
            (date(2026, 4, 1), AttendanceStatus.ABSENT),
            (date(2026, 4, 2), AttendanceStatus.ABSENT),
            (date(2026, 4, 3), AttendanceStatus.HALF_DAY),
        ):
            self.db.add(
                AttendanceRecord(
                    employee_id=self.employee.id,
                    day_date=day,
                    status=status,
                    source=AttendanceSource.ADJUSTED,
                )
            )
        self.db.commit()

    def _slip(self, result, employee_id: int) -> SalarySlip:  # type: ignore[no-untyped-def]
        return next(slip for slip in result.slips if slip.employee_id == employee_id)


class GenerateTests(PayrollTestCase):
    def test_full_population_run(self) -> None:
        result = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)

        self.assertEqual(result.failures, [])
        self.assertEqual(result.intended_count, 2)
        self.assertEqual(result.processed_count, 2)
        slip = self._slip(result, self.employee.id)
        self.assertEqual(slip.net_salary, Decimal("25700.00"))
        self.assertEqual(slip.deductions["loss_of_pay"], "2500.00")
        self.assertEqual(slip.deductions["pf"], "1800.00")
        self.assertEqual((slip.present_days, slip.half_days, slip.absent_days, slip.total_days), (0, 1, 2, 30))
        self.assertEqual(slip.status, PayrollStatus.PROCESSED)

        self.assertEqual(self._slip(result, self.hr.id).net_salary, Decimal("50400.00"))
        self.assertEqual(result.batch.status, PayrollStatus.PROCESSED)
        self.assertEqual(result.batch.total_employees, 2)
        self.assertEqual(result.batch.total_amount, Decimal("76100.00"))
        self.assertEqual(result.batch.processed_by, self.hr.id)

    def test_second_full_run_conflicts(self) -> None:
        generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        with self.assertRaises(ApiError) as ctx:
            generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        self.assertApiError(ctx, "PAYROLL_BATCH_EXISTS", 409)

    def test_concurrent_run_for_the_same_month_conflicts(self) -> None:
        first = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)

        # The other run committed after this one looked for an active batch.
        with patch("hrms.services.payroll._active_batch", return_value=None):
            with self.assertRaises(ApiError) as ctx:
                generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        self.assertApiError(ctx, "PAYROLL_BATCH_EXISTS", 409)

        batches = self.db.scalars(select(PayrollBatch).where(PayrollBatch.month == 4)).all()
        self.assertEqual([batch.id for batch in batches], [first.batch.id])

    def test_only_one_live_batch_per_month(self) -> None:
        self.db.add(PayrollBatch(month=5, year=2026, status=PayrollStatus.CANCELLED, total_employees=0, total_amount=0))
        self.db.add(PayrollBatch(month=5, year=2026, status=PayrollStatus.DRAFT, total_employees=0, total_amount=0))
        self.db.commit()

        self.db.add(PayrollBatch(month=5, year=2026, status=PayrollStatus.PROCESSED, total_employees=0, total_amount=0))
        with self.assertRaises(IntegrityError):
            self.db.commit()
        self.db.rollback()

    def test_admin_run_reports_per_employee_failures(self) -> None:
        add_employee(self.db, "E2", is_active=False)
        result = generate_payroll(self.db, actor_for(self.admin), month=4, year=2026)
        self.assertEqual(result.processed_count, 2)
        self.assertEqual(
            result.failures,
            [{"employee_id": self.admin.id, "code": "SALARY_NOT_SET", "message": "Employee has no monthly salary."}],
        )
        self.assertEqual(result.intended_count, 3)

    def test_selective_run_replaces_existing_slips(self) -> None:
        generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        result = generate_payroll(
            self.db,
            actor_for(self.hr),
            month=4,
            year=2026,
            employee_ids=[self.employee.id, 999],
            adjustments={self.employee.id: SlipAdjustment(bonus=Decimal("1000"), other_deductions=Decimal("200"))},
        )
        self.assertEqual(result.processed_count, 1)
        self.assertEqual(result.failures[0]["code"], "EMPLOYEE_NOT_FOUND")
        slip = result.slips[0]
        self.assertEqual(slip.bonus, Decimal("1000.00"))
        self.assertEqual(slip.net_salary, Decimal("26500.00"))

        slips = self.db.scalars(select(SalarySlip).where(SalarySlip.month == 4, SalarySlip.year == 2026)).all()
        self.assertEqual(len(slips), 1)
        self.assertEqual(result.batch.total_employees, 1)
        self.assertEqual(result.batch.total_amount, Decimal("26500.00"))

    def test_approved_reimbursements_are_claimed_once(self) -> None:
        approved = Reimbursement(employee_id=self.employee.id, amount=Decimal("1500"), status=ReimbursementStatus.APPROVED)
        pending = Reimbursement(employee_id=self.employee.id, amount=Decimal("900"), status=ReimbursementStatus.PENDING)
        self.db.add_all([approved, pending])
        self.db.commit()

        result = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026, employee_ids=[self.employee.id])
        slip = result.slips[0]
        self.assertEqual(slip.reimbursements, Decimal("1500.00"))
        self.assertEqual(slip.net_salary, Decimal("27200.00"))
        self.db.refresh(approved)
        self.db.refresh(pending)
        self.assertEqual(approved.payroll_batch_id, result.batch.id)
        self.assertIsNone(pending.payroll_batch_id)

        rerun = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026, employee_ids=[self.employee.id])
        self.assertEqual(rerun.slips[0].reimbursements, Decimal("1500.00"))

    def test_employees_cannot_run_payroll(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            generate_payroll(self.db, actor_for(self.employee), month=4, year=2026)
        self.assertApiError(ctx, "FORBIDDEN", 403)

    def test_period_validation(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            generate_payroll(self.db, actor_for(self.hr), month=13, year=2026)
        self.assertApiError(ctx, "INVALID_MONTH", 422)
        with self.assertRaises(ApiError) as ctx:
            generate_payroll(self.db, actor_for(self.hr), month=4, year=2026, employee_ids=[])
        self.assertApiError(ctx, "EMPLOYEE_IDS_REQUIRED", 422)


class PreviewTests(PayrollTestCase):
    def test_preview_does_not_persist(self) -> None:
        previews, failures = preview_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        self.assertEqual(failures, [])
        by_employee = {item.employee_id: item.to_dict() for item in previews}
        self.assertEqual(by_employee[self.employee.id]["net_salary"], Decimal("25700.00"))
        self.assertEqual(self.db.scalars(select(SalarySlip)).all(), [])


class LifecycleTests(PayrollTestCase):
    def test_paid_batch_freezes_attendance_and_slips(self) -> None:
        result = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        batch, locked = mark_payroll_paid(self.db, actor_for(self.hr), result.batch.id)

        self.assertEqual(batch.status, PayrollStatus.PAID)
        self.assertIsNotNone(batch.paid_at)
        self.assertEqual(locked, 3)
        records = self.db.scalars(select(AttendanceRecord).where(AttendanceRecord.employee_id == self.employee.id)).all()
        self.assertTrue(all(record.is_locked for record in records))
        for slip in result.slips:
            self.db.refresh(slip)
            self.assertEqual(slip.status, PayrollStatus.PAID)

        with self.assertRaises(ApiError) as ctx:
            mark_attendance(
                self.db,
                actor_for(self.hr),
                employee_id=self.employee.id,
                day=date(2026, 4, 6),
                check_in=datetime(2026, 4, 6, 9, 0, tzinfo=IST),
            )
        self.assertApiError(ctx, "ATTENDANCE_LOCKED", 409)

        with self.assertRaises(ApiError) as ctx:
            mark_payroll_paid(self.db, actor_for(self.hr), batch.id)
        self.assertApiError(ctx, "PAYROLL_ALREADY_PAID", 409)
        with self.assertRaises(ApiError) as ctx:
            cancel_payroll_batch(self.db, actor_for(self.hr), batch.id)
        self.assertApiError(ctx, "PAYROLL_ALREADY_PAID", 409)
        with self.assertRaises(ApiError) as ctx:
            generate_payroll(self.db, actor_for(self.hr), month=4, year=2026, employee_ids=[self.employee.id])
        self.assertApiError(ctx, "PAYROLL_ALREADY_PAID", 409)
        with self.assertRaises(ApiError) as ctx:
            update_salary_slip(self.db, actor_for(self.hr), result.slips[0].id, fields={"bonus": Decimal("1")})
        self.assertApiError(ctx, "SALARY_SLIP_PAID", 409)

    def test_cancel_releases_month_for_a_new_run(self) -> None:
        reimbursement = Reimbursement(
            employee_id=self.employee.id,
            amount=Decimal("500"),
            status=ReimbursementStatus.APPROVED,
        )
        self.db.add(reimbursement)
        self.db.commit()
        first = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)

        cancelled = cancel_payroll_batch(self.db, actor_for(self.hr), first.batch.id)
        self.assertEqual(cancelled.status, PayrollStatus.CANCELLED)
        self.assertEqual(cancelled.total_employees, 0)
        self.db.refresh(reimbursement)
        self.assertIsNone(reimbursement.payroll_batch_id)

        second = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        self.assertNotEqual(second.batch.id, first.batch.id)
        self.assertEqual(second.processed_count, 2)

    def test_manual_slip_correction_updates_batch_total(self) -> None:
        result = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        slip = self._slip(result, self.employee.id)
        updated = update_salary_slip(
            self.db,
            actor_for(self.hr),
            slip.id,
            fields={"bonus": Decimal("1000"), "tax": Decimal("100")},
        )
        self.assertEqual(updated.gross_salary, Decimal("31000.00"))
        self.assertEqual(updated.net_salary, Decimal("26600.00"))
        self.assertEqual(updated.deductions["tax"], "100.00")
        self.db.refresh(result.batch)
        self.assertEqual(result.batch.total_amount, Decimal("77000.00"))


class ReadTests(PayrollTestCase):
    def test_employee_sees_only_own_slips(self) -> None:
        generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        slips = list_slips(self.db, actor_for(self.employee))
        self.assertEqual([slip.employee_id for slip in slips], [self.employee.id])
        with self.assertRaises(ApiError) as ctx:
            list_slips(self.db, actor_for(self.employee), employee_id=self.hr.id)
        self.assertApiError(ctx, "FORBIDDEN", 403)

    def test_trend_lists_processed_batches_oldest_first(self) -> None:
        generate_payroll(self.db, actor_for(self.hr), month=3, year=2026)
        generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        trend = payroll_trend(self.db, actor_for(self.hr))
        self.assertEqual([(point["month"], point["year"]) for point in trend], [(3, 2026), (4, 2026)])
        self.assertEqual(trend[1]["total_amount"], Decimal("76100.00"))

    def test_xlsx_register(self) -> None:
        result = generate_payroll(self.db, actor_for(self.hr), month=4, year=2026)
        content = build_payroll_batch_xlsx_bytes(self.db, result.batch.id)
        self.assertTrue(content.startswith(b"PK"))

        sheet = load_workbook(BytesIO(content)).active
        self.assertEqual(sheet.title, "Payroll 2026-04")
        self.assertEqual(sheet["A1"].value, "Payroll Register 2026-04")
        codes = [sheet.cell(row=row, column=1).value for row in range(9, 11)]
        self.assertEqual(codes, ["E1", "HR1"])
        self.assertEqual(sheet.cell(row=11, column=1).value, "Total")
        self.assertEqual(sheet.cell(row=11, column=18).value, 76100.0)
