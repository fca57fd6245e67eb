from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from hrms.errors import ApiError
from hrms.models import (
    AttendanceSource,
    AttendanceStatus,
    EmployeeRole,
    RegularizationStatus,
    RegularizationType,
)
from hrms.services.attendance import get_attendance_record, lock_attendance, mark_attendance
from hrms.services.regularization import (
    list_regularizations,
    process_regularization,
    request_regularization,
)
from tests.support import DatabaseTestCase, actor_for, add_employee

IST = ZoneInfo("Asia/Kolkata")
MONDAY = date(2026, 3, 2)


class RegularizationTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.hr = add_employee(self.db, "HR1", role=EmployeeRole.HR)
        self.employee = add_employee(self.db, "E1")
        mark_attendance(
            self.db,
            actor_for(self.hr),
            employee_id=self.employee.id,
            day=MONDAY,
            check_in=datetime(2026, 3, 2, 9, 15, tzinfo=IST),
        )

    def _request(self, **overrides):  # type: ignore[no-untyped-def]
        values = {
            "attendance_date": MONDAY,
            "request_type": RegularizationType.CHECK_OUT,
            "reason": "Forgot to punch out",
            "new_check_out": datetime(2026, 3, 2, 18, 15, tzinfo=IST),
        }
        values.update(overrides)
        return request_regularization(self.db, actor_for(self.employee), **values)

    def test_approved_check_out_recomputes_the_day(self) -> None:
        item = self._request()
        self.assertEqual(item.status, RegularizationStatus.PENDING)

        item = process_regularization(self.db, actor_for(self.hr), item.id, approve=True, remarks="ok")
        self.assertEqual(item.status, RegularizationStatus.APPROVED)
        self.assertEqual(item.approved_by, self.hr.id)

        record = get_attendance_record(self.db, self.employee.id, MONDAY)
        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertEqual(record.work_hours, Decimal("9.00"))
        self.assertEqual(record.source, AttendanceSource.ADJUSTED)
        self.assertEqual(record.edited_by, self.hr.id)

    def test_status_change_creates_missing_row(self) -> None:
        tuesday = date(2026, 3, 3)
        item = self._request(
            attendance_date=tuesday,
            request_type=RegularizationType.STATUS_CHANGE,
            new_check_out=None,
            new_status=AttendanceStatus.PRESENT,
            reason="Client visit all day",
        )
        process_regularization(self.db, actor_for(self.hr), item.id, approve=True)
        record = get_attendance_record(self.db, self.employee.id, tuesday)
        self.assertIsNotNone(record)
        self.assertEqual(record.status, AttendanceStatus.PRESENT)

    def test_rejection_leaves_attendance_untouched(self) -> None:
        item = self._request()
        item = process_regularization(self.db, actor_for(self.hr), item.id, approve=False, remarks="No proof")
        self.assertEqual(item.status, RegularizationStatus.REJECTED)
        record = get_attendance_record(self.db, self.employee.id, MONDAY)
        self.assertIsNone(record.check_out)

    def test_payload_must_match_request_type(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self._request(request_type=RegularizationType.BOTH)
        self.assertApiError(ctx, "NEW_CHECK_IN_REQUIRED", 422)

        with self.assertRaises(ApiError) as ctx:
            self._request(request_type=RegularizationType.STATUS_CHANGE, new_status=AttendanceStatus.ON_LEAVE)
        self.assertApiError(ctx, "INVALID_NEW_STATUS", 422)

    def test_future_dates_are_rejected(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self._request(attendance_date=date(2099, 1, 5))
        self.assertApiError(ctx, "FUTURE_DATE", 422)

    def test_one_pending_request_per_day(self) -> None:
        self._request()
        with self.assertRaises(ApiError) as ctx:
            self._request()
        self.assertApiError(ctx, "REGULARIZATION_PENDING", 409)

    def test_processing_rules(self) -> None:
        item = self._request()
        with self.assertRaises(ApiError) as ctx:
            process_regularization(self.db, actor_for(self.employee), item.id, approve=True)
        self.assertApiError(ctx, "FORBIDDEN", 403)

        process_regularization(self.db, actor_for(self.hr), item.id, approve=True)
        with self.assertRaises(ApiError) as ctx:
            process_regularization(self.db, actor_for(self.hr), item.id, approve=False)
        self.assertApiError(ctx, "REGULARIZATION_ALREADY_PROCESSED", 409)

    def test_locked_day_cannot_be_regularized(self) -> None:
        lock_attendance(self.db, actor_for(self.hr), month=3, year=2026)
        with self.assertRaises(ApiError) as ctx:
            self._request()
        self.assertApiError(ctx, "ATTENDANCE_LOCKED", 409)

    def test_listing_is_scoped_for_employees(self) -> None:
        mine = self._request()
        other = add_employee(self.db, "E2")
        request_regularization(
            self.db,
            actor_for(other),
            attendance_date=MONDAY,
            request_type=RegularizationType.STATUS_CHANGE,
            new_status=AttendanceStatus.PRESENT,
            reason="Worked from site",
        )
        self.assertEqual([item.id for item in list_regularizations(self.db, actor_for(self.employee))], [mine.id])
        self.assertEqual(len(list_regularizations(self.db, actor_for(self.hr), status=RegularizationStatus.PENDING)), 2)
