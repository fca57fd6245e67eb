from __future__ import annotations

import tempfile
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine, select, text

from hrms.errors import ApiError
from hrms.models import (
    AttendanceRecord,
    AttendanceSource,
    AttendanceStatus,
    PunchDirection,
    PunchStatus,
    RawPunch,
)
from hrms.services.configuration import BiometricConfig
from hrms.services.punches import (
    CsvPunchSource,
    InlinePunchSource,
    SqlPunchSource,
    build_punch_source,
    fetch_from_source,
    ingest_punches,
    ingested_high_water_mark,
    make_punch,
    process_pending_punches,
    validate_punch_source,
)
from tests.support import DatabaseTestCase, add_employee

IST = ZoneInfo("Asia/Kolkata")
MONDAY = date(2026, 3, 2)


def _punch(biometric_id: str, hour: int, minute: int = 0, device_ip: str = "10.0.0.5", direction: str | None = None):  # type: ignore[no-untyped-def]
    return make_punch(biometric_id, datetime(2026, 3, 2, hour, minute, tzinfo=IST), device_ip, direction)


class MakePunchTests(DatabaseTestCase):
    def test_naive_times_are_local_and_stored_as_utc(self) -> None:
        punch = make_punch(" 101 ", "2026-03-02T09:30:00", None, "in")
        self.assertEqual(punch.biometric_id, "101")
        self.assertEqual(punch.punch_time, datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc))
        self.assertEqual(punch.device_ip, "")
        self.assertEqual(punch.direction, PunchDirection.IN)

    def test_missing_identifier_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            make_punch("", "2026-03-02T09:30:00")


class IngestTests(DatabaseTestCase):
    def test_duplicates_are_skipped_within_and_across_runs(self) -> None:
        punches = [_punch("B1", 9, 10), _punch("B1", 18, 20), _punch("B1", 9, 10)]
        result = ingest_punches(self.db, InlinePunchSource(punches))
        self.assertEqual((result.fetched_count, result.inserted_count, result.skipped_count), (3, 2, 1))

        again = ingest_punches(self.db, InlinePunchSource(punches))
        self.assertEqual((again.inserted_count, again.skipped_count), (0, 3))
        self.assertEqual(len(self.db.scalars(select(RawPunch)).all()), 2)

    def test_same_instant_from_another_device_is_distinct(self) -> None:
        result = ingest_punches(
            self.db,
            InlinePunchSource([_punch("B1", 9, 10, "10.0.0.5"), _punch("B1", 9, 10, "10.0.0.6")]),
        )
        self.assertEqual(result.inserted_count, 2)

    def test_dry_run_writes_nothing(self) -> None:
        result = ingest_punches(self.db, InlinePunchSource([_punch("B1", 9), _punch("B2", 9)]), dry_run=True, sample_size=1)
        self.assertTrue(result.dry_run)
        self.assertEqual(result.inserted_count, 2)
        self.assertEqual(len(result.sample_rows), 1)
        self.assertEqual(self.db.scalars(select(RawPunch)).all(), [])


class CsvSourceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "punches.csv"

    def tearDown(self) -> None:
        self._tmp.cleanup()
        super().tearDown()

    def test_rows_are_parsed_and_bad_rows_skipped(self) -> None:
        self.path.write_text(
            "biometric_id,punch_time,device_ip,direction\n"
            "B1,2026-03-02 09:10:00,10.0.0.5,IN\n"
            ",2026-03-02 09:11:00,10.0.0.5,IN\n"
            "B1,not-a-time,10.0.0.5,OUT\n"
            "B1,2026-03-02 18:20:00,10.0.0.5,OUT\n",
            encoding="utf-8",
        )
        punches = CsvPunchSource(self.path).fetch()
        self.assertEqual([punch.direction for punch in punches], [PunchDirection.IN, PunchDirection.OUT])
        self.assertEqual(len(CsvPunchSource(self.path).fetch(limit=1)), 1)

    def test_unreadable_source_is_an_upstream_error(self) -> None:
        self.path.write_text("user,when\nB1,2026-03-02 09:10:00\n", encoding="utf-8")
        with self.assertRaises(ApiError) as ctx:
            fetch_from_source(CsvPunchSource(self.path))
        self.assertApiError(ctx, "PUNCH_SOURCE_UNAVAILABLE", 502)
        self.assertTrue(ctx.exception.details["retryable"])

        with self.assertRaises(ApiError) as ctx:
            fetch_from_source(CsvPunchSource(Path(self._tmp.name) / "missing.csv"))
        self.assertApiError(ctx, "PUNCH_SOURCE_UNAVAILABLE", 502)

    def test_source_factory(self) -> None:
        self.assertIsInstance(build_punch_source(BiometricConfig(source_type="CSV", csv_path=str(self.path))), CsvPunchSource)
        with self.assertRaises(ApiError) as ctx:
            build_punch_source(BiometricConfig(source_type="CSV"))
        self.assertApiError(ctx, "PUNCH_SOURCE_INCOMPLETE", 422)
        with self.assertRaises(ApiError) as ctx:
            build_punch_source(BiometricConfig(source_type="DIRECT_DEVICE"))
        self.assertApiError(ctx, "PUNCH_SOURCE_UNSUPPORTED", 422)

    def test_validation_report(self) -> None:
        add_employee(self.db, "E1", biometric_id="B1")
        self.path.write_text(
            "biometric_id,punch_time\nB1,2026-03-02 09:10:00\nB9,2026-03-02 09:12:00\n",
            encoding="utf-8",
        )
        report = validate_punch_source(self.db, BiometricConfig(source_type="CSV", csv_path=str(self.path)))
        self.assertEqual(report["checks"]["connection"], "PASS")
        self.assertEqual(report["checks"]["sample_read"], "PASS")
        self.assertEqual(report["checks"]["mapping_check"], "WARN")
        self.assertEqual(report["checks"]["time_sync"], "PASS")
        self.assertEqual(report["overall_status"], "WARN")
        self.assertTrue(report["success"])
        self.assertEqual(len(report["sample_data"]), 2)

    def test_validation_report_fails_without_source(self) -> None:
        report = validate_punch_source(self.db, BiometricConfig(source_type="CSV"))
        self.assertEqual(report["overall_status"], "FAIL")
        self.assertFalse(report["success"])


class DeviceDatabaseSourceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.url = f"sqlite:///{Path(self._tmp.name) / 'essl.db'}"
        self.config = BiometricConfig(source_type="ESSL_DB", essl_db_url=self.url)
        self._device_logs(
            ("B1", "2026-03-02 09:10:00", "IN"),
            ("B1", "2026-03-02 18:20:00", "OUT"),
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()
        super().tearDown()

    def _device_logs(self, *rows: tuple[str, str, str]) -> None:
        engine = create_engine(self.url)
        try:
            with engine.begin() as connection:
                connection.execute(
                    text(
                        "CREATE TABLE IF NOT EXISTS DeviceLogs "
                        "(UserId TEXT, LogDate TEXT, DeviceIP TEXT, Direction TEXT)"
                    )
                )
                for user_id, log_date, direction in rows:
                    connection.execute(
                        text("INSERT INTO DeviceLogs VALUES (:user_id, :log_date, '10.0.0.5', :direction)"),
                        {"user_id": user_id, "log_date": log_date, "direction": direction},
                    )
        finally:
            engine.dispose()

    def test_repeat_ingest_reads_from_the_high_water_mark(self) -> None:
        self.assertIsNone(ingested_high_water_mark(self.db))
        first = ingest_punches(self.db, build_punch_source(self.config, since=ingested_high_water_mark(self.db)))
        self.assertEqual((first.fetched_count, first.inserted_count), (2, 2))

        mark = ingested_high_water_mark(self.db)
        self.assertEqual(mark, datetime(2026, 3, 2, 18, 15))

        self._device_logs(("B1", "2026-03-01 09:00:00", "IN"), ("B1", "2026-03-03 09:05:00", "IN"))
        source = build_punch_source(self.config, since=mark)
        self.assertIsInstance(source, SqlPunchSource)
        second = ingest_punches(self.db, source)

        self.assertEqual((second.fetched_count, second.inserted_count, second.skipped_count), (2, 1, 1))
        self.assertEqual(len(self.db.scalars(select(RawPunch)).all()), 3)


class ProcessTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.employee = add_employee(self.db, "E1", biometric_id="B1")

    def _pending(self, *punches) -> None:  # type: ignore[no-untyped-def]
        ingest_punches(self.db, InlinePunchSource(list(punches)))

    def test_first_and_last_punch_become_the_day(self) -> None:
        self._pending(_punch("B1", 9, 10), _punch("B1", 13, 0), _punch("B1", 18, 20), _punch("B9", 9, 0))
        outcome = process_pending_punches(self.db, MONDAY)
        self.assertEqual(outcome, {"processed": 3, "failed": 1, "employees": 2})

        record = self.db.scalar(select(AttendanceRecord).where(AttendanceRecord.employee_id == self.employee.id))
        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertEqual(record.work_hours, Decimal("9.17"))
        self.assertEqual(record.source, AttendanceSource.BIOMETRIC)

        orphan = self.db.scalar(select(RawPunch).where(RawPunch.biometric_id == "B9"))
        self.assertEqual(orphan.process_status, PunchStatus.FAILED)
        self.assertIn("B9", orphan.error_log)

        self.assertEqual(process_pending_punches(self.db, MONDAY), {"processed": 0, "failed": 0, "employees": 0})

    def test_single_punch_leaves_day_open(self) -> None:
        self._pending(_punch("B1", 9, 0))
        process_pending_punches(self.db, MONDAY)
        record = self.db.scalar(select(AttendanceRecord).where(AttendanceRecord.employee_id == self.employee.id))
        self.assertIsNone(record.check_out)
        self.assertEqual(record.status, AttendanceStatus.PRESENT)

    def test_leave_status_survives_punches(self) -> None:
        self.db.add(
            AttendanceRecord(
                employee_id=self.employee.id,
                day_date=MONDAY,
                status=AttendanceStatus.ON_LEAVE,
                source=AttendanceSource.ADJUSTED,
            )
        )
        self.db.commit()
        self._pending(_punch("B1", 9, 0), _punch("B1", 12, 0))
        process_pending_punches(self.db, MONDAY)
        record = self.db.scalar(select(AttendanceRecord).where(AttendanceRecord.employee_id == self.employee.id))
        self.assertEqual(record.status, AttendanceStatus.ON_LEAVE)
        self.assertEqual(record.work_hours, Decimal("3.00"))

    def test_locked_day_marks_punches_failed(self) -> None:
        self.db.add(
            AttendanceRecord(
                employee_id=self.employee.id,
                day_date=MONDAY,
                status=AttendanceStatus.ABSENT,
                source=AttendanceSource.MANUAL,
                is_locked=True,
            )
        )
        self.db.commit()
        self._pending(_punch("B1", 9, 0), _punch("B1", 18, 0))
        outcome = process_pending_punches(self.db, MONDAY)
        self.assertEqual(outcome["failed"], 2)
        statuses = {punch.process_status for punch in self.db.scalars(select(RawPunch)).all()}
        self.assertEqual(statuses, {PunchStatus.FAILED})
