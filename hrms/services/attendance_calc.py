from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hrms.models import AttendanceStatus
from hrms.services.configuration import AttendanceConfig, parse_clock_time
from hrms.settings import get_settings

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class DayComputation:
    status: AttendanceStatus
    work_hours: Decimal | None
    overtime_minutes: int
    late_minutes: int


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or "Asia/Kolkata"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("Asia/Kolkata")


def normalize_ts(ts: datetime) -> datetime:
    # SQLite hands back naive values; they were written as UTC.
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def local_now() -> datetime:
    return datetime.now(timezone.utc).astimezone(attendance_timezone())


def local_today() -> date:
    return local_now().date()


def is_weekend(day: date, weekend_days: tuple[int, ...]) -> bool:
    return day.weekday() in weekend_days


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, days_in_month(year, month))


def iter_days(start: date, end: date):
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def count_leave_days(start: date, end: date, weekend_days: tuple[int, ...]) -> int:
    """Working days in an inclusive range. Holidays are counted as working days."""
    return sum(1 for day in iter_days(start, end) if not is_weekend(day, weekend_days))


def calculate_work_hours(check_in: datetime, check_out: datetime) -> Decimal:
    seconds = (normalize_ts(check_out) - normalize_ts(check_in)).total_seconds()
    if seconds < 0:
        # Overnight shift: checkout rolled past midnight.
        seconds += 24 * 3600
    hours = Decimal(str(seconds)) / Decimal(3600)
    return hours.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def classify_hours(hours: Decimal, *, standard_work_hours: Decimal, half_day_threshold: Decimal) -> AttendanceStatus:
    if hours < half_day_threshold:
        return AttendanceStatus.ABSENT
    if hours < standard_work_hours:
        return AttendanceStatus.HALF_DAY
    return AttendanceStatus.PRESENT


def calculate_late_minutes(check_in: datetime, config: AttendanceConfig) -> int:
    tz = attendance_timezone()
    local_check_in = normalize_ts(check_in).astimezone(tz)
    shift_start = datetime.combine(local_check_in.date(), parse_clock_time(config.shift_start_time), tzinfo=tz)
    late_seconds = (local_check_in - shift_start).total_seconds() - config.late_grace_minutes * 60
    if late_seconds <= 0:
        return 0
    return int(late_seconds // 60)


def calculate_overtime_minutes(work_hours: Decimal, config: AttendanceConfig) -> int:
    extra = (work_hours - config.standard_work_hours) * 60
    if extra <= 0:
        return 0
    return int(extra.to_integral_value(rounding=ROUND_HALF_UP))


def determine_day(
    *,
    day: date,
    check_in: datetime | None,
    check_out: datetime | None,
    explicit_status: AttendanceStatus | None,
    config: AttendanceConfig,
) -> DayComputation:
    work_hours: Decimal | None = None
    overtime_minutes = 0
    late_minutes = 0

    if check_in is not None:
        late_minutes = calculate_late_minutes(check_in, config)

    if check_in is not None and check_out is not None:
        work_hours = calculate_work_hours(check_in, check_out)
        overtime_minutes = calculate_overtime_minutes(work_hours, config)
        status = classify_hours(
            work_hours,
            standard_work_hours=config.standard_work_hours,
            half_day_threshold=config.half_day_threshold,
        )
    elif check_in is not None:
        # Provisional until a checkout arrives or the half-day pass runs.
        status = AttendanceStatus.PRESENT
    elif is_weekend(day, config.weekend_days):
        status = AttendanceStatus.WEEKEND
    else:
        status = AttendanceStatus.ABSENT

    if explicit_status is not None:
        status = explicit_status

    return DayComputation(
        status=status,
        work_hours=work_hours,
        overtime_minutes=overtime_minutes,
        late_minutes=late_minutes,
    )


def is_past_half_day_cutoff(day: date, now_local: datetime, config: AttendanceConfig) -> bool:
    """True when an open check-in on ``day`` should be closed as a half day."""
    if day < now_local.date():
        return True
    if day > now_local.date():
        return False
    cutoff = parse_clock_time(config.auto_half_day_cutoff_time)
    return now_local.time() >= cutoff


def to_utc_input(ts: datetime | None) -> datetime | None:
    """Caller timestamps without an offset are wall-clock times in the attendance zone."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=attendance_timezone()).astimezone(timezone.utc)
    return ts.astimezone(timezone.utc)
