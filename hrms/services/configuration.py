from __future__ import annotations

import copy
import logging
import threading
from datetime import time
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from hrms.errors import validation_error
from hrms.models import SystemConfiguration

logger = logging.getLogger("hrms.configuration")

CONFIG_KEY = "core"
CONFIG_SCHEMA_VERSION = 2

LEAVE_TYPE_ALIASES = {"privilege": "earned"}

_LOCK = threading.Lock()
_CURRENT: CoreConfig | None = None


def parse_clock_time(value: str) -> time:
    hour_text, _, minute_text = value.partition(":")
    return time(hour=int(hour_text), minute=int(minute_text))


def _validate_clock_text(value: str) -> str:
    text = str(value).strip()
    parts = text.split(":")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ValueError("time must use HH:MM format")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError("time must use HH:MM format")
    return f"{hour:02d}:{minute:02d}"


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class AttendanceConfig(_Section):
    standard_work_hours: Decimal = Decimal("8.00")
    half_day_threshold: Decimal = Decimal("4.00")
    allow_self_clock_in: bool = True
    auto_half_day_cutoff_time: str = "19:00"
    absence_sweep_cutoff_time: str = "17:00"
    shift_start_time: str = "09:30"
    late_grace_minutes: int = Field(default=0, ge=0, le=720)
    weekend_days: tuple[int, ...] = (5, 6)

    @field_validator("standard_work_hours", "half_day_threshold")
    @classmethod
    def _hours_in_day(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 24:
            raise ValueError("hours must be between 0 and 24")
        return value

    @field_validator("auto_half_day_cutoff_time", "absence_sweep_cutoff_time", "shift_start_time")
    @classmethod
    def _clock_text(cls, value: str) -> str:
        return _validate_clock_text(value)

    @field_validator("weekend_days")
    @classmethod
    def _weekday_numbers(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("weekend days use 0 (Monday) to 6 (Sunday)")
        return tuple(sorted(set(value)))

    @model_validator(mode="after")
    def _threshold_not_above_standard(self) -> AttendanceConfig:
        if self.half_day_threshold > self.standard_work_hours:
            raise ValueError("half_day_threshold cannot exceed standard_work_hours")
        return self


class LeaveConfig(_Section):
    casual: int = Field(default=12, ge=0)
    sick: int = Field(default=12, ge=0)
    earned: int = Field(default=15, ge=0)
    fallback_limit: int = Field(default=15, ge=0)

    def legacy_limit(self, leave_type: str) -> int | None:
        key = LEAVE_TYPE_ALIASES.get(leave_type, leave_type)
        if key in {"casual", "sick", "earned"}:
            return int(getattr(self, key))
        return None


class PayrollConfig(_Section):
    basic_percentage: Decimal = Field(default=Decimal("50"), ge=0, le=100)
    hra_percentage: Decimal = Field(default=Decimal("30"), ge=0, le=100)
    default_pf_percentage: Decimal = Field(default=Decimal("12"), ge=0, le=100)
    default_esi_percentage: Decimal = Field(default=Decimal("0.75"), ge=0, le=100)
    esi_wage_ceiling: Decimal = Field(default=Decimal("21000"), ge=0)
    tax_threshold: Decimal = Field(default=Decimal("50000"), ge=0)
    tax_rate_percentage: Decimal = Field(default=Decimal("10"), ge=0, le=100)
    default_absent_deduction_type: Literal["percentage", "amount"] = "percentage"
    default_absent_deduction_value: Decimal = Field(default=Decimal("100"), ge=0)

    @model_validator(mode="after")
    def _split_fits_salary(self) -> PayrollConfig:
        if self.basic_percentage + self.hra_percentage > 100:
            raise ValueError("basic_percentage + hra_percentage cannot exceed 100")
        return self


class BiometricColumns(_Section):
    biometric_id: str = "UserId"
    punch_time: str = "LogDate"
    device_ip: str = "DeviceIP"
    direction: str = "Direction"


class BiometricConfig(_Section):
    source_type: Literal["CSV", "ESSL_DB", "DIRECT_DEVICE"] = "CSV"
    csv_path: str | None = None
    essl_db_url: str | None = None
    essl_table: str = "DeviceLogs"
    columns: BiometricColumns = BiometricColumns()
    sample_size: int = Field(default=5, ge=1, le=100)


class CoreConfig(_Section):
    version: int = CONFIG_SCHEMA_VERSION
    attendance: AttendanceConfig = AttendanceConfig()
    leave: LeaveConfig = LeaveConfig()
    payroll: PayrollConfig = PayrollConfig()
    biometric: BiometricConfig = BiometricConfig()

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def _migrate_v1_to_v2(payload: dict[str, Any]) -> dict[str, Any]:
    """Reshape the legacy flat settings blob into sections."""
    attendance: dict[str, Any] = {}
    for key in ("standard_work_hours", "half_day_threshold", "allow_self_clock_in"):
        if payload.get(key) is not None:
            attendance[key] = payload[key]

    leave: dict[str, Any] = {}
    for legacy_key, key in (("casual_leave", "casual"), ("sick_leave", "sick"), ("earned_leave", "earned")):
        if payload.get(legacy_key) is not None:
            leave[key] = payload[legacy_key]

    payroll: dict[str, Any] = {}
    for key in (
        "default_pf_percentage",
        "default_esi_percentage",
        "default_absent_deduction_type",
        "default_absent_deduction_value",
    ):
        if payload.get(key) is not None:
            payroll[key] = payload[key]

    biometric: dict[str, Any] = {}
    legacy_biometric = payload.get("attendance_config")
    if isinstance(legacy_biometric, dict):
        if legacy_biometric.get("source_type"):
            biometric["source_type"] = legacy_biometric["source_type"]
        essl = legacy_biometric.get("essl_db")
        if isinstance(essl, dict):
            if essl.get("url"):
                biometric["essl_db_url"] = essl["url"]
            if essl.get("table"):
                biometric["essl_table"] = essl["table"]

    return {
        "version": 2,
        "attendance": attendance,
        "leave": leave,
        "payroll": payroll,
        "biometric": biometric,
    }


_MIGRATIONS = {
    1: _migrate_v1_to_v2,
}


def migrate_payload(payload: dict[str, Any], version: int | None = None) -> dict[str, Any]:
    current = copy.deepcopy(payload)
    current_version = int(version if version is not None else current.get("version", 1))
    if current_version > CONFIG_SCHEMA_VERSION:
        raise ValueError(f"Unsupported configuration version: {current_version}")
    while current_version < CONFIG_SCHEMA_VERSION:
        current = _MIGRATIONS[current_version](current)
        current_version += 1
    current["version"] = CONFIG_SCHEMA_VERSION
    return current


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _set_current(config: CoreConfig | None) -> None:
    global _CURRENT
    with _LOCK:
        _CURRENT = config


def _get_row(db: Session) -> SystemConfiguration | None:
    return db.scalar(select(SystemConfiguration).where(SystemConfiguration.key == CONFIG_KEY))


def initialize_core_config(db: Session) -> CoreConfig:
    """Load, migrate or seed the stored configuration and publish it in-process."""
    row = _get_row(db)
    if row is None:
        config = CoreConfig()
        db.add(
            SystemConfiguration(
                key=CONFIG_KEY,
                version=CONFIG_SCHEMA_VERSION,
                payload=config.to_payload(),
                updated_by="system",
            )
        )
        db.commit()
        logger.info("core_config_seeded", extra={"version": CONFIG_SCHEMA_VERSION})
    else:
        stored_version = int(row.version or 1)
        try:
            config = CoreConfig.model_validate(migrate_payload(dict(row.payload or {}), stored_version))
        except (ValueError, ValidationError) as exc:
            raise RuntimeError(f"Stored configuration is invalid: {exc}") from exc
        if stored_version != CONFIG_SCHEMA_VERSION:
            row.version = CONFIG_SCHEMA_VERSION
            row.payload = config.to_payload()
            row.updated_by = "system"
            db.commit()
            logger.info(
                "core_config_migrated",
                extra={"from_version": stored_version, "to_version": CONFIG_SCHEMA_VERSION},
            )

    _set_current(config)
    return config


def get_core_config() -> CoreConfig:
    config = _CURRENT
    if config is None:
        raise RuntimeError("Core configuration is not initialized; call initialize_core_config() at startup.")
    return config


def reset_core_config() -> None:
    _set_current(None)


def update_core_config(db: Session, patch: dict[str, Any], *, actor: str) -> CoreConfig:
    current = get_core_config()
    clean_patch = {key: value for key, value in patch.items() if key != "version"}
    merged = _deep_merge(current.to_payload(), clean_patch)
    try:
        config = CoreConfig.model_validate(merged)
    except ValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in item["loc"]), "msg": item["msg"]}
            for item in exc.errors()
        ]
        raise validation_error("INVALID_CONFIGURATION", "Configuration update is invalid.", errors=errors) from exc

    row = _get_row(db)
    if row is None:
        row = SystemConfiguration(key=CONFIG_KEY, version=CONFIG_SCHEMA_VERSION, payload={})
        db.add(row)
    row.version = CONFIG_SCHEMA_VERSION
    row.payload = config.to_payload()
    row.updated_by = actor
    db.commit()

    _set_current(config)
    logger.info("core_config_updated", extra={"actor": actor, "sections": sorted(clean_patch)})
    return config
