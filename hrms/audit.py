"""Audit event emission.

The core only emits audit events. Persisting them belongs to whatever sink the
host registers; by default events are written to the ``hrms.audit`` logger.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("hrms.audit")


class AuditActorType(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    HR = "HR"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class AuditEvent:
    ts_utc: datetime
    actor_type: AuditActorType
    actor_id: str
    action: str
    success: bool
    entity_type: str | None = None
    entity_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None


AuditSink = Callable[[AuditEvent], None]

_SINKS: list[AuditSink] = []


def register_audit_sink(sink: AuditSink) -> None:
    _SINKS.append(sink)


def clear_audit_sinks() -> None:
    _SINKS.clear()


def log_audit(
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    event = AuditEvent(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=ip,
        user_agent=user_agent,
        details=details or {},
        request_id=request_id,
    )

    for sink in list(_SINKS):
        try:
            sink(event)
        except Exception:
            logger.exception(
                "audit_sink_failed",
                extra={
                    "request_id": request_id,
                    "action": action,
                    "actor_id": actor_id,
                },
            )

    payload = asdict(event)
    payload["actor_type"] = actor_type.value
    payload.pop("ts_utc", None)
    logger.info("audit_event", extra=payload)
    return event
