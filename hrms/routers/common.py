from typing import Any

from fastapi import Request

from hrms.audit import log_audit
from hrms.security import Actor


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def audit_action(
    request: Request,
    actor: Actor,
    action: str,
    *,
    entity_type: str | None = None,
    entity_id: Any = None,
    details: dict[str, Any] | None = None,
) -> None:
    log_audit(
        actor_type=actor.audit_actor_type,
        actor_id=str(actor.employee_id),
        action=action,
        success=True,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )
