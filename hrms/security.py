from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from hrms.audit import AuditActorType
from hrms.db import get_db
from hrms.errors import ApiError
from hrms.models import Employee, EmployeeRole
from hrms.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller resolved from the employee directory."""

    employee_id: int
    role: EmployeeRole
    full_name: str | None = None

    @property
    def is_privileged(self) -> bool:
        return self.role in {EmployeeRole.HR, EmployeeRole.ADMIN}

    @property
    def audit_actor_type(self) -> AuditActorType:
        return AuditActorType(self.role.value.upper())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(*, employee_id: int, role: str, full_name: str | None = None) -> tuple[str, int]:
    """Mint an access token for operator tooling and tests. Login lives elsewhere."""
    settings = get_settings()
    now = _utcnow()
    claims: dict[str, Any] = {
        "sub": str(employee_id),
        "role": role,
        "full_name": full_name,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_minutes)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, settings.access_token_minutes * 60


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    return payload


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)
    employee = db.get(Employee, int(payload["sub"]))
    if employee is None or not employee.is_active:
        raise ApiError(status_code=403, code="EMPLOYEE_INACTIVE", message="Employee account is inactive.")

    # The directory is authoritative for the role; the claim only has to agree.
    if payload.get("role") != employee.role.value:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token role is stale.")

    actor = Actor(employee_id=employee.id, role=employee.role, full_name=employee.full_name)
    request.state.actor = employee.role.value
    request.state.actor_id = str(employee.id)
    return actor
