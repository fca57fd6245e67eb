from __future__ import annotations

import enum
from typing import TYPE_CHECKING

from hrms.errors import forbidden
from hrms.models import Employee, EmployeeRole

if TYPE_CHECKING:
    from hrms.security import Actor
    from hrms.services.configuration import CoreConfig


class Relationship(str, enum.Enum):
    SELF = "SELF"
    MANAGER = "MANAGER"
    PEER_HR = "PEER_HR"
    OTHER = "OTHER"


class Decision(str, enum.Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    ALLOW_IF_SELF_CLOCK_IN = "ALLOW_IF_SELF_CLOCK_IN"


EMPLOYEE = EmployeeRole.EMPLOYEE
HR = EmployeeRole.HR
ADMIN = EmployeeRole.ADMIN

SELF = Relationship.SELF
MANAGER = Relationship.MANAGER
PEER_HR = Relationship.PEER_HR
OTHER = Relationship.OTHER

ALLOW = Decision.ALLOW
SELF_CLOCK_IN = Decision.ALLOW_IF_SELF_CLOCK_IN

_ALL_RELATIONSHIPS = (SELF, MANAGER, PEER_HR, OTHER)
_NOT_SELF = (MANAGER, PEER_HR, OTHER)


def _grant(role: EmployeeRole, relationships: tuple[Relationship, ...], decision: Decision = ALLOW):
    return {(role, relationship): decision for relationship in relationships}


def _rules(*grants: dict) -> dict[tuple[EmployeeRole, Relationship], Decision]:
    merged: dict[tuple[EmployeeRole, Relationship], Decision] = {}
    for grant in grants:
        merged.update(grant)
    return merged


# Anything not listed is denied. Subject-less operations are evaluated with OTHER.
POLICY: dict[str, dict[tuple[EmployeeRole, Relationship], Decision]] = {
    "attendance.read": _rules(
        _grant(EMPLOYEE, (SELF, MANAGER)),
        _grant(HR, _ALL_RELATIONSHIPS),
        _grant(ADMIN, _ALL_RELATIONSHIPS),
    ),
    "attendance.mark": _rules(
        _grant(EMPLOYEE, (SELF,), SELF_CLOCK_IN),
        _grant(HR, _NOT_SELF),
        _grant(ADMIN, _ALL_RELATIONSHIPS),
    ),
    "attendance.update": _rules(
        _grant(HR, _NOT_SELF),
        _grant(ADMIN, _ALL_RELATIONSHIPS),
    ),
    "attendance.lock": _rules(
        _grant(HR, (OTHER,)),
        _grant(ADMIN, (OTHER,)),
    ),
    "leave.read": _rules(
        _grant(EMPLOYEE, (SELF, MANAGER)),
        _grant(HR, _ALL_RELATIONSHIPS),
        _grant(ADMIN, _ALL_RELATIONSHIPS),
    ),
    "leave.submit": _rules(
        _grant(EMPLOYEE, (SELF,)),
        _grant(HR, (SELF,)),
        _grant(ADMIN, (SELF,)),
    ),
    "leave.edit": _rules(
        _grant(EMPLOYEE, (SELF,)),
        _grant(HR, (SELF,)),
        _grant(ADMIN, (SELF,)),
    ),
    "leave.delete": _rules(
        _grant(EMPLOYEE, (SELF,)),
        _grant(HR, (SELF,)),
        _grant(ADMIN, _ALL_RELATIONSHIPS),
    ),
    "leave.withdraw": _rules(
        _grant(EMPLOYEE, (SELF,)),
        _grant(HR, (SELF,)),
        _grant(ADMIN, (SELF,)),
    ),
    "leave.cancel": _rules(
        _grant(EMPLOYEE, (SELF,)),
        _grant(HR, _ALL_RELATIONSHIPS),
        _grant(ADMIN, _ALL_RELATIONSHIPS),
    ),
    "leave.manager_decision": _rules(
        _grant(EMPLOYEE, (MANAGER,)),
        _grant(HR, (MANAGER,)),
        _grant(ADMIN, (MANAGER,)),
    ),
    "leave.final_decision": _rules(
        _grant(HR, (MANAGER, OTHER)),
        _grant(ADMIN, _NOT_SELF),
    ),
    "leave.configure": _rules(
        _grant(HR, (OTHER,)),
        _grant(ADMIN, (OTHER,)),
    ),
    "regularization.request": _rules(
        _grant(EMPLOYEE, (SELF,)),
        _grant(HR, (SELF,)),
        _grant(ADMIN, (SELF,)),
    ),
    "regularization.read": _rules(
        _grant(EMPLOYEE, (SELF,)),
        _grant(HR, _ALL_RELATIONSHIPS),
        _grant(ADMIN, _ALL_RELATIONSHIPS),
    ),
    "regularization.process": _rules(
        _grant(HR, _NOT_SELF),
        _grant(ADMIN, _NOT_SELF),
    ),
    "payroll.read": _rules(
        _grant(EMPLOYEE, (SELF,)),
        _grant(HR, _ALL_RELATIONSHIPS),
        _grant(ADMIN, _ALL_RELATIONSHIPS),
    ),
    "payroll.manage": _rules(
        _grant(HR, (OTHER,)),
        _grant(ADMIN, (OTHER,)),
    ),
    "punches.ingest": _rules(
        _grant(HR, (OTHER,)),
        _grant(ADMIN, (OTHER,)),
    ),
    "maintenance.run": _rules(
        _grant(ADMIN, (OTHER,)),
    ),
    "config.update": _rules(
        _grant(ADMIN, (OTHER,)),
    ),
}


def relationship_between(actor: Actor, subject: Employee | None) -> Relationship:
    if subject is None:
        return OTHER
    if subject.id == actor.employee_id:
        return SELF
    # HR acting on another HR account is never treated as a manager relationship.
    if actor.role == HR and subject.role == HR:
        return PEER_HR
    if subject.reporting_manager_id == actor.employee_id:
        return MANAGER
    return OTHER


def _lookup(operation: str, actor: Actor, relationship: Relationship) -> Decision:
    rules = POLICY.get(operation)
    if rules is None:
        raise KeyError(f"Unknown policy operation: {operation}")
    return rules.get((actor.role, relationship), Decision.DENY)


def can(operation: str, actor: Actor, subject: Employee | None, config: CoreConfig) -> bool:
    decision = _lookup(operation, actor, relationship_between(actor, subject))
    if decision == SELF_CLOCK_IN:
        return config.attendance.allow_self_clock_in
    return decision == ALLOW


def authorize(operation: str, actor: Actor, subject: Employee | None, config: CoreConfig) -> Relationship:
    """Evaluate the policy table once and raise FORBIDDEN on deny."""
    relationship = relationship_between(actor, subject)
    decision = _lookup(operation, actor, relationship)

    if decision == SELF_CLOCK_IN:
        if config.attendance.allow_self_clock_in:
            return relationship
        raise forbidden(
            "SELF_CLOCK_IN_DISABLED",
            "Self clock-in is disabled.",
            operation=operation,
        )
    if decision == ALLOW:
        return relationship
    raise forbidden(
        "FORBIDDEN",
        "You are not allowed to perform this action.",
        operation=operation,
        role=actor.role.value,
        relationship=relationship.value,
    )
