from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from hrms import models  # noqa: F401
from hrms.db import Base
from hrms.models import Employee, EmployeeRole
from hrms.security import Actor
from hrms.services.configuration import initialize_core_config, reset_core_config


def make_engine() -> Engine:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


def add_employee(
    db: Session,
    code: str,
    *,
    role: EmployeeRole = EmployeeRole.EMPLOYEE,
    salary: str = "30000",
    manager: Employee | None = None,
    biometric_id: str | None = None,
    is_active: bool = True,
) -> Employee:
    employee = Employee(
        employee_code=code,
        full_name=f"Employee {code}",
        role=role,
        is_active=is_active,
        biometric_id=biometric_id,
        reporting_manager_id=manager.id if manager is not None else None,
        salary=Decimal(salary),
    )
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee


def actor_for(employee: Employee) -> Actor:
    return Actor(employee_id=employee.id, role=employee.role, full_name=employee.full_name)


class DatabaseTestCase(unittest.TestCase):
    """Fresh in-memory database and seeded core configuration per test."""

    def setUp(self) -> None:
        self.engine = make_engine()
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self.db = self.session_factory()
        self.config = initialize_core_config(self.db)

    def tearDown(self) -> None:
        self.db.close()
        reset_core_config()
        self.engine.dispose()

    def assertApiError(self, ctx, code: str, status_code: int | None = None) -> None:  # type: ignore[no-untyped-def]
        self.assertEqual(ctx.exception.code, code)
        if status_code is not None:
            self.assertEqual(ctx.exception.status_code, status_code)
