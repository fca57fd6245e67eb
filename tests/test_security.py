from __future__ import annotations

import unittest
from collections.abc import Generator
from unittest.mock import patch

from fastapi.testclient import TestClient

from hrms.db import get_db
from hrms.main import app
from hrms.models import EmployeeRole
from hrms.security import create_access_token
from hrms.settings import Settings
from tests.support import DatabaseTestCase, add_employee

TEST_SETTINGS = Settings(jwt_secret="test-secret-value-with-enough-length-123")


class BearerTokenTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.settings_patch = patch("hrms.security.get_settings", return_value=TEST_SETTINGS)
        self.settings_patch.start()
        self.hr = add_employee(self.db, "HR1", role=EmployeeRole.HR)
        self.employee = add_employee(self.db, "E1")

        def _override_get_db() -> Generator[object, None, None]:
            yield self.db

        app.dependency_overrides[get_db] = _override_get_db
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.settings_patch.stop()
        super().tearDown()

    def _headers(self, employee, role: str | None = None) -> dict[str, str]:  # type: ignore[no-untyped-def]
        token, _ = create_access_token(
            employee_id=employee.id,
            role=role or employee.role.value,
            full_name=employee.full_name,
        )
        return {"Authorization": f"Bearer {token}"}

    def test_valid_token_resolves_actor(self) -> None:
        response = self.client.get("/api/leaves", headers=self._headers(self.employee))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])

    def test_missing_token_is_rejected(self) -> None:
        response = self.client.get("/api/leaves")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")

    def test_tampered_token_is_rejected(self) -> None:
        headers = self._headers(self.employee)
        headers["Authorization"] += "x"

        response = self.client.get("/api/leaves", headers=headers)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["category"], "UNAUTHENTICATED")

    def test_stale_role_claim_is_rejected(self) -> None:
        response = self.client.get("/api/leaves", headers=self._headers(self.employee, role="admin"))

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")

    def test_inactive_employee_is_blocked(self) -> None:
        self.employee.is_active = False
        self.db.commit()

        response = self.client.get("/api/leaves", headers=self._headers(self.employee))

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_INACTIVE")


if __name__ == "__main__":
    unittest.main()
