from __future__ import annotations

import json
import logging
import unittest
from decimal import Decimal

from hrms.logging_utils import JsonFormatter, bind_request_id, current_request_id, reset_request_id


def _record(**extra) -> logging.LogRecord:  # type: ignore[no-untyped-def]
    record = logging.LogRecord("hrms.payroll", logging.INFO, __file__, 10, "payroll_generated", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class JsonFormatterTests(unittest.TestCase):
    def test_extra_fields_are_flattened_and_stringified(self) -> None:
        payload = json.loads(JsonFormatter().format(_record(batch_id=7, total=Decimal("76100.00"))))

        self.assertEqual(payload["message"], "payroll_generated")
        self.assertEqual(payload["logger"], "hrms.payroll")
        self.assertEqual(payload["service"], "hrms")
        self.assertEqual(payload["batch_id"], 7)
        self.assertEqual(payload["total"], "76100.00")
        self.assertNotIn("pathname", payload)
        self.assertNotIn("request_id", payload)

    def test_bound_request_id_is_attached(self) -> None:
        token = bind_request_id("req-42")
        try:
            payload = json.loads(JsonFormatter().format(_record()))
        finally:
            reset_request_id(token)

        self.assertEqual(payload["request_id"], "req-42")
        self.assertIsNone(current_request_id())


if __name__ == "__main__":
    unittest.main()
