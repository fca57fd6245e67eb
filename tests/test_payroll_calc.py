from __future__ import annotations

import unittest
from decimal import Decimal

from hrms.services.configuration import PayrollConfig
from hrms.services.payroll_calc import (
    AttendanceCounts,
    SalaryInputs,
    compute_slip,
    loss_of_pay,
    money,
    recompute_from_components,
)


def _inputs(salary: str, **overrides) -> SalaryInputs:  # type: ignore[no-untyped-def]
    values = {
        "monthly_salary": Decimal(salary),
        "pf_percentage": Decimal("12"),
        "esi_percentage": Decimal("0.75"),
        "absent_deduction_type": "percentage",
        "absent_deduction_value": Decimal("100"),
    }
    values.update(overrides)
    return SalaryInputs(**values)


class ComputeSlipTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = PayrollConfig()

    def test_component_split_and_loss_of_pay(self) -> None:
        slip = compute_slip(
            _inputs("30000"),
            AttendanceCounts(present_days=20, half_days=1, absent_days=2),
            days_in_month=30,
            config=self.config,
        )
        self.assertEqual(slip.basic_salary, Decimal("15000.00"))
        self.assertEqual(slip.hra, Decimal("9000.00"))
        self.assertEqual(slip.da, Decimal("6000.00"))
        self.assertEqual(slip.gross_salary, Decimal("30000.00"))
        self.assertEqual(slip.pf, Decimal("1800.00"))
        self.assertEqual(slip.esi, Decimal("0.00"))
        self.assertEqual(slip.tax, Decimal("0.00"))
        self.assertEqual(slip.loss_of_pay, Decimal("2500.00"))
        self.assertEqual(slip.net_salary, Decimal("25700.00"))

    def test_esi_applies_under_wage_ceiling(self) -> None:
        slip = compute_slip(_inputs("20000"), AttendanceCounts(), days_in_month=31, config=self.config)
        self.assertEqual(slip.pf, Decimal("1200.00"))
        self.assertEqual(slip.esi, Decimal("150.00"))
        self.assertEqual(slip.net_salary, Decimal("18650.00"))

    def test_tax_above_threshold(self) -> None:
        slip = compute_slip(_inputs("60000"), AttendanceCounts(), days_in_month=31, config=self.config)
        self.assertEqual(slip.tax, Decimal("6000.00"))
        self.assertEqual(slip.net_salary, Decimal("50400.00"))

    def test_bonus_and_reimbursements_raise_gross(self) -> None:
        slip = compute_slip(
            _inputs(
                "30000",
                reimbursements=Decimal("1250.50"),
                bonus=Decimal("2000"),
                other_deductions=Decimal("100"),
            ),
            AttendanceCounts(),
            days_in_month=30,
            config=self.config,
        )
        self.assertEqual(slip.gross_salary, Decimal("33250.50"))
        self.assertEqual(slip.other, Decimal("100.00"))
        self.assertEqual(slip.net_salary, Decimal("33250.50") - Decimal("1800.00") - Decimal("100.00"))

    def test_da_absorbs_rounding(self) -> None:
        slip = compute_slip(_inputs("33333.33"), AttendanceCounts(), days_in_month=30, config=self.config)
        self.assertEqual(slip.basic_salary + slip.hra + slip.da, Decimal("33333.33"))

    def test_deductions_are_two_decimal_strings(self) -> None:
        slip = compute_slip(_inputs("30000"), AttendanceCounts(), days_in_month=30, config=self.config)
        self.assertEqual(
            slip.deductions(),
            {"pf": "1800.00", "esi": "0.00", "tax": "0.00", "loss_of_pay": "0.00", "other": "0.00"},
        )


class LossOfPayTests(unittest.TestCase):
    def test_fixed_amount_per_absent_day(self) -> None:
        value = loss_of_pay(
            monthly_salary=Decimal("30000"),
            counts=AttendanceCounts(half_days=1, absent_days=1),
            days_in_month=30,
            deduction_type="amount",
            deduction_value=Decimal("500"),
        )
        self.assertEqual(value, Decimal("750.00"))

    def test_partial_percentage(self) -> None:
        value = loss_of_pay(
            monthly_salary=Decimal("31000"),
            counts=AttendanceCounts(absent_days=1),
            days_in_month=31,
            deduction_type="percentage",
            deduction_value=Decimal("50"),
        )
        self.assertEqual(value, Decimal("500.00"))


class ManualCorrectionTests(unittest.TestCase):
    def test_recompute_from_components(self) -> None:
        gross, net, deductions = recompute_from_components(
            basic_salary=Decimal("15000"),
            hra=Decimal("9000"),
            da=Decimal("6000"),
            reimbursements=Decimal("0"),
            bonus=Decimal("500"),
            deductions={"pf": "1800.00", "tax": 10},
        )
        self.assertEqual(gross, Decimal("30500.00"))
        self.assertEqual(net, Decimal("28690.00"))
        self.assertEqual(deductions["esi"], "0.00")
        self.assertEqual(deductions["tax"], "10.00")

    def test_money_rounds_half_up(self) -> None:
        self.assertEqual(money("10.005"), Decimal("10.01"))
        self.assertEqual(money(None), Decimal("0.00"))


if __name__ == "__main__":
    unittest.main()
