from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal

from hrms.services.configuration import PayrollConfig

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
HALF = Decimal("0.5")

DEDUCTION_KEYS = ("pf", "esi", "tax", "loss_of_pay", "other")


def money(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class AttendanceCounts:
    present_days: int = 0
    half_days: int = 0
    absent_days: int = 0

    @property
    def absent_equivalent(self) -> Decimal:
        return Decimal(self.absent_days) + HALF * Decimal(self.half_days)


@dataclass(frozen=True)
class SalaryInputs:
    monthly_salary: Decimal
    pf_percentage: Decimal
    esi_percentage: Decimal
    absent_deduction_type: Literal["percentage", "amount"]
    absent_deduction_value: Decimal
    reimbursements: Decimal = ZERO
    bonus: Decimal = ZERO
    other_deductions: Decimal = ZERO


@dataclass(frozen=True)
class SlipComputation:
    basic_salary: Decimal
    hra: Decimal
    da: Decimal
    reimbursements: Decimal
    bonus: Decimal
    gross_salary: Decimal
    pf: Decimal
    esi: Decimal
    tax: Decimal
    loss_of_pay: Decimal
    other: Decimal
    net_salary: Decimal

    @property
    def total_deductions(self) -> Decimal:
        return self.pf + self.esi + self.tax + self.loss_of_pay + self.other

    def deductions(self) -> dict[str, str]:
        return {
            "pf": str(self.pf),
            "esi": str(self.esi),
            "tax": str(self.tax),
            "loss_of_pay": str(self.loss_of_pay),
            "other": str(self.other),
        }


def loss_of_pay(
    *,
    monthly_salary: Decimal,
    counts: AttendanceCounts,
    days_in_month: int,
    deduction_type: str,
    deduction_value: Decimal,
) -> Decimal:
    if days_in_month <= 0:
        return ZERO
    equivalent_days = counts.absent_equivalent
    if deduction_type == "amount":
        return money(equivalent_days * deduction_value)
    daily_salary = monthly_salary / Decimal(days_in_month)
    return money(equivalent_days * daily_salary * deduction_value / HUNDRED)


def compute_slip(
    inputs: SalaryInputs,
    counts: AttendanceCounts,
    *,
    days_in_month: int,
    config: PayrollConfig,
) -> SlipComputation:
    salary = money(inputs.monthly_salary)
    basic = money(salary * config.basic_percentage / HUNDRED)
    hra = money(salary * config.hra_percentage / HUNDRED)
    # DA absorbs rounding so the three components always add up to the salary.
    da = salary - basic - hra
    reimbursements = money(inputs.reimbursements)
    bonus = money(inputs.bonus)
    gross = salary + reimbursements + bonus

    pf = money(basic * inputs.pf_percentage / HUNDRED)
    esi = money(gross * inputs.esi_percentage / HUNDRED) if gross <= config.esi_wage_ceiling else ZERO
    tax = money(salary * config.tax_rate_percentage / HUNDRED) if salary > config.tax_threshold else ZERO
    lop = loss_of_pay(
        monthly_salary=salary,
        counts=counts,
        days_in_month=days_in_month,
        deduction_type=inputs.absent_deduction_type,
        deduction_value=inputs.absent_deduction_value,
    )
    other = money(inputs.other_deductions)
    net = gross - (pf + esi + tax + lop + other)

    return SlipComputation(
        basic_salary=basic,
        hra=hra,
        da=da,
        reimbursements=reimbursements,
        bonus=bonus,
        gross_salary=gross,
        pf=pf,
        esi=esi,
        tax=tax,
        loss_of_pay=lop,
        other=other,
        net_salary=net,
    )


def recompute_from_components(
    *,
    basic_salary: Decimal,
    hra: Decimal,
    da: Decimal,
    reimbursements: Decimal,
    bonus: Decimal,
    deductions: dict[str, Any],
) -> tuple[Decimal, Decimal, dict[str, str]]:
    """Gross, net and normalized deductions for a hand-corrected slip."""
    gross = money(basic_salary) + money(hra) + money(da) + money(reimbursements) + money(bonus)
    normalized = {key: money(deductions.get(key)) for key in DEDUCTION_KEYS}
    net = gross - sum(normalized.values(), ZERO)
    return gross, net, {key: str(value) for key, value in normalized.items()}
