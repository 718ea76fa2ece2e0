"""Salary component evaluation and the standard system catalog."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from peso_payroll.errors import ValidationFailure
from peso_payroll.models.catalog import EmployeeSalaryComponent, SalaryComponent
from peso_payroll.money import ZERO, money, to_decimal

# base_values keys the engine always provides
BASIC = "BASIC"
HOURLY_RATE = "HOURLY_RATE"
DAILY_RATE = "DAILY_RATE"


class ComponentCalculator:
    """Evaluates a SalaryComponent for one employee-period.

    base_values maps component codes (and the BASIC/HOURLY_RATE/DAILY_RATE
    keys) to amounts already computed for the period. An assignment, when
    given, overrides the catalog amount, percentage and units.
    """

    def evaluate(
        self,
        component: SalaryComponent,
        base_values: dict[str, Decimal],
        assignment: EmployeeSalaryComponent | None = None,
    ) -> Decimal:
        method = component.calculation_method
        if method == "fixed_amount":
            return self._fixed_amount(component, assignment)
        if method == "percentage_of_basic":
            return self._percentage(component, assignment, base_values.get(BASIC, ZERO))
        if method == "percentage_of_component":
            ref = component.reference_component_code
            if not ref or ref not in base_values:
                raise ValidationFailure(
                    f"Component {component.code} references unknown component {ref!r}",
                    "reference_component_code",
                )
            return self._percentage(component, assignment, base_values[ref])
        if method == "ot_multiplier":
            return self._ot_multiplier(component, assignment, base_values)
        if method == "lookup_table":
            return self._lookup(component, base_values.get(BASIC, ZERO))
        raise ValidationFailure(
            f"Unknown calculation method '{method}' on {component.code}", "calculation_method"
        )

    def _fixed_amount(
        self, component: SalaryComponent, assignment: EmployeeSalaryComponent | None
    ) -> Decimal:
        if assignment is not None and assignment.amount is not None:
            return money(assignment.amount)
        return money(component.default_amount)

    def _percentage(
        self,
        component: SalaryComponent,
        assignment: EmployeeSalaryComponent | None,
        base: Decimal,
    ) -> Decimal:
        pct = None
        if assignment is not None and assignment.percentage is not None:
            pct = assignment.percentage
        elif component.percentage is not None:
            pct = component.percentage
        if pct is None:
            raise ValidationFailure(f"Component {component.code} has no percentage", "percentage")
        return money(to_decimal(base) * to_decimal(pct) / Decimal("100"))

    def _ot_multiplier(
        self,
        component: SalaryComponent,
        assignment: EmployeeSalaryComponent | None,
        base_values: dict[str, Decimal],
    ) -> Decimal:
        if component.ot_multiplier is None:
            raise ValidationFailure(
                f"Component {component.code} has no multiplier", "ot_multiplier"
            )
        if assignment is not None and assignment.units is not None:
            hours = to_decimal(assignment.units)
        else:
            hours = to_decimal(base_values.get(f"{component.code}_HOURS", ZERO))
        hourly = to_decimal(base_values.get(HOURLY_RATE, ZERO))
        return money(hourly * to_decimal(component.ot_multiplier) * hours)

    def _lookup(self, component: SalaryComponent, base: Decimal) -> Decimal:
        """First row whose [min, max) range holds the base; amount or rate."""
        base = to_decimal(base)
        for row in component.lookup_table or []:
            low = Decimal(str(row.get("min", "0")))
            high = Decimal(str(row["max"])) if row.get("max") is not None else None
            if base < low or (high is not None and base >= high):
                continue
            if row.get("amount") is not None:
                return money(Decimal(str(row["amount"])))
            return money(base * Decimal(str(row.get("rate", "0"))))
        return ZERO


def _component(
    code: str,
    name: str,
    component_type: str,
    category: str,
    method: str,
    order: int,
    **fields: Any,
) -> SalaryComponent:
    return SalaryComponent(
        code=code,
        name=name,
        component_type=component_type,
        category=category,
        calculation_method=method,
        is_system_component=True,
        display_order=order,
        **fields,
    )


def seed_system_components() -> list[SalaryComponent]:
    """The standard catalog every installation starts with."""
    return [
        _component("BASIC", "Basic Pay", "earning", "regular", "fixed_amount", 1),
        _component(
            "OT_REG", "Regular Overtime", "earning", "overtime", "ot_multiplier", 10,
            ot_multiplier=Decimal("1.25"),
        ),
        _component(
            "OT_REST_DAY", "Rest Day Overtime", "earning", "overtime", "ot_multiplier", 11,
            ot_multiplier=Decimal("1.30"),
        ),
        _component(
            "OT_HOLIDAY", "Holiday Overtime", "earning", "holiday", "ot_multiplier", 12,
            ot_multiplier=Decimal("1.30"),
        ),
        _component(
            "OT_DOUBLE", "Double Holiday Overtime", "earning", "holiday", "ot_multiplier", 13,
            ot_multiplier=Decimal("2.00"),
        ),
        _component(
            "OT_TRIPLE", "Triple Holiday Overtime", "earning", "holiday", "ot_multiplier", 14,
            ot_multiplier=Decimal("2.60"),
        ),
        _component(
            "PREMIUM_NIGHT", "Night Differential", "earning", "overtime",
            "percentage_of_component", 15,
            percentage=Decimal("10"), reference_component_code="HOURLY_RATE",
        ),
        _component(
            "SSS", "SSS Contribution", "contribution", "government", "lookup_table", 20,
            is_taxable=False, affects_sss=True,
        ),
        _component(
            "PHILHEALTH", "PhilHealth Contribution", "contribution", "government",
            "percentage_of_basic", 21,
            percentage=Decimal("2.75"), is_taxable=False, affects_philhealth=True,
        ),
        _component(
            "PAGIBIG", "Pag-IBIG Contribution", "contribution", "government",
            "percentage_of_basic", 22,
            percentage=Decimal("1.00"), is_taxable=False, affects_pagibig=True,
        ),
        _component("TAX", "Withholding Tax", "tax", "government", "lookup_table", 23),
        _component("LOAN_DEDUCTION", "Loan Deduction", "loan", "loan", "fixed_amount", 30),
        _component(
            "13TH_MONTH", "13th Month Pay", "earning", "bonus", "percentage_of_basic", 40,
            percentage=Decimal("8.3333"), is_taxable=False,
        ),
        _component(
            "RICE", "Rice Subsidy", "allowance", "allowance", "fixed_amount", 50,
            is_taxable=False, is_deminimis=True,
            deminimis_limit_monthly=Decimal("2000"), deminimis_limit_annual=Decimal("24000"),
        ),
        _component(
            "CLOTHING", "Clothing Allowance", "allowance", "allowance", "fixed_amount", 51,
            is_taxable=False, is_deminimis=True,
            deminimis_limit_monthly=Decimal("1000"), deminimis_limit_annual=Decimal("5000"),
        ),
        _component(
            "LAUNDRY", "Laundry Allowance", "allowance", "allowance", "fixed_amount", 52,
            is_taxable=False, is_deminimis=True,
            deminimis_limit_monthly=Decimal("300"), deminimis_limit_annual=Decimal("3600"),
        ),
        _component(
            "MEDICAL", "Medical Allowance", "allowance", "allowance", "fixed_amount", 53,
            is_taxable=False, is_deminimis=True,
            deminimis_limit_monthly=Decimal("1000"), deminimis_limit_annual=Decimal("5000"),
        ),
    ]


SYSTEM_COMPONENT_CODES = frozenset(
    {
        "BASIC", "OT_REG", "OT_REST_DAY", "OT_HOLIDAY", "OT_DOUBLE", "OT_TRIPLE",
        "PREMIUM_NIGHT", "SSS", "PHILHEALTH", "PAGIBIG", "TAX", "LOAN_DEDUCTION",
        "13TH_MONTH", "RICE", "CLOTHING", "LAUNDRY", "MEDICAL",
    }
)
