"""Government contribution tables: SSS, PhilHealth and Pag-IBIG.

Rates apply to monthly figures; per-period amounts split the monthly amount
evenly over the pay periods in a month.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from peso_payroll.calculators.types import (
    ContributionShare,
    PagIbigRule,
    PhilHealthRule,
    SSSRule,
)
from peso_payroll.money import ZERO, money, to_decimal


class ContributionCalculator:
    """Computes per-period employee and employer contribution shares."""

    def __init__(
        self,
        sss: SSSRule | None = None,
        philhealth: PhilHealthRule | None = None,
        pagibig: PagIbigRule | None = None,
        periods_per_month: int = 2,
    ):
        self.sss_rule = sss or SSSRule()
        self.philhealth_rule = philhealth or PhilHealthRule()
        self.pagibig_rule = pagibig or PagIbigRule()
        self.periods_per_month = periods_per_month

    def monthly_salary_credit(self, monthly_compensation: Decimal) -> Decimal:
        """Round compensation to the nearest MSC step, then clamp to floor/ceiling."""
        rule = self.sss_rule
        steps = (to_decimal(monthly_compensation) / rule.msc_step).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        msc = steps * rule.msc_step
        return money(min(max(msc, rule.msc_floor), rule.msc_ceiling))

    def sss(self, monthly_compensation: Decimal) -> ContributionShare:
        msc = self.monthly_salary_credit(monthly_compensation)
        return ContributionShare(
            employee=self._per_period(msc * self.sss_rule.employee_rate),
            employer=self._per_period(msc * self.sss_rule.employer_rate),
            base=msc,
        )

    def philhealth(self, monthly_basic: Decimal) -> ContributionShare:
        rule = self.philhealth_rule
        base = min(max(to_decimal(monthly_basic), rule.salary_floor), rule.salary_ceiling)
        share = self._per_period(base * rule.share_rate)
        return ContributionShare(employee=share, employer=share, base=money(base))

    def pagibig(self, monthly_basic: Decimal, employee_rate_percent: Decimal) -> ContributionShare:
        rule = self.pagibig_rule
        base = min(to_decimal(monthly_basic), rule.fund_salary_cap)
        employee_rate = to_decimal(employee_rate_percent) / Decimal("100")
        return ContributionShare(
            employee=self._per_period(base * employee_rate),
            employer=self._per_period(base * rule.employer_rate),
            base=money(base),
        )

    def _per_period(self, monthly_amount: Decimal) -> Decimal:
        if monthly_amount <= 0:
            return ZERO
        return money(money(monthly_amount) / self.periods_per_month)
