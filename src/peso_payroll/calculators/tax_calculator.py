"""Withholding tax on annualized taxable compensation."""

from __future__ import annotations

from decimal import Decimal

from peso_payroll.calculators.types import DEFAULT_TAX_BRACKETS, TaxBracket
from peso_payroll.money import ZERO, money, to_decimal


class WithholdingTaxCalculator:
    """Progressive bracket withholding.

    Per-period taxable income is annualized (× pay periods per year), taxed on
    the annual table, and divided back to one period.
    """

    def __init__(
        self,
        brackets: tuple[TaxBracket, ...] | list[TaxBracket] = DEFAULT_TAX_BRACKETS,
        periods_per_year: int = 24,
        exempt_statuses: frozenset[str] = frozenset({"Z"}),
    ):
        if not brackets:
            raise ValueError("At least one tax bracket is required")
        self.brackets = sorted(brackets, key=lambda b: b.min_amount)
        self.periods_per_year = periods_per_year
        self.exempt_statuses = exempt_statuses

    def annual_tax(self, annual_taxable: Decimal) -> Decimal:
        """Tax due on a full year's taxable compensation."""
        return self._calculate_progressive_tax(to_decimal(annual_taxable))

    def period_tax(self, period_taxable: Decimal, tax_status: str | None = None) -> Decimal:
        """Tax to withhold for one pay period."""
        if tax_status is not None and tax_status in self.exempt_statuses:
            return ZERO
        period_taxable = to_decimal(period_taxable)
        if period_taxable <= 0:
            return ZERO
        annual = period_taxable * self.periods_per_year
        return money(self.annual_tax(annual) / self.periods_per_year)

    def bracket_for(self, annual_taxable: Decimal) -> TaxBracket:
        for bracket in self.brackets:
            if bracket.max_amount is None or annual_taxable <= bracket.max_amount:
                return bracket
        return self.brackets[-1]

    def _calculate_progressive_tax(self, income: Decimal) -> Decimal:
        if income <= 0:
            return ZERO
        bracket = self.bracket_for(income)
        excess = income - bracket.min_amount
        return money(bracket.flat_amount + excess * bracket.rate)
