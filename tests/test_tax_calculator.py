"""Tests for withholding tax calculation."""

from decimal import Decimal

import pytest

from peso_payroll.calculators.tax_calculator import WithholdingTaxCalculator
from peso_payroll.calculators.types import DEFAULT_TAX_BRACKETS, TaxBracket


class TestAnnualTax:
    """Test the annual progressive table."""

    @pytest.fixture
    def calculator(self):
        return WithholdingTaxCalculator()

    @pytest.mark.parametrize(
        "income,expected",
        [
            ("0", "0.00"),
            ("250000", "0.00"),
            ("300000", "2500.00"),
            ("400000", "7500.00"),
            ("500000", "17500.00"),
            ("800000", "47500.00"),
            ("1000000", "77500.00"),
            ("2000000", "227500.00"),
            ("3000000", "427500.00"),
        ],
    )
    def test_bracket_boundaries(self, calculator, income, expected):
        """Test tax at and between bracket boundaries."""
        assert calculator.annual_tax(Decimal(income)) == Decimal(expected)

    def test_bracket_upper_bound_is_inclusive(self, calculator):
        """Test that the bracket maximum belongs to the lower bracket."""
        assert calculator.bracket_for(Decimal("400000")).rate == Decimal("0.05")
        assert calculator.bracket_for(Decimal("400000.01")).rate == Decimal("0.10")

    def test_top_bracket_is_open_ended(self, calculator):
        """Test that income above every limit uses the last bracket."""
        bracket = calculator.bracket_for(Decimal("99000000"))
        assert bracket.max_amount is None
        assert bracket.rate == Decimal("0.20")

    def test_negative_income_is_zero(self, calculator):
        """Test negative income yields no tax."""
        assert calculator.annual_tax(Decimal("-100")) == Decimal("0.00")


class TestPeriodTax:
    """Test per-period withholding."""

    def test_semi_monthly_withholding(self):
        """Test annualize, tax, divide back (24 periods)."""
        calculator = WithholdingTaxCalculator(periods_per_year=24)

        # 11,481.25 × 24 = 275,550 → 5% over 250,000 = 1,277.50 → /24
        assert calculator.period_tax(Decimal("11481.25"), "S") == Decimal("53.23")

    def test_monthly_withholding(self):
        """Test a monthly pay cycle."""
        calculator = WithholdingTaxCalculator(periods_per_year=12)

        # 30,000 × 12 = 360,000 → 5,500 → /12
        assert calculator.period_tax(Decimal("30000")) == Decimal("458.33")

    def test_below_threshold_is_zero(self):
        """Test income under the exempt band."""
        calculator = WithholdingTaxCalculator()
        assert calculator.period_tax(Decimal("10000"), "S") == Decimal("0.00")

    def test_exempt_status(self):
        """Test that tax status Z withholds nothing."""
        calculator = WithholdingTaxCalculator()
        assert calculator.period_tax(Decimal("90000"), "Z") == Decimal("0.00")
        assert calculator.period_tax(Decimal("90000"), "S") > 0

    def test_zero_and_negative_taxable(self):
        """Test non-positive taxable income."""
        calculator = WithholdingTaxCalculator()
        assert calculator.period_tax(Decimal("0")) == Decimal("0.00")
        assert calculator.period_tax(Decimal("-500")) == Decimal("0.00")

    def test_result_has_centavo_precision(self):
        """Test that withholding is rounded to centavos."""
        calculator = WithholdingTaxCalculator()
        tax = calculator.period_tax(Decimal("33333.33"))
        assert tax == tax.quantize(Decimal("0.01"))


class TestBracketConfiguration:
    """Test bracket table handling."""

    def test_empty_brackets_rejected(self):
        """Test that a calculator needs at least one bracket."""
        with pytest.raises(ValueError):
            WithholdingTaxCalculator(brackets=())

    def test_brackets_are_sorted(self):
        """Test that unordered tables are sorted by lower bound."""
        calculator = WithholdingTaxCalculator(brackets=tuple(reversed(DEFAULT_TAX_BRACKETS)))
        assert calculator.annual_tax(Decimal("500000")) == Decimal("17500.00")

    def test_flat_rate_table(self):
        """Test a single open-ended bracket."""
        flat = TaxBracket(Decimal("0"), None, Decimal("0.08"))
        calculator = WithholdingTaxCalculator(brackets=(flat,), periods_per_year=12)
        assert calculator.period_tax(Decimal("10000")) == Decimal("800.00")

    def test_bracket_to_dict(self):
        """Test the JSON-safe snapshot of a bracket."""
        data = DEFAULT_TAX_BRACKETS[-1].to_dict()
        assert data == {"min": "2000000", "max": None, "rate": "0.20", "flat": "227500"}
