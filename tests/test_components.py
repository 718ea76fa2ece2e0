"""Tests for salary component evaluation and the system catalog."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from peso_payroll.calculators.components import (
    BASIC,
    HOURLY_RATE,
    SYSTEM_COMPONENT_CODES,
    ComponentCalculator,
    seed_system_components,
)
from peso_payroll.errors import ValidationFailure
from peso_payroll.models import EmployeeSalaryComponent, SalaryComponent


def _component(method: str, **fields) -> SalaryComponent:
    fields.setdefault("code", "TEST")
    return SalaryComponent(
        name="Test Component",
        component_type=fields.pop("component_type", "earning"),
        category=fields.pop("category", "other"),
        calculation_method=method,
        **fields,
    )


def _assignment(**fields) -> EmployeeSalaryComponent:
    return EmployeeSalaryComponent(
        employee_id=uuid4(),
        salary_component_id=uuid4(),
        effective_date=date(2025, 1, 1),
        **fields,
    )


@pytest.fixture
def calculator():
    return ComponentCalculator()


@pytest.fixture
def base_values():
    return {BASIC: Decimal("12500.00"), HOURLY_RATE: Decimal("142.05")}


class TestFixedAmount:
    """Test fixed amount components."""

    def test_default_amount(self, calculator, base_values):
        """Test the catalog default."""
        component = _component("fixed_amount", default_amount=Decimal("750"))
        assert calculator.evaluate(component, base_values) == Decimal("750.00")

    def test_assignment_overrides_default(self, calculator, base_values):
        """Test that an employee amount wins over the catalog."""
        component = _component("fixed_amount", default_amount=Decimal("750"))
        value = calculator.evaluate(component, base_values, _assignment(amount=Decimal("900")))
        assert value == Decimal("900.00")


class TestPercentage:
    """Test percentage based components."""

    def test_percentage_of_basic(self, calculator, base_values):
        """Test a percentage of basic pay."""
        component = _component("percentage_of_basic", percentage=Decimal("10"))
        assert calculator.evaluate(component, base_values) == Decimal("1250.00")

    def test_assignment_percentage(self, calculator, base_values):
        """Test that the assignment percentage wins."""
        component = _component("percentage_of_basic", percentage=Decimal("10"))
        value = calculator.evaluate(
            component, base_values, _assignment(percentage=Decimal("4"))
        )
        assert value == Decimal("500.00")

    def test_missing_percentage(self, calculator, base_values):
        """Test that a percentage component needs a percentage."""
        with pytest.raises(ValidationFailure):
            calculator.evaluate(_component("percentage_of_basic"), base_values)

    def test_percentage_of_component(self, calculator, base_values):
        """Test a percentage of another component's value."""
        base_values["COLA"] = Decimal("2000")
        component = _component(
            "percentage_of_component",
            percentage=Decimal("5"),
            reference_component_code="COLA",
        )
        assert calculator.evaluate(component, base_values) == Decimal("100.00")

    def test_unknown_reference(self, calculator, base_values):
        """Test a reference to a component not yet computed."""
        component = _component(
            "percentage_of_component",
            percentage=Decimal("5"),
            reference_component_code="MISSING",
        )
        with pytest.raises(ValidationFailure) as exc_info:
            calculator.evaluate(component, base_values)

        assert exc_info.value.field == "reference_component_code"


class TestOvertimeMultiplier:
    """Test hourly multiplier components."""

    def test_units_from_assignment(self, calculator, base_values):
        """Test hourly × multiplier × assigned hours."""
        component = _component("ot_multiplier", code="OT_SPECIAL", ot_multiplier=Decimal("1.50"))
        value = calculator.evaluate(component, base_values, _assignment(units=Decimal("4")))
        assert value == Decimal("852.30")

    def test_units_from_base_values(self, calculator, base_values):
        """Test hours taken from the <CODE>_HOURS key."""
        base_values["OT_SPECIAL_HOURS"] = Decimal("2")
        component = _component("ot_multiplier", code="OT_SPECIAL", ot_multiplier=Decimal("1.50"))
        assert calculator.evaluate(component, base_values) == Decimal("426.15")

    def test_missing_multiplier(self, calculator, base_values):
        """Test that a multiplier component needs a multiplier."""
        with pytest.raises(ValidationFailure):
            calculator.evaluate(_component("ot_multiplier"), base_values)


class TestLookupTable:
    """Test range lookup components."""

    TABLE = [
        {"min": "0", "max": "10000", "amount": "100"},
        {"min": "10000", "max": "20000", "rate": "0.02"},
        {"min": "20000", "max": None, "amount": "500"},
    ]

    @pytest.mark.parametrize(
        "basic,expected",
        [
            ("5000", "100.00"),
            ("10000", "200.00"),
            ("12500", "250.00"),
            ("25000", "500.00"),
        ],
    )
    def test_ranges(self, calculator, basic, expected):
        """Test [min, max) row matching and amount or rate rows."""
        component = _component("lookup_table", lookup_table=self.TABLE)
        assert calculator.evaluate(component, {BASIC: Decimal(basic)}) == Decimal(expected)

    def test_no_matching_row(self, calculator):
        """Test that a base outside every row yields zero."""
        component = _component(
            "lookup_table", lookup_table=[{"min": "1000", "max": "2000", "amount": "5"}]
        )
        assert calculator.evaluate(component, {BASIC: Decimal("50")}) == Decimal("0.00")


class TestUnknownMethod:
    """Test method validation."""

    def test_unknown_method(self, calculator, base_values):
        """Test that an unsupported method is rejected."""
        with pytest.raises(ValidationFailure, match="Unknown calculation method"):
            calculator.evaluate(_component("formula"), base_values)


class TestSystemCatalog:
    """Test the seeded system components."""

    def test_seed_matches_codes(self):
        """Test that every seeded component is a system component."""
        components = seed_system_components()
        assert {c.code for c in components} == SYSTEM_COMPONENT_CODES
        assert len(components) == 17
        assert all(c.is_system_component for c in components)

    def test_deminimis_components(self):
        """Test the de minimis allowances carry monthly limits."""
        by_code = {c.code: c for c in seed_system_components()}
        assert by_code["RICE"].is_deminimis is True
        assert by_code["RICE"].deminimis_limit_monthly == Decimal("2000")
        assert by_code["RICE"].is_taxable is False

    def test_overtime_multipliers(self):
        """Test the seeded overtime multipliers."""
        by_code = {c.code: c for c in seed_system_components()}
        assert by_code["OT_REG"].ot_multiplier == Decimal("1.25")
        assert by_code["OT_TRIPLE"].ot_multiplier == Decimal("2.60")
