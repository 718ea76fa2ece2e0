"""Payroll calculation engine."""

from peso_payroll.calculators.components import ComponentCalculator
from peso_payroll.calculators.contributions import ContributionCalculator
from peso_payroll.calculators.engine import PayrollCalculationEngine
from peso_payroll.calculators.tax_calculator import WithholdingTaxCalculator
from peso_payroll.calculators.types import (
    CalculationContext,
    CalculationResult,
    RuleSet,
)

__all__ = [
    "CalculationContext",
    "CalculationResult",
    "ComponentCalculator",
    "ContributionCalculator",
    "PayrollCalculationEngine",
    "RuleSet",
    "WithholdingTaxCalculator",
]
