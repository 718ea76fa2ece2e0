"""Type definitions for the calculation pipeline."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from peso_payroll.money import ZERO

if TYPE_CHECKING:
    from peso_payroll.models import (
        EmployeeAllowance,
        EmployeeDeduction,
        EmployeePayrollInfo,
        EmployeeSalaryComponent,
        SalaryComponent,
    )
    from peso_payroll.schemas import AttendanceSummary, LeaveSummary


def canonical_fingerprint(data: Any) -> str:
    """sha256 of canonical JSON (sorted keys, Decimals and ids as strings)."""
    json_str = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()


@dataclass(frozen=True)
class TaxBracket:
    """Annual withholding bracket: flat_amount + rate × (income - min_amount)."""

    min_amount: Decimal
    max_amount: Decimal | None  # None = no upper limit
    rate: Decimal  # As decimal, e.g., 0.15 for 15%
    flat_amount: Decimal = Decimal("0")

    def to_dict(self) -> dict[str, str | None]:
        return {
            "min": str(self.min_amount),
            "max": str(self.max_amount) if self.max_amount is not None else None,
            "rate": str(self.rate),
            "flat": str(self.flat_amount),
        }


DEFAULT_TAX_BRACKETS: tuple[TaxBracket, ...] = (
    TaxBracket(Decimal("0"), Decimal("250000"), Decimal("0")),
    TaxBracket(Decimal("250000"), Decimal("400000"), Decimal("0.05")),
    TaxBracket(Decimal("400000"), Decimal("800000"), Decimal("0.10"), Decimal("7500")),
    TaxBracket(Decimal("800000"), Decimal("2000000"), Decimal("0.15"), Decimal("47500")),
    TaxBracket(Decimal("2000000"), None, Decimal("0.20"), Decimal("227500")),
)


@dataclass(frozen=True)
class SSSRule:
    """Social Security contribution on the monthly salary credit."""

    employee_rate: Decimal = Decimal("0.05")
    employer_rate: Decimal = Decimal("0.10")
    msc_step: Decimal = Decimal("500")
    msc_floor: Decimal = Decimal("5000")
    msc_ceiling: Decimal = Decimal("35000")


@dataclass(frozen=True)
class PhilHealthRule:
    """PhilHealth premium share on monthly basic within the floor/ceiling."""

    share_rate: Decimal = Decimal("0.0275")
    salary_floor: Decimal = Decimal("10000")
    salary_ceiling: Decimal = Decimal("100000")


@dataclass(frozen=True)
class PagIbigRule:
    """Pag-IBIG contribution on the capped fund salary.

    The employee rate comes from the employee's profile (percent).
    """

    employer_rate: Decimal = Decimal("0.02")
    fund_salary_cap: Decimal = Decimal("10000")


DEFAULT_OT_MULTIPLIERS: dict[str, Decimal] = {
    "regular": Decimal("1.25"),
    "rest_day": Decimal("1.30"),
    "holiday": Decimal("1.30"),
    "double": Decimal("2.00"),
    "triple": Decimal("2.60"),
}

# Monthly de minimis ceilings by allowance type when the allowance row has none
DEFAULT_DEMINIMIS_MONTHLY: dict[str, Decimal] = {
    "rice": Decimal("2000"),
    "clothing": Decimal("1000"),
    "laundry": Decimal("300"),
    "medical": Decimal("1000"),
}


@dataclass(frozen=True)
class RuleSet:
    """Every statutory table and multiplier one calculation run uses.

    Snapshotted into PayrollPeriod.calculation_config when a run starts.
    """

    engine_version: str
    ot_multipliers: dict[str, Decimal] = field(
        default_factory=lambda: dict(DEFAULT_OT_MULTIPLIERS)
    )
    night_differential_rate: Decimal = Decimal("0.10")
    sss: SSSRule = field(default_factory=SSSRule)
    philhealth: PhilHealthRule = field(default_factory=PhilHealthRule)
    pagibig: PagIbigRule = field(default_factory=PagIbigRule)
    tax_brackets: tuple[TaxBracket, ...] = DEFAULT_TAX_BRACKETS
    tax_exempt_statuses: frozenset[str] = frozenset({"Z"})
    deminimis_monthly: dict[str, Decimal] = field(
        default_factory=lambda: dict(DEFAULT_DEMINIMIS_MONTHLY)
    )

    def to_config(self) -> dict[str, Any]:
        """JSON-safe snapshot; Decimals become strings."""
        return {
            "engine_version": self.engine_version,
            "ot_multipliers": {k: str(v) for k, v in sorted(self.ot_multipliers.items())},
            "night_differential_rate": str(self.night_differential_rate),
            "sss": {k: str(v) for k, v in vars(self.sss).items()},
            "philhealth": {k: str(v) for k, v in vars(self.philhealth).items()},
            "pagibig": {k: str(v) for k, v in vars(self.pagibig).items()},
            "tax_brackets": [b.to_dict() for b in self.tax_brackets],
            "tax_exempt_statuses": sorted(self.tax_exempt_statuses),
            "deminimis_monthly": {
                k: str(v) for k, v in sorted(self.deminimis_monthly.items())
            },
        }

    def fingerprint(self) -> str:
        return canonical_fingerprint(self.to_config())

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> RuleSet:
        """Rebuild a rule set from a calculation_config snapshot."""

        def dec_map(d: dict[str, str]) -> dict[str, Decimal]:
            return {k: Decimal(v) for k, v in d.items()}

        return cls(
            engine_version=config["engine_version"],
            ot_multipliers=dec_map(config["ot_multipliers"]),
            night_differential_rate=Decimal(config["night_differential_rate"]),
            sss=SSSRule(**dec_map(config["sss"])),
            philhealth=PhilHealthRule(**dec_map(config["philhealth"])),
            pagibig=PagIbigRule(**dec_map(config["pagibig"])),
            tax_brackets=tuple(
                TaxBracket(
                    min_amount=Decimal(b["min"]),
                    max_amount=Decimal(b["max"]) if b.get("max") is not None else None,
                    rate=Decimal(b["rate"]),
                    flat_amount=Decimal(b.get("flat", "0")),
                )
                for b in config["tax_brackets"]
            ),
            tax_exempt_statuses=frozenset(config.get("tax_exempt_statuses", ["Z"])),
            deminimis_monthly=dec_map(config.get("deminimis_monthly", {})),
        )


@dataclass(frozen=True)
class ContributionShare:
    """Per-period employee and employer amounts of one contribution."""

    employee: Decimal = ZERO
    employer: Decimal = ZERO
    base: Decimal = ZERO  # Monthly salary credit / capped salary used


@dataclass(frozen=True)
class LoanInstallment:
    """A loan installment due within the period being calculated."""

    loan_deduction_id: UUID
    loan_id: UUID
    loan_type: str
    amount: Decimal


@dataclass(frozen=True)
class ExceptionFlag:
    """An anomaly detected while calculating one employee."""

    exception_type: str
    severity: str
    title: str
    description: str
    current_value: Decimal | None = None
    expected_value: Decimal | None = None
    variance_percent: Decimal | None = None
    detection_rule: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class CalculationContext:
    """Everything needed to calculate one employee for one period."""

    employee_id: UUID
    period_start: date
    period_end: date
    is_second_cutoff: bool
    profile: EmployeePayrollInfo | None
    attendance: AttendanceSummary | None = None
    leave: LeaveSummary | None = None
    allowances: list[EmployeeAllowance] = field(default_factory=list)
    deductions: list[EmployeeDeduction] = field(default_factory=list)
    components: list[tuple[SalaryComponent, EmployeeSalaryComponent]] = field(
        default_factory=list
    )
    loan_installments: list[LoanInstallment] = field(default_factory=list)
    previous_final_net_pay: Decimal | None = None


@dataclass
class CalculationResult:
    """Result of calculating one employee; no persistence attached."""

    employee_id: UUID
    amounts: dict[str, Decimal]
    inputs: dict[str, Decimal]
    details: dict[str, Any]
    flags: list[ExceptionFlag]
    errors: list[str]
    inputs_fingerprint: str
    rules_fingerprint: str

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def has_exceptions(self) -> bool:
        return len(self.flags) > 0

    @property
    def gross_pay(self) -> Decimal:
        return self.amounts.get("gross_pay", ZERO)

    @property
    def net_pay(self) -> Decimal:
        return self.amounts.get("net_pay", ZERO)


@dataclass
class PeriodCalculationResult:
    """Outcome of one period-wide calculation run."""

    payroll_period_id: UUID
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_locked: int = 0
    exceptions: int = 0
    cancelled: bool = False
    total_gross: Decimal = ZERO
    total_net: Decimal = ZERO
    processing_time_seconds: Decimal = ZERO
    failures: dict[UUID, str] = field(default_factory=dict)
