"""Payroll period, calculation, adjustment and exception models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from peso_payroll.errors import IntegrityViolation, ValidationFailure
from peso_payroll.models.base import Base, JSONType, TimestampMixin
from peso_payroll.money import CENT, ZERO, money, sum_money, to_decimal
from peso_payroll.services.state_machine import (
    AdjustmentStatus,
    CalculationStatus,
    ExceptionStatus,
    PeriodStatus,
)


# ===== Payroll Period =====


class PayrollPeriod(Base, TimestampMixin):
    """One semi-monthly payroll cycle."""

    __tablename__ = "payroll_period"

    payroll_period_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    period_number: Mapped[str] = mapped_column(String(20), nullable=False)
    period_name: Mapped[str] = mapped_column(String, nullable=False)
    period_type: Mapped[str] = mapped_column(String, nullable=False, default="regular")
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_month: Mapped[str] = mapped_column(String(7), nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)

    timekeeping_cutoff_date: Mapped[date] = mapped_column(Date, nullable=False)
    leave_cutoff_date: Mapped[date] = mapped_column(Date, nullable=False)
    adjustment_deadline: Mapped[date] = mapped_column(Date, nullable=False)

    # Aggregates; written with atomic increments or a single-writer recompute
    total_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    excluded_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    employees_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    employees_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_gross_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_net_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_government_contributions: Mapped[Decimal] = mapped_column(
        nullable=False, default=ZERO
    )
    total_loan_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_adjustments: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    exceptions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    adjustments_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String, nullable=False, default=PeriodStatus.DRAFT.value)
    calculation_config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    calculation_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    calculation_errors: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSONType, nullable=True
    )
    timekeeping_data_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    leave_data_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    calculation_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    calculation_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    submitted_by: Mapped[UUID | None] = mapped_column(nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reviewed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(nullable=True)
    finalized_by: Mapped[UUID | None] = mapped_column(nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    locked_by: Mapped[UUID | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("period_number", name="payroll_period_number_unique"),
        CheckConstraint(
            "status IN ('draft', 'active', 'calculating', 'calculated', 'under_review', "
            "'approved', 'finalized', 'locked', 'completed')",
            name="payroll_period_status_check",
        ),
        CheckConstraint(
            "period_type IN ('regular', 'special', 'thirteenth_month')",
            name="payroll_period_type_check",
        ),
        CheckConstraint("period_end >= period_start", name="payroll_period_dates_check"),
    )

    @staticmethod
    def generate_period_number(period_start: date) -> str:
        """YYYY-MM-A for the 1st-15th cutoff, YYYY-MM-B for the 16th onward."""
        code = "A" if period_start.day <= 15 else "B"
        return f"{period_start:%Y-%m}-{code}"

    @property
    def is_second_cutoff(self) -> bool:
        return self.period_number.endswith("-B")

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None or self.status == PeriodStatus.LOCKED

    def can_calculate(self) -> bool:
        return self.status in (
            PeriodStatus.DRAFT,
            PeriodStatus.ACTIVE,
            PeriodStatus.CALCULATED,
        )

    def can_adjust(self, today: date) -> bool:
        """Not locked and on or before the adjustment deadline."""
        return not self.is_locked and today <= self.adjustment_deadline

    def is_past_cutoff(self, today: date) -> bool:
        return today > self.timekeeping_cutoff_date

    def days_until_payment(self, today: date) -> int:
        return (self.payment_date - today).days

    def progress_percentage(self) -> int:
        if not self.total_employees:
            return 0
        done = min(self.employees_processed, self.total_employees)
        return int(done * 100 / self.total_employees)

    def totals_snapshot(self) -> dict[str, Any]:
        """Point-in-time totals for approval history."""
        return {
            "total_employees": self.total_employees,
            "total_gross_pay": str(money(self.total_gross_pay)),
            "total_deductions": str(money(self.total_deductions)),
            "total_net_pay": str(money(self.total_net_pay)),
            "exceptions_count": self.exceptions_count,
        }


# ===== Employee Payroll Calculation =====


class EmployeePayrollCalculation(Base, TimestampMixin):
    """One employee's computed pay for one period; one row per version.

    Versions chain through previous_version_id. A row whose locked_at is set
    only accepts changes to superseded_at/superseded_by_id.
    """

    __tablename__ = "employee_payroll_calculation"

    OVERTIME_FIELDS: ClassVar[tuple[str, ...]] = (
        "regular_ot_pay",
        "rest_day_ot_pay",
        "holiday_ot_pay",
        "night_differential_pay",
    )
    ALLOWANCE_FIELDS: ClassVar[tuple[str, ...]] = (
        "transportation_allowance",
        "meal_allowance",
        "housing_allowance",
        "communication_allowance",
        "other_allowances",
    )
    BONUS_FIELDS: ClassVar[tuple[str, ...]] = (
        "performance_bonus",
        "attendance_bonus",
        "productivity_bonus",
        "other_income",
    )
    GOVERNMENT_FIELDS: ClassVar[tuple[str, ...]] = (
        "sss_contribution",
        "philhealth_contribution",
        "pagibig_contribution",
        "withholding_tax",
    )
    LOAN_FIELDS: ClassVar[tuple[str, ...]] = (
        "sss_loan_deduction",
        "pagibig_loan_deduction",
        "company_loan_deduction",
    )
    ADVANCE_FIELDS: ClassVar[tuple[str, ...]] = (
        "cash_advance_deduction",
        "salary_advance_deduction",
    )
    ATTENDANCE_DEDUCTION_FIELDS: ClassVar[tuple[str, ...]] = (
        "tardiness_deduction",
        "absence_deduction",
    )
    OTHER_DEDUCTION_FIELDS: ClassVar[tuple[str, ...]] = (
        "uniform_deduction",
        "tool_deduction",
        "miscellaneous_deductions",
    )
    # Never carried into a new version
    VERSION_BOOKKEEPING: ClassVar[frozenset[str]] = frozenset(
        {
            "calculation_id",
            "version",
            "previous_version_id",
            "superseded_by_id",
            "superseded_at",
            "calculation_status",
            "calculated_at",
            "calculated_by",
            "locked_at",
            "locked_by",
            "created_at",
            "updated_at",
        }
    )

    calculation_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    employee_payroll_info_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee_payroll_info.employee_payroll_info_id", ondelete="SET NULL"),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    previous_version_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee_payroll_calculation.calculation_id", ondelete="RESTRICT"),
        nullable=True,
    )
    superseded_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    superseded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Rates used
    salary_type: Mapped[str | None] = mapped_column(String, nullable=True)
    basic_monthly_salary: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    daily_rate: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    hourly_rate: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    # Attendance
    present_days: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=ZERO)
    absent_days: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=ZERO)
    late_hours: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False, default=ZERO)
    undertime_hours: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False, default=ZERO)
    regular_ot_hours: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False, default=ZERO)
    rest_day_ot_hours: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False, default=ZERO)
    holiday_ot_hours: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False, default=ZERO)
    night_differential_hours: Mapped[Decimal] = mapped_column(
        Numeric(7, 2), nullable=False, default=ZERO
    )
    paid_leave_days: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=ZERO)
    unpaid_leave_days: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=ZERO)

    # Earnings
    basic_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    regular_ot_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    rest_day_ot_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    holiday_ot_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    night_differential_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_overtime_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    transportation_allowance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    meal_allowance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    housing_allowance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    communication_allowance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    other_allowances: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_allowances: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    nontaxable_allowances: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    performance_bonus: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    attendance_bonus: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    productivity_bonus: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    other_income: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_bonuses: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    gross_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    taxable_income: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    # Deductions
    sss_contribution: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    philhealth_contribution: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    pagibig_contribution: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    withholding_tax: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_government_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    sss_loan_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    pagibig_loan_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    company_loan_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_loan_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    cash_advance_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    salary_advance_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    tardiness_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    absence_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    leave_deduction_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    uniform_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    tool_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    miscellaneous_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    net_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    adjustments_total: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    final_net_pay: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    # Employer shares (liability, not deducted)
    sss_employer_share: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    philhealth_employer_share: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    pagibig_employer_share: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    # Flags and status
    has_exceptions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exception_flags: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    has_adjustments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    calculation_status: Mapped[str] = mapped_column(
        String, nullable=False, default=CalculationStatus.PENDING.value
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    calculation_details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    inputs_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rules_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)

    calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    calculated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    locked_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "employee_id",
            "payroll_period_id",
            "version",
            name="employee_payroll_calculation_version_unique",
        ),
        CheckConstraint("version >= 1", name="employee_payroll_calculation_version_check"),
        CheckConstraint(
            "calculation_status IN ('pending', 'calculated', 'exception', 'adjusted', 'locked')",
            name="employee_payroll_calculation_status_check",
        ),
    )

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    @property
    def is_current(self) -> bool:
        return self.superseded_at is None

    @property
    def total_loans(self) -> Decimal:
        return sum_money(getattr(self, f) for f in self.LOAN_FIELDS)

    @property
    def total_advances(self) -> Decimal:
        return sum_money(getattr(self, f) for f in self.ADVANCE_FIELDS)

    @property
    def total_attendance_deductions(self) -> Decimal:
        return sum_money(getattr(self, f) for f in self.ATTENDANCE_DEDUCTION_FIELDS)

    @property
    def total_other_deductions(self) -> Decimal:
        return sum_money(getattr(self, f) for f in self.OTHER_DEDUCTION_FIELDS)

    def calculate_total_deductions(self) -> Decimal:
        """Government + loans + advances + tardiness/absence + leave + other."""
        return sum_money(
            [
                sum_money(getattr(self, f) for f in self.GOVERNMENT_FIELDS),
                self.total_loans,
                self.total_advances,
                self.total_attendance_deductions,
                self.leave_deduction_amount,
                self.total_other_deductions,
            ]
        )

    def recompute_totals(self) -> None:
        """Derive every subtotal and total from the itemized fields."""
        self.total_overtime_pay = sum_money(getattr(self, f) for f in self.OVERTIME_FIELDS)
        self.total_allowances = sum_money(getattr(self, f) for f in self.ALLOWANCE_FIELDS)
        self.total_bonuses = sum_money(getattr(self, f) for f in self.BONUS_FIELDS)
        self.gross_pay = sum_money(
            [self.basic_pay, self.total_overtime_pay, self.total_allowances, self.total_bonuses]
        )
        self.total_government_deductions = sum_money(
            getattr(self, f) for f in self.GOVERNMENT_FIELDS
        )
        self.total_loan_deductions = self.total_loans
        self.total_deductions = self.calculate_total_deductions()
        self.net_pay = money(to_decimal(self.gross_pay) - to_decimal(self.total_deductions))
        self.final_net_pay = money(to_decimal(self.net_pay) + to_decimal(self.adjustments_total))

    def reconciliation_errors(self) -> list[str]:
        """Check the stored totals against the itemized fields."""
        errors: list[str] = []
        expected_gross = sum_money(
            [self.basic_pay, self.total_overtime_pay, self.total_allowances, self.total_bonuses]
        )
        if abs(money(self.gross_pay) - expected_gross) > CENT:
            errors.append(f"gross_pay {self.gross_pay} != components {expected_gross}")
        expected_deductions = self.calculate_total_deductions()
        if abs(money(self.total_deductions) - expected_deductions) > CENT:
            errors.append(
                f"total_deductions {self.total_deductions} != itemized {expected_deductions}"
            )
        expected_net = money(to_decimal(self.gross_pay) - to_decimal(self.total_deductions))
        if abs(money(self.net_pay) - expected_net) > CENT:
            errors.append(f"net_pay {self.net_pay} != gross - deductions {expected_net}")
        expected_final = money(to_decimal(self.net_pay) + to_decimal(self.adjustments_total))
        if abs(money(self.final_net_pay) - expected_final) > CENT:
            errors.append(
                f"final_net_pay {self.final_net_pay} != net + adjustments {expected_final}"
            )
        return errors

    def copy_as_next_version(self) -> EmployeePayrollCalculation:
        """Replicate this row as version + 1 pointing back at it."""
        values = {
            attr.key: getattr(self, attr.key)
            for attr in self.__mapper__.column_attrs
            if attr.key not in self.VERSION_BOOKKEEPING
        }
        if values.get("exception_flags") is not None:
            values["exception_flags"] = list(values["exception_flags"])
        if values.get("calculation_details") is not None:
            values["calculation_details"] = dict(values["calculation_details"])
        return EmployeePayrollCalculation(
            **values,
            version=self.version + 1,
            previous_version_id=self.calculation_id,
            calculation_status=CalculationStatus.PENDING.value,
        )

    def net_pay_variation(self, previous: EmployeePayrollCalculation | None) -> Decimal | None:
        """Percent change of final net pay against another calculation."""
        if previous is None or not previous.final_net_pay:
            return None
        prev = to_decimal(previous.final_net_pay)
        change = (to_decimal(self.final_net_pay) - prev) / abs(prev) * Decimal("100")
        return change.quantize(CENT)


# ===== Adjustments =====


class PayrollAdjustment(Base, TimestampMixin):
    """A proposed post-calculation correction to one calculation."""

    __tablename__ = "payroll_adjustment"

    adjustment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    calculation_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee_payroll_calculation.calculation_id", ondelete="CASCADE"),
        nullable=False,
    )
    applied_calculation_id: Mapped[UUID | None] = mapped_column(nullable=True)

    adjustment_type: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False, default="correction")
    component: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    original_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    adjusted_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    justification: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=AdjustmentStatus.PENDING.value
    )
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    submitted_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_by: Mapped[UUID | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(nullable=True)
    applied_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "adjustment_type IN ('addition', 'deduction', 'override')",
            name="payroll_adjustment_type_check",
        ),
        CheckConstraint(
            "category IN ('retroactive_pay', 'correction', 'bonus', 'penalty', "
            "'reimbursement', 'loan_adjustment', 'government_correction', 'rounding', 'other')",
            name="payroll_adjustment_category_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'applied')",
            name="payroll_adjustment_status_check",
        ),
        CheckConstraint("amount >= 0", name="payroll_adjustment_amount_check"),
    )

    @classmethod
    def build(
        cls,
        calculation: EmployeePayrollCalculation,
        adjustment_type: str,
        reason: str,
        amount: Decimal | None = None,
        original_amount: Decimal | None = None,
        adjusted_amount: Decimal | None = None,
        **fields: object,
    ) -> PayrollAdjustment:
        if not reason or not reason.strip():
            raise ValidationFailure("An adjustment reason is required", "reason")
        if adjustment_type == "override":
            if original_amount is None or adjusted_amount is None:
                raise ValidationFailure(
                    "Override adjustments need original_amount and adjusted_amount",
                    "adjusted_amount",
                )
            original_amount = money(original_amount)
            adjusted_amount = money(adjusted_amount)
            amount = abs(adjusted_amount - original_amount)
        elif adjustment_type in ("addition", "deduction"):
            if amount is None or money(amount) <= 0:
                raise ValidationFailure("Adjustment amount must be positive", "amount")
            amount = money(amount)
        else:
            raise ValidationFailure(
                f"Unknown adjustment type '{adjustment_type}'", "adjustment_type"
            )
        return cls(
            payroll_period_id=calculation.payroll_period_id,
            employee_id=calculation.employee_id,
            calculation_id=calculation.calculation_id,
            adjustment_type=adjustment_type,
            amount=amount,
            original_amount=original_amount,
            adjusted_amount=adjusted_amount,
            reason=reason,
            **fields,
        )

    def signed_amount(self) -> Decimal:
        """+amount for additions, -amount for deductions, adjusted - original for overrides."""
        if self.adjustment_type == "addition":
            return money(self.amount)
        if self.adjustment_type == "deduction":
            return -money(self.amount)
        return money(to_decimal(self.adjusted_amount) - to_decimal(self.original_amount))

    def needs_approval(self, threshold: Decimal) -> bool:
        return abs(self.signed_amount()) >= threshold

    def can_apply(self) -> bool:
        return self.status == AdjustmentStatus.APPROVED and self.applied_at is None


# ===== Exceptions =====

EXCEPTION_SEVERITIES: dict[str, str] = {
    "calculation_error": "critical",
    "negative_net_pay": "critical",
    "data_inconsistency": "critical",
    "excessive_deduction": "high",
    "high_net_pay": "high",
    "missing_timekeeping": "high",
    "high_variance": "medium",
    "low_net_pay": "medium",
    "missing_government_id": "medium",
    "missing_leave_data": "low",
}


class PayrollException(Base, TimestampMixin):
    """A flagged anomaly on a calculation awaiting review."""

    __tablename__ = "payroll_exception"

    exception_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    calculation_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee_payroll_calculation.calculation_id", ondelete="CASCADE"),
        nullable=False,
    )
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    exception_type: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False, default="medium")
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    current_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    expected_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    variance_percent: Mapped[Decimal | None] = mapped_column(Numeric(9, 2), nullable=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ExceptionStatus.OPEN.value
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    is_auto_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    detection_rule: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "exception_type IN ('high_variance', 'low_net_pay', 'high_net_pay', "
            "'negative_net_pay', 'missing_timekeeping', 'missing_government_id', "
            "'excessive_deduction', 'missing_leave_data', 'calculation_error', "
            "'data_inconsistency')",
            name="payroll_exception_type_check",
        ),
        CheckConstraint(
            "severity IN ('critical', 'high', 'medium', 'low')",
            name="payroll_exception_severity_check",
        ),
        CheckConstraint(
            "status IN ('open', 'acknowledged', 'resolved', 'ignored')",
            name="payroll_exception_status_check",
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.status == ExceptionStatus.OPEN


# ===== Guards =====

_LOCKED_ROW_WRITABLE = frozenset({"superseded_at", "superseded_by_id"})


@event.listens_for(EmployeePayrollCalculation, "before_update")
def _reject_locked_calculation_update(mapper, connection, target) -> None:
    """A locked calculation only accepts version-chain bookkeeping."""
    state = inspect(target)
    history = state.attrs.locked_at.history
    if history.has_changes():
        previously_locked = history.deleted[0] if history.deleted else None
    else:
        previously_locked = target.locked_at
    if previously_locked is None:
        return
    changed = [
        attr.key
        for attr in mapper.column_attrs
        if attr.key not in _LOCKED_ROW_WRITABLE
        and state.attrs[attr.key].history.has_changes()
    ]
    if changed:
        raise IntegrityViolation(
            f"Calculation {target.calculation_id} is locked; create a new version instead",
            {"calculation_id": str(target.calculation_id), "columns": sorted(changed)},
        )
