"""Employee roster and financial profile models."""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from peso_payroll.config import Settings, get_settings
from peso_payroll.errors import ValidationFailure
from peso_payroll.models.base import Base, SoftDeleteMixin, TimestampMixin
from peso_payroll.money import money, to_decimal
from peso_payroll.vault import SensitiveAccount

GOVERNMENT_NUMBER_PATTERNS = {
    "sss": re.compile(r"^\d{2}-\d{7}-\d{1}$"),
    "philhealth": re.compile(r"^\d{12}$"),
    "pagibig": re.compile(r"^\d{4}-\d{4}-\d{4}$"),
    "tin": re.compile(r"^\d{3}-\d{3}-\d{3}-\d{3}$"),
}

# (upper bound exclusive, bracket code); last bracket is open-ended
SSS_BRACKETS: list[tuple[Decimal | None, str]] = [
    (Decimal("4250"), "E1"),
    (Decimal("8000"), "E2"),
    (Decimal("16000"), "E3"),
    (Decimal("30000"), "E4"),
    (Decimal("40000"), "E5"),
    (None, "E6"),
]


def validate_government_number(kind: str, number: str | None) -> bool:
    """Check a government number against its official format."""
    if number is None:
        return True
    pattern = GOVERNMENT_NUMBER_PATTERNS.get(kind)
    if pattern is None:
        raise ValueError(f"Unknown government number type: {kind}")
    return pattern.match(number) is not None


def sss_bracket_for(monthly_salary: Decimal) -> str:
    for upper, code in SSS_BRACKETS:
        if upper is None or monthly_salary < upper:
            return code
    return SSS_BRACKETS[-1][1]


class Employee(Base, TimestampMixin, SoftDeleteMixin):
    """Roster entry consumed from HR."""

    __tablename__ = "employee"

    employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_number: Mapped[str] = mapped_column(String(40), nullable=False)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    position: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    hire_date: Mapped[date] = mapped_column(Date, nullable=False)
    separation_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint("employee_number", name="employee_number_unique"),
        CheckConstraint(
            "status IN ('active', 'on_leave', 'suspended', 'separated')",
            name="employee_status_check",
        ),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def is_payable_in(self, period_start: date, period_end: date) -> bool:
        """Employed at some point during the period."""
        if self.deleted_at is not None or self.hire_date > period_end:
            return False
        return self.separation_date is None or self.separation_date >= period_start


class EmployeePayrollInfo(Base, TimestampMixin, SoftDeleteMixin):
    """Effective-dated salary, statutory and payment profile."""

    __tablename__ = "employee_payroll_info"

    employee_payroll_info_id: Mapped[UUID] = mapped_column(
        primary_key=True, default=uuid4
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )

    salary_type: Mapped[str] = mapped_column(String, nullable=False)
    basic_salary: Mapped[Decimal | None] = mapped_column(nullable=True)
    daily_rate: Mapped[Decimal | None] = mapped_column(nullable=True)
    hourly_rate: Mapped[Decimal | None] = mapped_column(nullable=True)

    tax_status: Mapped[str] = mapped_column(String(8), nullable=False, default="S")
    sss_number: Mapped[str | None] = mapped_column(String, nullable=True)
    philhealth_number: Mapped[str | None] = mapped_column(String, nullable=True)
    pagibig_number: Mapped[str | None] = mapped_column(String, nullable=True)
    tin_number: Mapped[str | None] = mapped_column(String, nullable=True)
    sss_bracket: Mapped[str | None] = mapped_column(String(4), nullable=True)
    pagibig_employee_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("1.00")
    )
    is_sss_voluntary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    payment_method: Mapped[str] = mapped_column(String, nullable=False, default="cash")
    bank_code: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_account_token: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_account_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    bank_account_name: Mapped[str | None] = mapped_column(String, nullable=True)
    ewallet_provider: Mapped[str | None] = mapped_column(String, nullable=True)
    ewallet_account_token: Mapped[str | None] = mapped_column(String, nullable=True)
    ewallet_account_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)

    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "salary_type IN ('monthly', 'daily', 'hourly')",
            name="employee_payroll_info_salary_type_check",
        ),
        CheckConstraint(
            "payment_method IN ('cash', 'bank', 'ewallet')",
            name="employee_payroll_info_payment_method_check",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date >= effective_date",
            name="employee_payroll_info_dates_check",
        ),
    )

    @classmethod
    def build(
        cls,
        employee_id: UUID,
        salary_type: str,
        effective_date: date,
        basic_salary: Decimal | None = None,
        daily_rate: Decimal | None = None,
        hourly_rate: Decimal | None = None,
        settings: Settings | None = None,
        bank_account: SensitiveAccount | None = None,
        ewallet_account: SensitiveAccount | None = None,
        **fields: object,
    ) -> EmployeePayrollInfo:
        """Construct a profile with derived rates and SSS bracket filled in.

        Raises ValidationFailure for malformed government numbers or a salary
        type without the rate it needs.
        """
        settings = settings or get_settings()
        if salary_type not in ("monthly", "daily", "hourly"):
            raise ValidationFailure(f"Unknown salary type '{salary_type}'", "salary_type")

        for kind in ("sss", "philhealth", "pagibig", "tin"):
            number = fields.get(f"{kind}_number")
            if number is not None and not validate_government_number(kind, str(number)):
                raise ValidationFailure(
                    f"Invalid {kind.upper()} number format: {number}", f"{kind}_number"
                )

        basic = money(basic_salary) if basic_salary is not None else None
        daily = money(daily_rate) if daily_rate is not None else None
        hourly = money(hourly_rate) if hourly_rate is not None else None

        if salary_type == "monthly":
            if basic is None:
                raise ValidationFailure("Monthly salary requires basic_salary", "basic_salary")
            if daily is None:
                daily = money(basic / settings.working_days_per_month)
        elif salary_type == "hourly":
            if hourly is None:
                raise ValidationFailure("Hourly salary requires hourly_rate", "hourly_rate")
            if daily is None:
                daily = money(hourly * settings.hours_per_day)
        elif daily is None:
            raise ValidationFailure("Daily salary requires daily_rate", "daily_rate")

        if hourly is None and daily is not None:
            hourly = money(daily / settings.hours_per_day)
        if basic is None and daily is not None:
            basic = money(daily * settings.working_days_per_month)

        info = cls(
            employee_id=employee_id,
            salary_type=salary_type,
            basic_salary=basic,
            daily_rate=daily,
            hourly_rate=hourly,
            effective_date=effective_date,
            **fields,
        )
        if info.sss_bracket is None and basic is not None:
            info.sss_bracket = sss_bracket_for(basic)
        if info.pagibig_employee_rate is None:
            info.pagibig_employee_rate = Decimal("1.00")
        if bank_account is not None:
            info.bank_account_token = bank_account.token
            info.bank_account_last4 = bank_account.last4
        if ewallet_account is not None:
            info.ewallet_account_token = ewallet_account.token
            info.ewallet_account_last4 = ewallet_account.last4
        return info

    @property
    def bank_account(self) -> SensitiveAccount | None:
        if not self.bank_account_token:
            return None
        return SensitiveAccount(self.bank_account_token, self.bank_account_last4 or "")

    @property
    def ewallet_account(self) -> SensitiveAccount | None:
        if not self.ewallet_account_token:
            return None
        return SensitiveAccount(self.ewallet_account_token, self.ewallet_account_last4 or "")

    @property
    def missing_government_ids(self) -> list[str]:
        missing = []
        for kind in ("sss", "philhealth", "pagibig", "tin"):
            if not getattr(self, f"{kind}_number"):
                missing.append(kind)
        return missing

    def is_active_on(self, as_of_date: date) -> bool:
        """Check if this profile applies on a given date."""
        if not self.is_active or self.deleted_at is not None:
            return False
        if self.effective_date > as_of_date:
            return False
        return self.end_date is None or self.end_date >= as_of_date


class EmployeeAllowance(Base, TimestampMixin, SoftDeleteMixin):
    """Recurring allowance with an activation window."""

    __tablename__ = "employee_allowance"

    employee_allowance_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    allowance_type: Mapped[str] = mapped_column(String, nullable=False)
    allowance_name: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    frequency: Mapped[str] = mapped_column(String, nullable=False, default="per_payroll")
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_deminimis: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deminimis_limit_monthly: Mapped[Decimal | None] = mapped_column(nullable=True)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "allowance_type IN ('transportation', 'meal', 'housing', 'communication', "
            "'rice', 'clothing', 'laundry', 'medical', 'other')",
            name="employee_allowance_type_check",
        ),
        CheckConstraint(
            "frequency IN ('per_payroll', 'monthly')",
            name="employee_allowance_frequency_check",
        ),
        CheckConstraint("amount >= 0", name="employee_allowance_amount_check"),
    )

    def is_active_between(self, start: date, end: date) -> bool:
        """effective_date <= period end AND (end_date is null OR end_date >= period start)."""
        if not self.is_active or self.deleted_at is not None:
            return False
        if self.effective_date > end:
            return False
        return self.end_date is None or self.end_date >= start

    def amount_for_period(self, periods_per_month: int) -> Decimal:
        if self.frequency == "monthly":
            return money(to_decimal(self.amount) / periods_per_month)
        return money(self.amount)


class EmployeeDeduction(Base, TimestampMixin, SoftDeleteMixin):
    """Recurring or one-time deduction (advances, uniform, tools, penalties)."""

    __tablename__ = "employee_deduction"

    employee_deduction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    deduction_type: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    frequency: Mapped[str] = mapped_column(String, nullable=False, default="per_payroll")
    applied_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "deduction_type IN ('cash_advance', 'salary_advance', 'uniform', 'tool', "
            "'disciplinary', 'miscellaneous')",
            name="employee_deduction_type_check",
        ),
        CheckConstraint(
            "frequency IN ('per_payroll', 'monthly', 'one_time')",
            name="employee_deduction_frequency_check",
        ),
        CheckConstraint("amount >= 0", name="employee_deduction_amount_check"),
    )

    def is_active_between(self, start: date, end: date) -> bool:
        if not self.is_active or self.deleted_at is not None:
            return False
        if self.effective_date > end:
            return False
        return self.end_date is None or self.end_date >= start

    def amount_for_period(self, is_second_cutoff: bool) -> Decimal:
        """Amount to deduct in a period.

        Monthly deductions are taken on the second cutoff of the month; one-time
        deductions only until they have been applied once.
        """
        if self.frequency == "monthly" and not is_second_cutoff:
            return Decimal("0.00")
        if self.frequency == "one_time" and self.applied_count > 0:
            return Decimal("0.00")
        return money(self.amount)
