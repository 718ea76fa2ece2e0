"""Loan amortization ledger models."""

from __future__ import annotations

from datetime import date
from decimal import ROUND_DOWN, Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
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

from peso_payroll.errors import StateConflict, ValidationFailure
from peso_payroll.models.base import Base, SoftDeleteMixin, TimestampMixin
from peso_payroll.money import CENT, ZERO, money, to_decimal
from peso_payroll.services.state_machine import (
    LoanDeductionStateMachine,
    LoanDeductionStatus,
    LoanStateMachine,
    LoanStatus,
)

LOAN_TYPES = ("sss_loan", "pagibig_loan", "company_loan", "emergency_loan", "housing_loan")


class EmployeeLoan(Base, TimestampMixin, SoftDeleteMixin):
    """A loan repaid through payroll installments.

    remaining_balance == total_loan_amount - total_paid after every ledger call.
    """

    __tablename__ = "employee_loan"

    loan_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    loan_number: Mapped[str] = mapped_column(String(40), nullable=False)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    loan_type: Mapped[str] = mapped_column(String, nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True)

    principal_amount: Mapped[Decimal] = mapped_column(nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(7, 4), nullable=False, default=Decimal("0")
    )
    interest_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_loan_amount: Mapped[Decimal] = mapped_column(nullable=False)
    number_of_installments: Mapped[int] = mapped_column(Integer, nullable=False)
    installment_amount: Mapped[Decimal] = mapped_column(nullable=False)

    installments_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    remaining_balance: Mapped[Decimal] = mapped_column(nullable=False)

    loan_date: Mapped[date] = mapped_column(Date, nullable=False)
    first_deduction_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_deduction_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    defaulted_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    default_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default=LoanStatus.ACTIVE.value)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("loan_number", name="employee_loan_number_unique"),
        CheckConstraint(
            "loan_type IN ('sss_loan', 'pagibig_loan', 'company_loan', "
            "'emergency_loan', 'housing_loan')",
            name="employee_loan_type_check",
        ),
        CheckConstraint(
            "status IN ('active', 'completed', 'defaulted', 'cancelled')",
            name="employee_loan_status_check",
        ),
        CheckConstraint("number_of_installments > 0", name="employee_loan_installments_check"),
        CheckConstraint("total_loan_amount > 0", name="employee_loan_amount_check"),
    )

    @classmethod
    def build(
        cls,
        employee_id: UUID,
        loan_number: str,
        loan_type: str,
        principal_amount: Decimal,
        number_of_installments: int,
        loan_date: date,
        first_deduction_date: date,
        interest_rate: Decimal = Decimal("0"),
        **fields: object,
    ) -> EmployeeLoan:
        """Construct a loan with its derived amounts.

        The installment is rounded down to the centavo so the scheduled
        installments never exceed the total; the schedule's last row carries
        the remainder.
        """
        if loan_type not in LOAN_TYPES:
            raise ValidationFailure(f"Unknown loan type '{loan_type}'", "loan_type")
        if number_of_installments <= 0:
            raise ValidationFailure(
                "number_of_installments must be positive", "number_of_installments"
            )
        principal = money(principal_amount)
        if principal <= 0:
            raise ValidationFailure("principal_amount must be positive", "principal_amount")

        interest = money(principal * to_decimal(interest_rate) / Decimal("100"))
        total = principal + interest
        installment = (total / number_of_installments).quantize(CENT, rounding=ROUND_DOWN)
        if installment <= 0:
            raise ValidationFailure("Installment amount rounds to zero", "number_of_installments")

        return cls(
            employee_id=employee_id,
            loan_number=loan_number,
            loan_type=loan_type,
            principal_amount=principal,
            interest_rate=to_decimal(interest_rate),
            interest_amount=interest,
            total_loan_amount=total,
            number_of_installments=number_of_installments,
            installment_amount=installment,
            remaining_balance=total,
            loan_date=loan_date,
            first_deduction_date=first_deduction_date,
            **fields,
        )

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def remaining_installments(self) -> int:
        return max(self.number_of_installments - self.installments_paid, 0)

    def scheduled_amount(self, installment_number: int) -> Decimal:
        """Scheduled amount of one installment; the last absorbs rounding."""
        if installment_number < self.number_of_installments:
            return money(self.installment_amount)
        paid_by_schedule = money(self.installment_amount) * (self.number_of_installments - 1)
        return money(to_decimal(self.total_loan_amount) - paid_by_schedule)

    def record_deduction(self, amount: Decimal, on_date: date) -> bool:
        """Post one installment payment to the loan.

        Returns True when this deduction completed the loan.
        """
        if self.status != LoanStatus.ACTIVE:
            raise StateConflict(f"Loan {self.loan_number} is {self.status}, not active")
        amount = money(amount)
        if amount <= 0:
            raise ValidationFailure("Deduction amount must be positive", "amount")
        if amount > money(self.remaining_balance):
            raise ValidationFailure(
                f"Deduction {amount} exceeds remaining balance {self.remaining_balance}",
                "amount",
            )

        self.installments_paid += 1
        self.total_paid = money(to_decimal(self.total_paid) + amount)
        self.remaining_balance = money(
            to_decimal(self.total_loan_amount) - to_decimal(self.total_paid)
        )
        self.last_deduction_date = on_date

        if self.installments_paid >= self.number_of_installments:
            self.mark_as_completed(on_date, "All installments deducted")
            return True
        return False

    def mark_as_completed(self, on_date: date, reason: str) -> None:
        LoanStateMachine.validate_transition(self.status, LoanStatus.COMPLETED)
        self.status = LoanStatus.COMPLETED.value
        self.completion_date = on_date
        self.completion_reason = reason

    def mark_as_defaulted(self, reason: str, on_date: date) -> None:
        """Move an active loan to defaulted; a reason is required."""
        if not reason or not reason.strip():
            raise ValidationFailure("A default reason is required", "reason")
        LoanStateMachine.validate_transition(self.status, LoanStatus.DEFAULTED)
        self.status = LoanStatus.DEFAULTED.value
        self.defaulted_date = on_date
        self.default_reason = reason


class LoanDeduction(Base, TimestampMixin):
    """One scheduled installment of a loan."""

    __tablename__ = "loan_deduction"

    loan_deduction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    loan_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee_loan.loan_id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    payroll_period_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="SET NULL"), nullable=True
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_deduction: Mapped[Decimal] = mapped_column(nullable=False)
    penalty_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    amount_deducted: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    amount_paid: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    balance_after_payment: Mapped[Decimal | None] = mapped_column(nullable=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=LoanDeductionStatus.PENDING.value
    )
    deducted_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reference: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("loan_id", "installment_number", name="loan_deduction_installment_unique"),
        CheckConstraint(
            "status IN ('pending', 'deducted', 'paid', 'partial_paid', 'overdue', 'waived')",
            name="loan_deduction_status_check",
        ),
    )

    @property
    def amount_due(self) -> Decimal:
        return money(to_decimal(self.total_deduction) + to_decimal(self.penalty_amount))

    def get_outstanding_amount(self) -> Decimal:
        """total_deduction + penalty - amount_paid, floored at 0."""
        outstanding = self.amount_due - money(self.amount_paid)
        return outstanding if outstanding > 0 else ZERO

    def is_overdue(self, today: date) -> bool:
        if self.status in (LoanDeductionStatus.PAID, LoanDeductionStatus.WAIVED):
            return False
        return self.due_date < today

    def _move(self, to_status: LoanDeductionStatus) -> None:
        LoanDeductionStateMachine.validate_transition(self.status, to_status)
        self.status = to_status.value

    def mark_as_deducted(self, payroll_period_id: UUID | None, on_date: date) -> None:
        self._move(LoanDeductionStatus.DEDUCTED)
        self.amount_deducted = self.amount_due
        self.payroll_period_id = payroll_period_id
        self.deducted_date = on_date

    def mark_as_paid(
        self, balance_after_payment: Decimal, on_date: date, reference: str | None = None
    ) -> None:
        self._move(LoanDeductionStatus.PAID)
        self.amount_paid = self.amount_due
        self.balance_after_payment = money(balance_after_payment)
        self.paid_date = on_date
        if reference:
            self.reference = reference

    def mark_as_partial_paid(self, amount: Decimal, on_date: date) -> None:
        amount = money(amount)
        if amount <= 0:
            raise ValidationFailure("Partial payment must be positive", "amount")
        new_paid = money(self.amount_paid) + amount
        if new_paid >= self.amount_due:
            self._move(LoanDeductionStatus.PAID)
            self.amount_paid = self.amount_due
        else:
            self._move(LoanDeductionStatus.PARTIAL_PAID)
            self.amount_paid = new_paid
        self.paid_date = on_date

    def mark_as_overdue(self) -> None:
        self._move(LoanDeductionStatus.OVERDUE)

    def waive(self, reason: str) -> None:
        if not reason or not reason.strip():
            raise ValidationFailure("A waiver reason is required", "reason")
        self._move(LoanDeductionStatus.WAIVED)
        self.reference = f"WAIVED: {reason}"
