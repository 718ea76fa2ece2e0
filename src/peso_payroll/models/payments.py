"""Payment channel, disbursement, batch and payslip models."""

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from peso_payroll.errors import StateConflict, ValidationFailure
from peso_payroll.models.base import Base, JSONType, SoftDeleteMixin, TimestampMixin
from peso_payroll.money import CENT, ZERO, money, sum_money, to_decimal
from peso_payroll.services.state_machine import (
    BankBatchStateMachine,
    BankBatchStatus,
    CashBatchStateMachine,
    CashBatchStatus,
    PaymentStateMachine,
    PaymentStatus,
    PayslipStateMachine,
    PayslipStatus,
)

# Peso bills then coins; anything left is counted in centavo coins
DENOMINATIONS: tuple[Decimal, ...] = tuple(
    Decimal(d)
    for d in ("1000", "500", "200", "100", "50", "20", "10", "5", "1", "0.25", "0.01")
)


def denomination_breakdown(amount: Decimal) -> dict[str, int]:
    """Greedy split of an amount into bills and coins.

    Keys are the denomination as a string ("1000", "0.25", ...); only
    denominations actually used appear.
    """
    remaining = money(amount)
    if remaining < 0:
        raise ValidationFailure("Cannot break down a negative amount", "amount")
    counts: dict[str, int] = {}
    for denom in DENOMINATIONS:
        count = int(remaining // denom)
        if count:
            counts[str(denom)] = count
            remaining -= denom * count
    return counts


def merge_breakdowns(breakdowns: list[dict[str, int]]) -> dict[str, int]:
    total: dict[str, int] = {}
    for breakdown in breakdowns:
        for denom, count in breakdown.items():
            total[denom] = total.get(denom, 0) + count
    return {str(d): total[str(d)] for d in DENOMINATIONS if str(d) in total}


def breakdown_total(breakdown: dict[str, int]) -> Decimal:
    return money(sum((Decimal(d) * n for d, n in breakdown.items()), Decimal("0")))


class PaymentMethod(Base, TimestampMixin, SoftDeleteMixin):
    """Configuration for one disbursement channel."""

    __tablename__ = "payment_method"

    payment_method_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    method_type: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_employee_setup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    supports_bulk_payment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    transaction_fee: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    min_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    settlement_speed: Mapped[str] = mapped_column(String, nullable=False, default="manual")
    processing_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cutoff_time: Mapped[time | None] = mapped_column(Time, nullable=True)

    bank_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_format: Mapped[str | None] = mapped_column(String(10), nullable=True)
    file_template: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    provider_name: Mapped[str | None] = mapped_column(String, nullable=True)

    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=999)
    configured_by: Mapped[UUID | None] = mapped_column(nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "method_type IN ('cash', 'bank', 'ewallet')",
            name="payment_method_type_check",
        ),
        CheckConstraint(
            "settlement_speed IN ('instant', 'same_day', 'next_day', 'manual')",
            name="payment_method_speed_check",
        ),
        CheckConstraint(
            "file_format IS NULL OR file_format IN ('csv', 'xlsx')",
            name="payment_method_file_format_check",
        ),
        CheckConstraint(
            "min_amount IS NULL OR max_amount IS NULL OR max_amount >= min_amount",
            name="payment_method_amount_range_check",
        ),
    )

    @property
    def is_cash(self) -> bool:
        return self.method_type == "cash"

    @property
    def is_bank(self) -> bool:
        return self.method_type == "bank"

    @property
    def is_ewallet(self) -> bool:
        return self.method_type == "ewallet"

    @property
    def transfer_type(self) -> str:
        """instapay for instant/same-day settlement, pesonet otherwise."""
        return "instapay" if self.settlement_speed in ("instant", "same_day") else "pesonet"

    def supports_amount(self, amount: Decimal) -> bool:
        amount = to_decimal(amount)
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True

    def calculate_fee(self, amount: Decimal) -> Decimal:
        return money(self.transaction_fee)

    def is_available_for_payment(self, now: datetime) -> bool:
        """Enabled, and for same-day settlement not past today's cutoff."""
        if not self.is_enabled:
            return False
        if self.settlement_speed == "same_day" and self.cutoff_time is not None:
            if now.time() > self.cutoff_time:
                return False
        return True


class PayrollPayment(Base, TimestampMixin, SoftDeleteMixin):
    """One employee's disbursement for one period.

    Amounts are copied from the source calculation when the payment is created
    and never change afterwards. final_net_pay is the amount disbursed.
    """

    __tablename__ = "payroll_payment"

    DEDUCTION_FIELDS: ClassVar[tuple[str, ...]] = (
        "sss_deduction",
        "philhealth_deduction",
        "pagibig_deduction",
        "tax_deduction",
        "loan_deduction",
        "advance_deduction",
        "leave_deduction",
        "attendance_deduction",
        "other_deductions",
    )

    payment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    calculation_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee_payroll_calculation.calculation_id", ondelete="SET NULL"),
        nullable=True,
    )
    payment_method_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_method.payment_method_id", ondelete="RESTRICT"), nullable=False
    )

    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)

    gross_pay: Mapped[Decimal] = mapped_column(nullable=False)
    total_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    net_pay: Mapped[Decimal] = mapped_column(nullable=False)
    adjustments_total: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    final_net_pay: Mapped[Decimal] = mapped_column(nullable=False)
    transaction_fee: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    sss_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    philhealth_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    pagibig_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    tax_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    loan_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    advance_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    leave_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    attendance_deduction: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    other_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    payment_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    batch_number: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    bank_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_account_token: Mapped[str | None] = mapped_column(String, nullable=True)
    bank_account_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    bank_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)

    ewallet_provider: Mapped[str | None] = mapped_column(String, nullable=True)
    ewallet_account_token: Mapped[str | None] = mapped_column(String, nullable=True)
    ewallet_account_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    ewallet_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)

    envelope_number: Mapped[str | None] = mapped_column(String, nullable=True)
    denomination_breakdown: Mapped[dict[str, int] | None] = mapped_column(
        JSONType, nullable=True
    )
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    released_by: Mapped[UUID | None] = mapped_column(nullable=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=PaymentStatus.PENDING.value
    )
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    confirmation_code: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    prepared_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("employee_id", "payroll_period_id", name="payroll_payment_unique"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'paid', 'failed', 'unclaimed')",
            name="payroll_payment_status_check",
        ),
        CheckConstraint("retry_count >= 0", name="payroll_payment_retry_check"),
    )

    def calculate_total_deductions(self) -> Decimal:
        return sum_money(getattr(self, f) for f in self.DEDUCTION_FIELDS)

    def reconciliation_errors(self) -> list[str]:
        errors: list[str] = []
        itemized = self.calculate_total_deductions()
        if abs(money(self.total_deductions) - itemized) > CENT:
            errors.append(f"total_deductions {self.total_deductions} != itemized {itemized}")
        expected_net = money(to_decimal(self.gross_pay) - to_decimal(self.total_deductions))
        if abs(money(self.net_pay) - expected_net) > CENT:
            errors.append(f"net_pay {self.net_pay} != gross - deductions {expected_net}")
        expected_final = money(to_decimal(self.net_pay) + to_decimal(self.adjustments_total))
        if abs(money(self.final_net_pay) - expected_final) > CENT:
            errors.append(
                f"final_net_pay {self.final_net_pay} != net + adjustments {expected_final}"
            )
        return errors

    @property
    def disbursed_amount(self) -> Decimal:
        return money(self.final_net_pay)

    def can_retry(self, max_retries: int = 3) -> bool:
        return self.status == PaymentStatus.FAILED and self.retry_count < max_retries

    def _move(self, to_status: PaymentStatus, reason: str | None = None) -> None:
        PaymentStateMachine.validate_transition(self.status, to_status, reason)
        self.status = to_status.value

    def mark_as_processing(self, now: datetime) -> None:
        self._move(PaymentStatus.PROCESSING)
        self.processed_at = now

    def mark_as_paid(
        self,
        now: datetime,
        confirmation_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
        **attrs: Any,
    ) -> None:
        """Settle the payment, merging provider confirmation attributes."""
        self._move(PaymentStatus.PAID)
        self.paid_at = now
        if confirmation_code is not None:
            self.confirmation_code = confirmation_code
        if provider_response:
            merged = dict(self.provider_response or {})
            merged.update(provider_response)
            self.provider_response = merged
        for key, value in attrs.items():
            if not hasattr(type(self), key):
                raise ValidationFailure(f"Unknown payment attribute '{key}'", key)
            setattr(self, key, value)

    def mark_as_failed(
        self,
        reason: str,
        now: datetime,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        """Record a failure. retry_count is left to the retry path."""
        self._move(PaymentStatus.FAILED, reason)
        self.failed_at = now
        self.failure_reason = reason
        if provider_response is not None:
            self.provider_response = provider_response

    def mark_as_unclaimed(self, now: datetime) -> None:
        self._move(PaymentStatus.UNCLAIMED)
        self.notes = f"Unclaimed as of {now:%Y-%m-%d}"

    def start_retry(self, now: datetime, max_retries: int = 3) -> None:
        if not self.can_retry(max_retries):
            raise StateConflict(
                f"Payment {self.payment_reference or self.payment_id} cannot be retried "
                f"(status={self.status}, retry_count={self.retry_count}); reissue manually"
            )
        self.retry_count += 1
        self.last_retry_at = now
        self._move(PaymentStatus.PROCESSING, "retry")
        self.processed_at = now


class BankFileBatch(Base, TimestampMixin, SoftDeleteMixin):
    """Bank payments for one period and bank, rendered as one transfer file."""

    __tablename__ = "bank_file_batch"

    bank_file_batch_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    payment_method_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_method.payment_method_id", ondelete="RESTRICT"), nullable=False
    )
    batch_number: Mapped[str] = mapped_column(String, nullable=False)
    batch_name: Mapped[str] = mapped_column(String, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)

    bank_code: Mapped[str] = mapped_column(String(10), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    transfer_type: Mapped[str] = mapped_column(String, nullable=False, default="pesonet")

    file_name: Mapped[str | None] = mapped_column(String, nullable=True)
    file_format: Mapped[str] = mapped_column(String(10), nullable=False, default="csv")
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    total_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    successful_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_fees: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    settlement_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    settlement_reference: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=BankBatchStatus.DRAFT.value
    )
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    validation_errors: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)

    bank_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    bank_confirmation_number: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    generated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    submitted_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("batch_number", name="bank_file_batch_number_unique"),
        CheckConstraint(
            "transfer_type IN ('instapay', 'pesonet', 'internal')",
            name="bank_file_batch_transfer_type_check",
        ),
        CheckConstraint(
            "status IN ('draft', 'ready', 'submitted', 'processing', 'completed', "
            "'partially_completed', 'failed')",
            name="bank_file_batch_status_check",
        ),
    )

    def can_submit(self) -> bool:
        """Validated and ready; is_validated alone is never enough."""
        return bool(self.is_validated) and self.status == BankBatchStatus.READY

    def success_rate(self) -> Decimal:
        if not self.total_employees:
            return ZERO
        return money(Decimal(self.successful_count) * 100 / Decimal(self.total_employees))

    def move_to(self, to_status: BankBatchStatus, reason: str | None = None) -> None:
        BankBatchStateMachine.validate_transition(self.status, to_status, reason)
        self.status = to_status.value


class CashDistributionBatch(Base, TimestampMixin, SoftDeleteMixin):
    """Cash envelopes for one period, released under dual verification."""

    __tablename__ = "cash_distribution_batch"

    cash_distribution_batch_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    batch_number: Mapped[str] = mapped_column(String, nullable=False)
    distribution_date: Mapped[date] = mapped_column(Date, nullable=False)
    distribution_location: Mapped[str | None] = mapped_column(String, nullable=True)

    total_cash_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    denomination_breakdown: Mapped[dict[str, int] | None] = mapped_column(
        JSONType, nullable=True
    )

    withdrawal_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    withdrawal_source: Mapped[str | None] = mapped_column(String, nullable=True)
    withdrawal_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    withdrawal_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    withdrawn_by: Mapped[UUID | None] = mapped_column(nullable=True)

    counted_by: Mapped[UUID | None] = mapped_column(nullable=True)
    witnessed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    verification_at: Mapped[datetime | None] = mapped_column(nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    envelopes_prepared: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    envelopes_distributed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    envelopes_unclaimed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_distributed: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    amount_unclaimed: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    distribution_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    distribution_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    unclaimed_deadline: Mapped[date | None] = mapped_column(Date, nullable=True)
    unclaimed_disposition: Mapped[str | None] = mapped_column(String, nullable=True)
    redeposit_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    redeposit_reference: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=CashBatchStatus.PREPARING.value
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    prepared_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("batch_number", name="cash_distribution_batch_number_unique"),
        CheckConstraint(
            "status IN ('preparing', 'ready', 'distributing', 'completed', "
            "'partially_completed', 'reconciled')",
            name="cash_distribution_batch_status_check",
        ),
        CheckConstraint(
            "unclaimed_disposition IS NULL OR unclaimed_disposition IN "
            "('redeposited', 'held', 'next_period')",
            name="cash_distribution_batch_disposition_check",
        ),
    )

    @property
    def is_verified(self) -> bool:
        """Both the counter and the witness have signed off."""
        return self.counted_by is not None and self.witnessed_by is not None

    def can_start_distribution(self) -> bool:
        return self.is_verified and self.status == CashBatchStatus.READY

    @property
    def has_unclaimed(self) -> bool:
        return self.envelopes_unclaimed > 0

    def is_unclaimed_deadline_passed(self, today: date) -> bool:
        return self.unclaimed_deadline is not None and today > self.unclaimed_deadline

    def can_reconcile(self) -> bool:
        if self.status not in (CashBatchStatus.COMPLETED, CashBatchStatus.PARTIALLY_COMPLETED):
            return False
        return not self.has_unclaimed or self.redeposit_reference is not None

    def move_to(self, to_status: CashBatchStatus, reason: str | None = None) -> None:
        CashBatchStateMachine.validate_transition(self.status, to_status, reason)
        self.status = to_status.value


class Payslip(Base, TimestampMixin, SoftDeleteMixin):
    """Signed snapshot of a settled payment."""

    __tablename__ = "payslip"

    # Fields covered by the signature, in canonical order
    SIGNED_FIELDS: ClassVar[tuple[str, ...]] = (
        "payslip_number",
        "employee_number",
        "period_start",
        "period_end",
        "payment_date",
        "total_earnings",
        "total_deductions",
        "net_pay",
        "earnings_data",
        "deductions_data",
        "ytd_gross",
        "ytd_tax",
        "ytd_net",
    )

    payslip_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_payment.payment_id", ondelete="CASCADE"), nullable=False
    )
    payslip_number: Mapped[str] = mapped_column(String, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)

    employee_number: Mapped[str] = mapped_column(String(20), nullable=False)
    employee_name: Mapped[str] = mapped_column(String, nullable=False)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    position: Mapped[str | None] = mapped_column(String, nullable=True)
    sss_number: Mapped[str | None] = mapped_column(String, nullable=True)
    philhealth_number: Mapped[str | None] = mapped_column(String, nullable=True)
    pagibig_number: Mapped[str | None] = mapped_column(String, nullable=True)
    tin: Mapped[str | None] = mapped_column(String, nullable=True)

    earnings_data: Mapped[dict[str, str]] = mapped_column(JSONType, nullable=False)
    total_earnings: Mapped[Decimal] = mapped_column(nullable=False)
    deductions_data: Mapped[dict[str, str]] = mapped_column(JSONType, nullable=False)
    total_deductions: Mapped[Decimal] = mapped_column(nullable=False)
    net_pay: Mapped[Decimal] = mapped_column(nullable=False)
    leave_summary: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    attendance_summary: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    ytd_gross: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    ytd_tax: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    ytd_sss: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    ytd_philhealth: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    ytd_pagibig: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    ytd_net: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    distribution_method: Mapped[str | None] = mapped_column(String, nullable=True)
    distributed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(nullable=True)
    is_viewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    viewed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    signature_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    qr_code_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=PayslipStatus.DRAFT.value
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    generated_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("payslip_number", name="payslip_number_unique"),
        CheckConstraint(
            "status IN ('draft', 'generated', 'distributed', 'acknowledged')",
            name="payslip_status_check",
        ),
        CheckConstraint(
            "distribution_method IS NULL OR distribution_method IN "
            "('email', 'portal', 'print', 'sms')",
            name="payslip_distribution_method_check",
        ),
    )

    def move_to(self, to_status: PayslipStatus) -> None:
        PayslipStateMachine.validate_transition(self.status, to_status)
        self.status = to_status.value

    def mark_viewed(self, now: datetime) -> bool:
        """Record the first view only. Returns True when this call recorded it."""
        if self.is_viewed:
            return False
        self.is_viewed = True
        self.viewed_at = now
        return True
