"""Append-only audit trail models.

Rows are written once. UPDATE and DELETE through the ORM raise
IntegrityViolation; retention is tracked per row with retention_until.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from peso_payroll.errors import IntegrityViolation
from peso_payroll.models.base import Base, JSONType, utcnow


class AuditEntityType(str, Enum):
    """Entity kinds a PaymentAuditLog row may reference."""

    PAYROLL_PERIOD = "payroll_period"
    CALCULATION = "employee_payroll_calculation"
    ADJUSTMENT = "payroll_adjustment"
    EXCEPTION = "payroll_exception"
    PAYMENT = "payroll_payment"
    BANK_FILE_BATCH = "bank_file_batch"
    CASH_DISTRIBUTION_BATCH = "cash_distribution_batch"
    PAYSLIP = "payslip"
    LOAN = "employee_loan"
    LOAN_DEDUCTION = "loan_deduction"


def retention_date(created: datetime, years: int) -> date:
    """Calendar date `years` after `created`; Feb 29 falls back to Feb 28."""
    day = created.date()
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return day.replace(year=day.year + years, day=28)


class PaymentAuditLog(Base):
    """One mutation of a payroll entity, with before/after values."""

    __tablename__ = "payment_audit_log"

    audit_log_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_type: Mapped[str] = mapped_column(String, nullable=False, default="system")
    actor_id: Mapped[UUID | None] = mapped_column(nullable=True)
    actor_name: Mapped[str | None] = mapped_column(String, nullable=True)
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    retention_until: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "actor_type IN ('system', 'webhook', 'user')",
            name="payment_audit_log_actor_type_check",
        ),
    )


class PayrollApprovalHistory(Base):
    """One approval-chain step on a period, with a totals snapshot."""

    __tablename__ = "payroll_approval_history"

    approval_history_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    approval_step: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    status_from: Mapped[str] = mapped_column(String, nullable=False)
    status_to: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    user_name: Mapped[str] = mapped_column(String, nullable=False)
    user_role: Mapped[str] = mapped_column(String, nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    period_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    retention_until: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "approval_step IN ('payroll_officer_submit', 'hr_manager_approve', "
            "'hr_manager_reject', 'office_admin_approve', 'office_admin_reject', "
            "'locked', 'unlocked')",
            name="payroll_approval_history_step_check",
        ),
        CheckConstraint(
            "action IN ('submit', 'approve', 'reject', 'lock', 'unlock')",
            name="payroll_approval_history_action_check",
        ),
    )


class PayrollCalculationLog(Base):
    """Run-level (and per-employee failure) calculation log entry."""

    __tablename__ = "payroll_calculation_log"

    calculation_log_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.payroll_period_id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[UUID | None] = mapped_column(nullable=True)
    log_type: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False, default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    employees_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    employees_success: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    employees_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exceptions_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_time_seconds: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    actor_type: Mapped[str] = mapped_column(String, nullable=False, default="system")
    actor_id: Mapped[UUID | None] = mapped_column(nullable=True)
    actor_name: Mapped[str] = mapped_column(String, nullable=False, default="System")
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    retention_until: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "log_type IN ('calculation_started', 'calculation_completed', "
            "'calculation_failed', 'calculation_cancelled', 'employee_failed')",
            name="payroll_calculation_log_type_check",
        ),
        CheckConstraint(
            "severity IN ('info', 'warning', 'error', 'critical')",
            name="payroll_calculation_log_severity_check",
        ),
    )


AUDIT_MODELS = (PaymentAuditLog, PayrollApprovalHistory, PayrollCalculationLog)


def _reject_update(mapper, connection, target) -> None:
    raise IntegrityViolation(
        f"{type(target).__name__} is append-only; rows cannot be updated",
        {"table": mapper.local_table.name},
    )


def _reject_delete(mapper, connection, target) -> None:
    raise IntegrityViolation(
        f"{type(target).__name__} is append-only; rows cannot be deleted",
        {"table": mapper.local_table.name},
    )


for _model in AUDIT_MODELS:
    event.listen(_model, "before_update", _reject_update)
    event.listen(_model, "before_delete", _reject_delete)
