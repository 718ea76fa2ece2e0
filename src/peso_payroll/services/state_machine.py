"""State machines with transition validation for payroll entities."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

from peso_payroll.actors import Actor, Role
from peso_payroll.errors import InvalidTransitionError


class PeriodStatus(str, Enum):
    """Payroll period status values."""

    DRAFT = "draft"
    ACTIVE = "active"
    CALCULATING = "calculating"
    CALCULATED = "calculated"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    FINALIZED = "finalized"
    LOCKED = "locked"
    COMPLETED = "completed"


class CalculationStatus(str, Enum):
    PENDING = "pending"
    CALCULATED = "calculated"
    EXCEPTION = "exception"
    ADJUSTED = "adjusted"
    LOCKED = "locked"


class AdjustmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


class ExceptionStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


class LoanDeductionStatus(str, Enum):
    PENDING = "pending"
    DEDUCTED = "deducted"
    PAID = "paid"
    PARTIAL_PAID = "partial_paid"
    OVERDUE = "overdue"
    WAIVED = "waived"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    UNCLAIMED = "unclaimed"


class BankBatchStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"


class CashBatchStatus(str, Enum):
    PREPARING = "preparing"
    READY = "ready"
    DISTRIBUTING = "distributing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    RECONCILED = "reconciled"


class PayslipStatus(str, Enum):
    DRAFT = "draft"
    GENERATED = "generated"
    DISTRIBUTED = "distributed"
    ACKNOWLEDGED = "acknowledged"


class StateMachine:
    """Transition table shared by the concrete machines below."""

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(
        cls, from_status: str, to_status: str, reason: str | None = None
    ) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(_value(from_status), _value(to_status), reason)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        return list(cls.VALID_TRANSITIONS.get(current_status, []))

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)


def _value(status: str) -> str:
    return status.value if isinstance(status, Enum) else status


class PeriodStateMachine(StateMachine):
    """State machine for payroll period status transitions.

    Happy path:
    draft → calculating → calculated → under_review → approved → finalized
    → locked → completed

    Side branches:
    - draft → active → calculating (period opened for timekeeping first)
    - calculating → active (run cancelled or aborted)
    - calculated → calculating (re-run)
    - under_review → draft, approved → draft (rejected for rework)
    - locked → calculated (unlock; audited, reason required)
    """

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        PeriodStatus.DRAFT: [PeriodStatus.ACTIVE, PeriodStatus.CALCULATING],
        PeriodStatus.ACTIVE: [PeriodStatus.CALCULATING],
        PeriodStatus.CALCULATING: [PeriodStatus.CALCULATED, PeriodStatus.ACTIVE],
        PeriodStatus.CALCULATED: [PeriodStatus.CALCULATING, PeriodStatus.UNDER_REVIEW],
        PeriodStatus.UNDER_REVIEW: [PeriodStatus.APPROVED, PeriodStatus.DRAFT],
        PeriodStatus.APPROVED: [PeriodStatus.FINALIZED, PeriodStatus.DRAFT],
        PeriodStatus.FINALIZED: [PeriodStatus.LOCKED],
        PeriodStatus.LOCKED: [PeriodStatus.CALCULATED, PeriodStatus.COMPLETED],
        PeriodStatus.COMPLETED: [],  # Terminal state
    }

    # Roles allowed per transition; superadmin passes every gate
    TRANSITION_ROLES: ClassVar[dict[tuple[str, str], frozenset[Role]]] = {
        (PeriodStatus.DRAFT, PeriodStatus.ACTIVE): frozenset(
            {Role.PAYROLL_OFFICER, Role.HR_MANAGER, Role.OFFICE_ADMIN}
        ),
        (PeriodStatus.DRAFT, PeriodStatus.CALCULATING): frozenset({Role.PAYROLL_OFFICER}),
        (PeriodStatus.ACTIVE, PeriodStatus.CALCULATING): frozenset({Role.PAYROLL_OFFICER}),
        (PeriodStatus.CALCULATED, PeriodStatus.CALCULATING): frozenset({Role.PAYROLL_OFFICER}),
        (PeriodStatus.CALCULATING, PeriodStatus.CALCULATED): frozenset(
            {Role.SYSTEM, Role.PAYROLL_OFFICER}
        ),
        (PeriodStatus.CALCULATING, PeriodStatus.ACTIVE): frozenset(
            {Role.SYSTEM, Role.PAYROLL_OFFICER}
        ),
        (PeriodStatus.CALCULATED, PeriodStatus.UNDER_REVIEW): frozenset({Role.PAYROLL_OFFICER}),
        (PeriodStatus.UNDER_REVIEW, PeriodStatus.APPROVED): frozenset(
            {Role.HR_MANAGER, Role.OFFICE_ADMIN}
        ),
        (PeriodStatus.UNDER_REVIEW, PeriodStatus.DRAFT): frozenset(
            {Role.HR_MANAGER, Role.OFFICE_ADMIN}
        ),
        (PeriodStatus.APPROVED, PeriodStatus.FINALIZED): frozenset({Role.OFFICE_ADMIN}),
        (PeriodStatus.APPROVED, PeriodStatus.DRAFT): frozenset({Role.OFFICE_ADMIN}),
        (PeriodStatus.FINALIZED, PeriodStatus.LOCKED): frozenset({Role.OFFICE_ADMIN}),
        (PeriodStatus.LOCKED, PeriodStatus.CALCULATED): frozenset({Role.OFFICE_ADMIN}),
        (PeriodStatus.LOCKED, PeriodStatus.COMPLETED): frozenset(
            {Role.SYSTEM, Role.OFFICE_ADMIN}
        ),
    }

    # Statuses where calculation may (re)run
    CALCULATION_ALLOWED = {
        PeriodStatus.DRAFT,
        PeriodStatus.ACTIVE,
        PeriodStatus.CALCULATED,
    }

    # Statuses where adjustments may still be filed and applied
    ADJUSTMENT_ALLOWED = {
        PeriodStatus.CALCULATED,
        PeriodStatus.UNDER_REVIEW,
        PeriodStatus.APPROVED,
    }

    # Statuses where payment rows may be materialized
    DISBURSEMENT_ALLOWED = {
        PeriodStatus.FINALIZED,
        PeriodStatus.LOCKED,
    }

    @classmethod
    def authorize(cls, actor: Actor, from_status: str, to_status: str) -> None:
        """Raise AuthorizationError if the actor may not take this transition."""
        allowed = cls.TRANSITION_ROLES.get((from_status, to_status), frozenset())
        actor.require(allowed, f"move a payroll period from {_value(from_status)} to {_value(to_status)}")

    @classmethod
    def can_calculate(cls, status: str) -> bool:
        return status in cls.CALCULATION_ALLOWED

    @classmethod
    def can_adjust(cls, status: str) -> bool:
        return status in cls.ADJUSTMENT_ALLOWED

    @classmethod
    def can_disburse(cls, status: str) -> bool:
        return status in cls.DISBURSEMENT_ALLOWED

    @classmethod
    def is_rejection(cls, from_status: str, to_status: str) -> bool:
        return to_status == PeriodStatus.DRAFT and from_status in (
            PeriodStatus.UNDER_REVIEW,
            PeriodStatus.APPROVED,
        )

    @classmethod
    def is_unlock(cls, from_status: str, to_status: str) -> bool:
        return from_status == PeriodStatus.LOCKED and to_status == PeriodStatus.CALCULATED


class CalculationStateMachine(StateMachine):
    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        CalculationStatus.PENDING: [
            CalculationStatus.CALCULATED,
            CalculationStatus.EXCEPTION,
            CalculationStatus.LOCKED,
        ],
        CalculationStatus.CALCULATED: [
            CalculationStatus.EXCEPTION,
            CalculationStatus.ADJUSTED,
            CalculationStatus.LOCKED,
        ],
        CalculationStatus.EXCEPTION: [
            CalculationStatus.CALCULATED,
            CalculationStatus.ADJUSTED,
            CalculationStatus.LOCKED,
        ],
        CalculationStatus.ADJUSTED: [
            CalculationStatus.EXCEPTION,
            CalculationStatus.LOCKED,
        ],
        CalculationStatus.LOCKED: [],
    }

    # Statuses counted in period totals
    PAYABLE = {
        CalculationStatus.CALCULATED,
        CalculationStatus.ADJUSTED,
        CalculationStatus.LOCKED,
    }


class AdjustmentStateMachine(StateMachine):
    """pending → {approved, rejected}; approved → applied."""

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        AdjustmentStatus.PENDING: [AdjustmentStatus.APPROVED, AdjustmentStatus.REJECTED],
        AdjustmentStatus.APPROVED: [AdjustmentStatus.APPLIED],
        AdjustmentStatus.REJECTED: [],
        AdjustmentStatus.APPLIED: [],
    }

    REVIEWER_ROLES = frozenset({Role.HR_MANAGER, Role.OFFICE_ADMIN})


class ExceptionStateMachine(StateMachine):
    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        ExceptionStatus.OPEN: [
            ExceptionStatus.ACKNOWLEDGED,
            ExceptionStatus.RESOLVED,
            ExceptionStatus.IGNORED,
        ],
        ExceptionStatus.ACKNOWLEDGED: [ExceptionStatus.RESOLVED],
        ExceptionStatus.RESOLVED: [],
        ExceptionStatus.IGNORED: [],
    }


class LoanStateMachine(StateMachine):
    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        LoanStatus.ACTIVE: [LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.CANCELLED],
        LoanStatus.COMPLETED: [],
        LoanStatus.DEFAULTED: [],
        LoanStatus.CANCELLED: [],
    }


class LoanDeductionStateMachine(StateMachine):
    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        LoanDeductionStatus.PENDING: [
            LoanDeductionStatus.DEDUCTED,
            LoanDeductionStatus.OVERDUE,
            LoanDeductionStatus.WAIVED,
        ],
        LoanDeductionStatus.DEDUCTED: [
            LoanDeductionStatus.PAID,
            LoanDeductionStatus.PARTIAL_PAID,
            LoanDeductionStatus.OVERDUE,
        ],
        LoanDeductionStatus.PARTIAL_PAID: [
            LoanDeductionStatus.PAID,
            LoanDeductionStatus.PARTIAL_PAID,
            LoanDeductionStatus.OVERDUE,
        ],
        LoanDeductionStatus.OVERDUE: [
            LoanDeductionStatus.PAID,
            LoanDeductionStatus.PARTIAL_PAID,
            LoanDeductionStatus.WAIVED,
        ],
        LoanDeductionStatus.PAID: [],
        LoanDeductionStatus.WAIVED: [],
    }


class PaymentStateMachine(StateMachine):
    """pending → processing → {paid, failed, unclaimed}; failed → processing (retry)."""

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        PaymentStatus.PENDING: [PaymentStatus.PROCESSING],
        PaymentStatus.PROCESSING: [
            PaymentStatus.PAID,
            PaymentStatus.FAILED,
            PaymentStatus.UNCLAIMED,
        ],
        PaymentStatus.FAILED: [PaymentStatus.PROCESSING],
        PaymentStatus.UNCLAIMED: [PaymentStatus.PAID],
        PaymentStatus.PAID: [],
    }


class BankBatchStateMachine(StateMachine):
    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        BankBatchStatus.DRAFT: [BankBatchStatus.READY],
        BankBatchStatus.READY: [BankBatchStatus.SUBMITTED, BankBatchStatus.DRAFT],
        BankBatchStatus.SUBMITTED: [BankBatchStatus.PROCESSING, BankBatchStatus.FAILED],
        BankBatchStatus.PROCESSING: [
            BankBatchStatus.COMPLETED,
            BankBatchStatus.PARTIALLY_COMPLETED,
            BankBatchStatus.FAILED,
        ],
        BankBatchStatus.COMPLETED: [],
        BankBatchStatus.PARTIALLY_COMPLETED: [],
        BankBatchStatus.FAILED: [],
    }


class CashBatchStateMachine(StateMachine):
    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        CashBatchStatus.PREPARING: [CashBatchStatus.READY],
        CashBatchStatus.READY: [CashBatchStatus.DISTRIBUTING],
        CashBatchStatus.DISTRIBUTING: [
            CashBatchStatus.COMPLETED,
            CashBatchStatus.PARTIALLY_COMPLETED,
        ],
        CashBatchStatus.COMPLETED: [CashBatchStatus.RECONCILED],
        CashBatchStatus.PARTIALLY_COMPLETED: [CashBatchStatus.RECONCILED],
        CashBatchStatus.RECONCILED: [],
    }


class PayslipStateMachine(StateMachine):
    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        PayslipStatus.DRAFT: [PayslipStatus.GENERATED],
        PayslipStatus.GENERATED: [PayslipStatus.DISTRIBUTED],
        PayslipStatus.DISTRIBUTED: [PayslipStatus.ACKNOWLEDGED],
        PayslipStatus.ACKNOWLEDGED: [],
    }
