"""Tests for payroll state machines."""

from uuid import uuid4

import pytest

from peso_payroll.actors import Actor, Role
from peso_payroll.errors import AuthorizationError, InvalidTransitionError, StateConflict
from peso_payroll.services.state_machine import (
    AdjustmentStateMachine,
    BankBatchStateMachine,
    CalculationStateMachine,
    CashBatchStateMachine,
    LoanDeductionStateMachine,
    PaymentStateMachine,
    PeriodStateMachine,
    PeriodStatus,
)


def _actor(role: Role) -> Actor:
    return Actor(user_id=uuid4(), name=role.value, role=role)


class TestPeriodStateMachine:
    """Test payroll period transitions."""

    def test_happy_path(self):
        """Test the full draft-to-completed path."""
        path = [
            "draft",
            "calculating",
            "calculated",
            "under_review",
            "approved",
            "finalized",
            "locked",
            "completed",
        ]
        for from_status, to_status in zip(path, path[1:]):
            assert PeriodStateMachine.can_transition(from_status, to_status) is True

    def test_side_branches(self):
        """Test activation, cancellation, re-run, rejection and unlock branches."""
        assert PeriodStateMachine.can_transition("draft", "active") is True
        assert PeriodStateMachine.can_transition("active", "calculating") is True
        assert PeriodStateMachine.can_transition("calculating", "active") is True
        assert PeriodStateMachine.can_transition("calculated", "calculating") is True
        assert PeriodStateMachine.can_transition("under_review", "draft") is True
        assert PeriodStateMachine.can_transition("approved", "draft") is True
        assert PeriodStateMachine.can_transition("locked", "calculated") is True

    def test_invalid_transitions(self):
        """Test that skipping steps is blocked."""
        assert PeriodStateMachine.can_transition("draft", "approved") is False
        assert PeriodStateMachine.can_transition("calculated", "approved") is False
        assert PeriodStateMachine.can_transition("under_review", "finalized") is False
        assert PeriodStateMachine.can_transition("finalized", "draft") is False
        assert PeriodStateMachine.can_transition("completed", "draft") is False

    def test_validate_transition_raises(self):
        """Test that validate_transition raises a StateConflict."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            PeriodStateMachine.validate_transition("draft", "locked")

        assert exc_info.value.from_status == "draft"
        assert exc_info.value.to_status == "locked"
        assert isinstance(exc_info.value, StateConflict)
        assert str(exc_info.value) == "Invalid transition from 'draft' to 'locked'"

    def test_validate_transition_reason_in_message(self):
        """Test that the reason is appended to the message."""
        with pytest.raises(InvalidTransitionError, match="period is closed"):
            PeriodStateMachine.validate_transition(
                PeriodStatus.COMPLETED, PeriodStatus.DRAFT, "period is closed"
            )

    def test_completed_is_terminal(self):
        """Test that completed has no next status."""
        assert PeriodStateMachine.is_terminal("completed") is True
        assert PeriodStateMachine.get_next_statuses("completed") == []
        assert set(PeriodStateMachine.get_next_statuses("locked")) == {"calculated", "completed"}

    def test_can_calculate(self):
        """Test calculation allowed statuses."""
        assert PeriodStateMachine.can_calculate("draft") is True
        assert PeriodStateMachine.can_calculate("active") is True
        assert PeriodStateMachine.can_calculate("calculated") is True
        assert PeriodStateMachine.can_calculate("under_review") is False
        assert PeriodStateMachine.can_calculate("locked") is False

    def test_can_disburse(self):
        """Test that only finalized or locked periods produce payments."""
        assert PeriodStateMachine.can_disburse("finalized") is True
        assert PeriodStateMachine.can_disburse("locked") is True
        assert PeriodStateMachine.can_disburse("approved") is False

    def test_rejection_and_unlock_detection(self):
        """Test rejection and unlock classification."""
        assert PeriodStateMachine.is_rejection("under_review", "draft") is True
        assert PeriodStateMachine.is_rejection("approved", "draft") is True
        assert PeriodStateMachine.is_rejection("draft", "active") is False
        assert PeriodStateMachine.is_unlock("locked", "calculated") is True
        assert PeriodStateMachine.is_unlock("locked", "completed") is False


class TestPeriodRoleGates:
    """Test role gates on period transitions."""

    def test_officer_submits(self):
        """Test that only the payroll officer submits for review."""
        PeriodStateMachine.authorize(_actor(Role.PAYROLL_OFFICER), "calculated", "under_review")
        with pytest.raises(AuthorizationError):
            PeriodStateMachine.authorize(_actor(Role.HR_MANAGER), "calculated", "under_review")

    def test_hr_or_admin_approves(self):
        """Test that HR manager and office admin approve review."""
        PeriodStateMachine.authorize(_actor(Role.HR_MANAGER), "under_review", "approved")
        PeriodStateMachine.authorize(_actor(Role.OFFICE_ADMIN), "under_review", "approved")
        with pytest.raises(AuthorizationError):
            PeriodStateMachine.authorize(_actor(Role.PAYROLL_OFFICER), "under_review", "approved")

    def test_only_admin_finalizes_and_locks(self):
        """Test that final approval and lock belong to the office admin."""
        PeriodStateMachine.authorize(_actor(Role.OFFICE_ADMIN), "approved", "finalized")
        PeriodStateMachine.authorize(_actor(Role.OFFICE_ADMIN), "finalized", "locked")
        with pytest.raises(AuthorizationError):
            PeriodStateMachine.authorize(_actor(Role.HR_MANAGER), "approved", "finalized")
        with pytest.raises(AuthorizationError):
            PeriodStateMachine.authorize(_actor(Role.HR_MANAGER), "finalized", "locked")

    def test_superadmin_passes_every_gate(self):
        """Test that superadmin is never refused."""
        root = _actor(Role.SUPERADMIN)
        PeriodStateMachine.authorize(root, "calculated", "under_review")
        PeriodStateMachine.authorize(root, "locked", "calculated")

    def test_system_cannot_approve(self):
        """Test that automated steps cannot approve a period."""
        with pytest.raises(AuthorizationError) as exc_info:
            PeriodStateMachine.authorize(Actor.system(), "under_review", "approved")

        assert exc_info.value.role == "system"
        assert "under_review to approved" in str(exc_info.value)


class TestAdjustmentStateMachine:
    """Test adjustment transitions."""

    def test_transitions(self):
        """Test pending → approved/rejected, approved → applied."""
        assert AdjustmentStateMachine.can_transition("pending", "approved") is True
        assert AdjustmentStateMachine.can_transition("pending", "rejected") is True
        assert AdjustmentStateMachine.can_transition("approved", "applied") is True
        assert AdjustmentStateMachine.can_transition("pending", "applied") is False
        assert AdjustmentStateMachine.can_transition("rejected", "approved") is False

    def test_terminal_states(self):
        """Test applied and rejected are terminal."""
        assert AdjustmentStateMachine.is_terminal("applied") is True
        assert AdjustmentStateMachine.is_terminal("rejected") is True
        assert AdjustmentStateMachine.is_terminal("pending") is False


class TestCalculationStateMachine:
    """Test calculation status transitions."""

    def test_exception_round_trip(self):
        """Test calculated ↔ exception."""
        assert CalculationStateMachine.can_transition("calculated", "exception") is True
        assert CalculationStateMachine.can_transition("exception", "calculated") is True

    def test_locked_is_terminal(self):
        """Test a locked calculation never changes status."""
        assert CalculationStateMachine.get_next_statuses("locked") == []

    def test_payable_statuses(self):
        """Test which statuses count toward period totals."""
        assert "exception" not in CalculationStateMachine.PAYABLE
        assert "adjusted" in CalculationStateMachine.PAYABLE


class TestPaymentStateMachine:
    """Test payment transitions."""

    def test_transitions(self):
        """Test the payment lifecycle including retry and late claim."""
        assert PaymentStateMachine.can_transition("pending", "processing") is True
        assert PaymentStateMachine.can_transition("processing", "paid") is True
        assert PaymentStateMachine.can_transition("processing", "failed") is True
        assert PaymentStateMachine.can_transition("processing", "unclaimed") is True
        assert PaymentStateMachine.can_transition("failed", "processing") is True
        assert PaymentStateMachine.can_transition("unclaimed", "paid") is True

    def test_paid_is_terminal(self):
        """Test that a paid payment cannot move."""
        assert PaymentStateMachine.is_terminal("paid") is True
        assert PaymentStateMachine.can_transition("pending", "paid") is False


class TestBatchStateMachines:
    """Test bank and cash batch transitions."""

    def test_bank_batch(self):
        """Test bank batch lifecycle."""
        assert BankBatchStateMachine.can_transition("draft", "ready") is True
        assert BankBatchStateMachine.can_transition("ready", "submitted") is True
        assert BankBatchStateMachine.can_transition("processing", "partially_completed") is True
        assert BankBatchStateMachine.can_transition("draft", "submitted") is False

    def test_cash_batch(self):
        """Test cash batch lifecycle."""
        assert CashBatchStateMachine.can_transition("preparing", "ready") is True
        assert CashBatchStateMachine.can_transition("ready", "distributing") is True
        assert CashBatchStateMachine.can_transition("partially_completed", "reconciled") is True
        assert CashBatchStateMachine.can_transition("preparing", "distributing") is False


class TestLoanDeductionStateMachine:
    """Test installment transitions."""

    def test_transitions(self):
        """Test pending → deducted → paid and the manual branches."""
        assert LoanDeductionStateMachine.can_transition("pending", "deducted") is True
        assert LoanDeductionStateMachine.can_transition("deducted", "paid") is True
        assert LoanDeductionStateMachine.can_transition("deducted", "partial_paid") is True
        assert LoanDeductionStateMachine.can_transition("overdue", "waived") is True
        assert LoanDeductionStateMachine.can_transition("paid", "overdue") is False
        assert LoanDeductionStateMachine.can_transition("waived", "paid") is False
