"""Exception review workflow against a real database."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from peso_payroll.errors import InvalidTransitionError, StateConflict, ValidationFailure
from peso_payroll.models import PayrollApprovalHistory

pytestmark = pytest.mark.asyncio


@pytest.fixture
def flagged_period(calculations, open_period, hire, full_inputs, officer):
    """Alice without leave data (low), Bert without a profile (critical), Carla clean."""

    async def _flagged():
        period = await open_period()
        alice = await hire("E-001")
        bert = await hire("E-002", with_profile=False)
        carla = await hire("E-003")
        await calculations.calculate_period(
            period.payroll_period_id,
            full_inputs(alice, bert, carla, without_leave=[alice]),
            officer,
        )
        return period, alice, bert, carla

    return _flagged


class TestListing:
    """Test exception queries."""

    async def test_open_exceptions(self, exceptions, flagged_period):
        """Test listing, severity filter and counts."""
        period, alice, bert, _ = await flagged_period()

        opened = await exceptions.list_open(period.payroll_period_id)
        assert {(e.employee_id, e.exception_type) for e in opened} == {
            (alice.employee_id, "missing_leave_data"),
            (bert.employee_id, "calculation_error"),
        }

        critical = await exceptions.list_open(period.payroll_period_id, severity="critical")
        assert [e.employee_id for e in critical] == [bert.employee_id]
        assert critical[0].description == "No active payroll profile for the period"

        assert await exceptions.counts_by_type(period.payroll_period_id) == {
            "calculation_error": 1,
            "missing_leave_data": 1,
        }
        assert period.exceptions_count == 2

    async def test_flagged_calculations_excluded_from_totals(self, periods, flagged_period):
        """Test that only clean calculations count toward payable totals."""
        period, *_ = await flagged_period()

        summary = await periods.summary(period.payroll_period_id)

        assert summary["total_employees"] == 3
        assert summary["active_employees"] == 1
        assert summary["excluded_employees"] == 2
        assert summary["total_net_pay"] == Decimal("11428.02")
        assert summary["open_exceptions_by_severity"] == {"critical": 1, "low": 1}


class TestReview:
    """Test acknowledge, resolve and ignore."""

    async def test_resolve_restores_calculation(self, exceptions, calculations, flagged_period, hr_manager):
        """Test that closing the last open exception clears the calculation."""
        period, alice, *_ = await flagged_period()
        calc = await calculations.current_calculation(period.payroll_period_id, alice.employee_id)
        (exception,) = await exceptions.for_calculation(calc.calculation_id)

        with pytest.raises(ValidationFailure):
            await exceptions.resolve(exception.exception_id, hr_manager, "  ")
        resolved = await exceptions.resolve(
            exception.exception_id, hr_manager, "Leave system had no filings"
        )

        assert resolved.status == "resolved"
        assert resolved.resolved_by == hr_manager.user_id
        assert resolved.resolved_at is not None
        assert calc.calculation_status == "calculated"
        assert period.exceptions_count == 1

        with pytest.raises(InvalidTransitionError):
            await exceptions.resolve(exception.exception_id, hr_manager, "Again")

    async def test_acknowledge_then_resolve(self, exceptions, flagged_period, hr_manager):
        """Test the acknowledged step."""
        period, alice, *_ = await flagged_period()
        (exception,) = [
            e for e in await exceptions.list_open(period.payroll_period_id)
            if e.employee_id == alice.employee_id
        ]

        acknowledged = await exceptions.acknowledge(exception.exception_id, hr_manager, "Looking")
        assert acknowledged.status == "acknowledged"
        assert acknowledged.resolved_at is None

        resolved = await exceptions.resolve(exception.exception_id, hr_manager, "Confirmed")
        assert resolved.status == "resolved"

    async def test_ignore_rules(self, exceptions, flagged_period, hr_manager):
        """Test that only non-critical exceptions may be ignored."""
        period, alice, bert, _ = await flagged_period()
        by_employee = {
            e.employee_id: e for e in await exceptions.list_open(period.payroll_period_id)
        }

        with pytest.raises(StateConflict):
            await exceptions.ignore(
                by_employee[bert.employee_id].exception_id, hr_manager, "Not needed"
            )
        with pytest.raises(ValidationFailure):
            await exceptions.ignore(by_employee[alice.employee_id].exception_id, hr_manager, "")

        ignored = await exceptions.ignore(
            by_employee[alice.employee_id].exception_id, hr_manager, "Employee had no leave"
        )
        assert ignored.status == "ignored"

    async def test_failed_calculation_stays_flagged(self, exceptions, calculations, flagged_period, hr_manager):
        """Test that a calculation error needs a recalculation, not a review."""
        period, _, bert, _ = await flagged_period()
        calc = await calculations.current_calculation(period.payroll_period_id, bert.employee_id)
        (exception,) = await exceptions.for_calculation(calc.calculation_id)

        await exceptions.resolve(exception.exception_id, hr_manager, "Profile to follow")

        assert calc.calculation_status == "exception"
        assert calc.error_message == "No active payroll profile for the period"


class TestSubmissionGate:
    """Test that open exceptions gate the approval chain."""

    async def test_open_exceptions_block_submit(self, periods, flagged_period, officer):
        """Test that submit needs resolution or an override."""
        period, *_ = await flagged_period()

        with pytest.raises(StateConflict) as exc_info:
            await periods.submit(period.payroll_period_id, officer)
        assert "2 unresolved exception(s)" in str(exc_info.value)

    async def test_override_justification(self, periods, flagged_period, officer, db_session):
        """Test submitting over open exceptions with a recorded justification."""
        period, *_ = await flagged_period()

        await periods.submit(
            period.payroll_period_id, officer, override_justification="Payday is tomorrow"
        )

        assert period.status == "under_review"
        await db_session.flush()
        history = (
            await db_session.execute(
                select(PayrollApprovalHistory).where(
                    PayrollApprovalHistory.payroll_period_id == period.payroll_period_id
                )
            )
        ).scalars().one()
        assert history.comments == "Submitted with 2 open exception(s): Payday is tomorrow"

    async def test_lock_freezes_flagged_calculations(self, periods, flagged_period, officer, hr_manager, admin):
        """Test that flagged calculations are locked but stay out of totals."""
        period, alice, bert, carla = await flagged_period()
        await periods.submit(
            period.payroll_period_id, officer, override_justification="Pay the clean ones"
        )
        await periods.approve(period.payroll_period_id, hr_manager)
        await periods.finalize(period.payroll_period_id, admin)
        await periods.lock(period.payroll_period_id, admin)

        calcs = await periods.current_calculations(period.payroll_period_id)
        assert all(c.is_locked for c in calcs)
        assert period.active_employees == 1
        assert period.excluded_employees == 2
        assert period.total_net_pay == Decimal("11428.02")
        payable = await periods.payable_calculations(calcs)
        assert [c.employee_id for c in payable] == [carla.employee_id]
