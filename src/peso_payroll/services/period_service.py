"""Payroll period lifecycle: creation, approval chain, lock and unlock."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update

from peso_payroll.actors import Actor, Role
from peso_payroll.errors import (
    ConcurrentModificationError,
    IntegrityViolation,
    InvalidTransitionError,
    StateConflict,
    ValidationFailure,
)
from peso_payroll.events import LoanCompleted, PayrollPeriodCreated, PayrollPeriodTransitioned
from peso_payroll.models import (
    EmployeeDeduction,
    EmployeeLoan,
    EmployeePayrollCalculation,
    LoanDeduction,
    PayrollAdjustment,
    PayrollException,
    PayrollPeriod,
)
from peso_payroll.money import money, sum_money
from peso_payroll.services.base import ServiceBase
from peso_payroll.services.state_machine import (
    CalculationStateMachine,
    CalculationStatus,
    ExceptionStatus,
    LoanDeductionStatus,
    PeriodStateMachine,
    PeriodStatus,
)

logger = logging.getLogger(__name__)

# Approval-history action recorded per transition
_APPROVAL_ACTIONS = {
    (PeriodStatus.CALCULATED, PeriodStatus.UNDER_REVIEW): "submit",
    (PeriodStatus.UNDER_REVIEW, PeriodStatus.APPROVED): "approve",
    (PeriodStatus.APPROVED, PeriodStatus.FINALIZED): "approve",
    (PeriodStatus.UNDER_REVIEW, PeriodStatus.DRAFT): "reject",
    (PeriodStatus.APPROVED, PeriodStatus.DRAFT): "reject",
    (PeriodStatus.FINALIZED, PeriodStatus.LOCKED): "lock",
    (PeriodStatus.LOCKED, PeriodStatus.CALCULATED): "unlock",
}


class PeriodService(ServiceBase):
    """Service for the payroll period approval state machine.

    Operations:
    - create_period: open a period with generated number, cutoffs and deadline
    - activate / submit / approve / finalize / reject: role-gated transitions
    - lock: freeze calculations and post loan installments
    - unlock: audited reopen of a locked period (reason required)
    - complete: close the period after disbursement
    - refresh_totals / summary: aggregate figures for dashboards
    """

    async def get_period(self, payroll_period_id: UUID) -> PayrollPeriod:
        return await self._get(PayrollPeriod, payroll_period_id)

    async def create_period(
        self,
        period_start: date,
        period_end: date,
        payment_date: date,
        actor: Actor,
        period_type: str = "regular",
        period_name: str | None = None,
        notes: str | None = None,
    ) -> PayrollPeriod:
        """Open a new payroll period.

        Raises ValidationFailure on bad dates and StateConflict when the
        period number already exists or the dates overlap another period of
        the same type.
        """
        actor.require({Role.PAYROLL_OFFICER}, "create a payroll period")
        if period_end < period_start:
            raise ValidationFailure("period_end must not be before period_start", "period_end")
        if payment_date < period_end:
            raise ValidationFailure("payment_date must not be before period_end", "payment_date")

        period_number = PayrollPeriod.generate_period_number(period_start)
        if period_type != "regular":
            period_number = f"{period_number}-{period_type[:3].upper()}"

        existing = await self.session.execute(
            select(PayrollPeriod.period_number).where(
                (PayrollPeriod.period_number == period_number)
                | (
                    (PayrollPeriod.period_type == period_type)
                    & (PayrollPeriod.period_start <= period_end)
                    & (PayrollPeriod.period_end >= period_start)
                )
            )
        )
        clash = existing.scalars().first()
        if clash is not None:
            raise StateConflict(f"Period {period_number} overlaps existing period {clash}")

        deadline = payment_date - timedelta(days=self.settings.adjustment_deadline_days)
        period = PayrollPeriod(
            period_number=period_number,
            period_name=period_name or _default_period_name(period_start, period_end),
            period_type=period_type,
            period_start=period_start,
            period_end=period_end,
            payment_date=payment_date,
            period_month=f"{period_start:%Y-%m}",
            period_year=period_start.year,
            timekeeping_cutoff_date=period_end + timedelta(days=1),
            leave_cutoff_date=period_end + timedelta(days=1),
            adjustment_deadline=max(deadline, period_end),
            created_by=actor.user_id,
            notes=notes,
        )
        self.session.add(period)
        await self.session.flush()

        self.audit.record(period, "created", actor, new_values={"period_number": period_number})
        self._emit(
            PayrollPeriodCreated,
            actor,
            payroll_period_id=period.payroll_period_id,
            period_number=period_number,
            period_start=period_start,
            period_end=period_end,
            payment_date=payment_date,
        )
        logger.info("Created payroll period %s", period_number)
        return period

    # ----- Transitions -----

    async def transition(
        self,
        period: PayrollPeriod,
        to_status: PeriodStatus,
        actor: Actor,
        reason: str | None = None,
        comments: str | None = None,
    ) -> PayrollPeriod:
        """Move a period to a new status.

        Checks the transition table and role gate, then flips the status with a
        conditional UPDATE so two writers cannot both move the same period.
        Records an approval-history row for approval-chain steps.
        """
        from_status = PeriodStatus(period.status)
        PeriodStateMachine.validate_transition(from_status, to_status)
        PeriodStateMachine.authorize(actor, from_status, to_status)

        result = await self.session.execute(
            update(PayrollPeriod)
            .where(
                PayrollPeriod.payroll_period_id == period.payroll_period_id,
                PayrollPeriod.status == from_status.value,
            )
            .values(status=to_status.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError(
                "PayrollPeriod",
                period.payroll_period_id,
                f"status is no longer {from_status.value}",
            )
        period.status = to_status.value

        action = _APPROVAL_ACTIONS.get((from_status, to_status))
        if action is not None:
            self.audit.record_approval(
                period,
                action,
                from_status,
                actor,
                comments=comments,
                rejection_reason=reason if action == "reject" else None,
            )
        self.audit.record_status_change(period, from_status, actor, notes=reason)
        self._emit(
            PayrollPeriodTransitioned,
            actor,
            payroll_period_id=period.payroll_period_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
        logger.info(
            "Period %s: %s -> %s by %s",
            period.period_number,
            from_status.value,
            to_status.value,
            actor.name,
        )
        return period

    async def activate(self, payroll_period_id: UUID, actor: Actor) -> PayrollPeriod:
        period = await self.get_period(payroll_period_id)
        return await self.transition(period, PeriodStatus.ACTIVE, actor)

    async def submit(
        self,
        payroll_period_id: UUID,
        actor: Actor,
        override_justification: str | None = None,
    ) -> PayrollPeriod:
        """Submit a calculated period for review.

        Open exceptions block submission unless an override justification is
        given; reconciliation failures always block it.
        """
        period = await self.get_period(payroll_period_id)
        if period.status != PeriodStatus.CALCULATED:
            raise InvalidTransitionError(
                period.status, PeriodStatus.UNDER_REVIEW.value, "Only calculated periods can be submitted"
            )
        PeriodStateMachine.authorize(actor, PeriodStatus.CALCULATED, PeriodStatus.UNDER_REVIEW)
        await self.verify_reconciliation(period)

        open_count = await self.count_open_exceptions(payroll_period_id)
        comments = None
        if open_count:
            if not override_justification or not override_justification.strip():
                raise StateConflict(
                    f"Period {period.period_number} has {open_count} unresolved exception(s); "
                    "resolve them or submit with an override justification"
                )
            comments = f"Submitted with {open_count} open exception(s): {override_justification}"
            logger.warning("Period %s submitted over %d open exceptions", period.period_number, open_count)

        await self.refresh_totals(period)
        period.submitted_at = self.clock.now()
        period.submitted_by = actor.user_id
        return await self.transition(period, PeriodStatus.UNDER_REVIEW, actor, comments=comments)

    async def approve(
        self, payroll_period_id: UUID, actor: Actor, comments: str | None = None
    ) -> PayrollPeriod:
        """Reviewer approval: under_review -> approved."""
        period = await self.get_period(payroll_period_id)
        if period.status != PeriodStatus.UNDER_REVIEW:
            raise InvalidTransitionError(
                period.status, PeriodStatus.APPROVED.value, "Only periods under review can be approved"
            )
        PeriodStateMachine.authorize(actor, PeriodStatus.UNDER_REVIEW, PeriodStatus.APPROVED)
        await self.verify_reconciliation(period)
        await self.refresh_totals(period)
        period.reviewed_at = self.clock.now()
        period.reviewed_by = actor.user_id
        period.approved_at = period.reviewed_at
        period.approved_by = actor.user_id
        return await self.transition(period, PeriodStatus.APPROVED, actor, comments=comments)

    async def finalize(
        self, payroll_period_id: UUID, actor: Actor, comments: str | None = None
    ) -> PayrollPeriod:
        """Final approval by the office admin: approved -> finalized."""
        period = await self.get_period(payroll_period_id)
        PeriodStateMachine.validate_transition(period.status, PeriodStatus.FINALIZED)
        PeriodStateMachine.authorize(actor, PeriodStatus.APPROVED, PeriodStatus.FINALIZED)
        await self.verify_reconciliation(period)
        await self.refresh_totals(period)
        period.finalized_at = self.clock.now()
        period.finalized_by = actor.user_id
        return await self.transition(period, PeriodStatus.FINALIZED, actor, comments=comments)

    async def reject(self, payroll_period_id: UUID, actor: Actor, reason: str) -> PayrollPeriod:
        """Send a period under review (or approved) back to draft for rework."""
        if not reason or not reason.strip():
            raise ValidationFailure("A rejection reason is required", "reason")
        period = await self.get_period(payroll_period_id)
        if not PeriodStateMachine.is_rejection(period.status, PeriodStatus.DRAFT):
            raise InvalidTransitionError(
                period.status, PeriodStatus.DRAFT.value, "Only periods in review can be rejected"
            )
        period.rejection_reason = reason
        period.approved_at = None
        period.approved_by = None
        return await self.transition(period, PeriodStatus.DRAFT, actor, reason=reason)

    async def lock(self, payroll_period_id: UUID, actor: Actor) -> PayrollPeriod:
        """Lock a finalized period.

        Freezes timekeeping/leave data, locks every current calculation, marks
        the period's loan installments deducted and posts them to their loans,
        and consumes one-time deductions.
        """
        period = await self.get_period(payroll_period_id)
        PeriodStateMachine.validate_transition(period.status, PeriodStatus.LOCKED)
        PeriodStateMachine.authorize(actor, PeriodStatus.FINALIZED, PeriodStatus.LOCKED)

        now = self.clock.now()
        today = self.clock.today()
        calculations = await self.current_calculations(payroll_period_id)
        for calc in calculations:
            if calc.is_locked:
                continue
            had_exceptions = calc.calculation_status == CalculationStatus.EXCEPTION
            if had_exceptions:
                # Excluded from payment; still frozen for the record
                logger.warning(
                    "Locking calculation %s for employee %s with open exceptions",
                    calc.calculation_id,
                    calc.employee_id,
                )
            CalculationStateMachine.validate_transition(
                calc.calculation_status, CalculationStatus.LOCKED
            )
            calc.calculation_status = CalculationStatus.LOCKED.value
            calc.locked_at = now
            calc.locked_by = actor.user_id
            if not had_exceptions:
                await self._post_deductions(period, calc, actor, today)

        period.locked_at = now
        period.locked_by = actor.user_id
        period.timekeeping_data_locked = True
        period.leave_data_locked = True
        await self.refresh_totals(period)
        return await self.transition(period, PeriodStatus.LOCKED, actor)

    async def unlock(self, payroll_period_id: UUID, actor: Actor, reason: str) -> PayrollPeriod:
        """Reopen a locked period for corrections.

        Locked calculations stay immutable; corrections go through new
        versions. Requires a reason and an elevated role.
        """
        if not reason or not reason.strip():
            raise ValidationFailure("An unlock reason is required", "reason")
        period = await self.get_period(payroll_period_id)
        if not PeriodStateMachine.is_unlock(period.status, PeriodStatus.CALCULATED):
            raise InvalidTransitionError(
                period.status, PeriodStatus.CALCULATED.value, "Only locked periods can be unlocked"
            )
        PeriodStateMachine.authorize(actor, PeriodStatus.LOCKED, PeriodStatus.CALCULATED)
        period.locked_at = None
        period.locked_by = None
        period.timekeeping_data_locked = False
        period.leave_data_locked = False
        period.finalized_at = None
        period.finalized_by = None
        logger.warning("Unlocking period %s: %s", period.period_number, reason)
        return await self.transition(period, PeriodStatus.CALCULATED, actor, reason=reason)

    async def complete(self, payroll_period_id: UUID, actor: Actor) -> PayrollPeriod:
        period = await self.get_period(payroll_period_id)
        PeriodStateMachine.validate_transition(period.status, PeriodStatus.COMPLETED)
        period.completed_at = self.clock.now()
        return await self.transition(period, PeriodStatus.COMPLETED, actor)

    # ----- Lock side effects -----

    async def _post_deductions(
        self,
        period: PayrollPeriod,
        calc: EmployeePayrollCalculation,
        actor: Actor,
        today: date,
    ) -> None:
        details = calc.calculation_details or {}
        for deduction_id in details.get("loan_deduction_ids", []):
            installment = await self.session.get(LoanDeduction, UUID(deduction_id))
            if installment is None or installment.status != LoanDeductionStatus.PENDING:
                continue
            loan = await self.session.get(EmployeeLoan, installment.loan_id)
            installment.mark_as_deducted(period.payroll_period_id, today)
            if loan is not None and loan.is_active:
                amount = min(installment.amount_due, money(loan.remaining_balance))
                completed = loan.record_deduction(amount, today)
                self.audit.record(
                    loan,
                    "deduction_recorded",
                    actor,
                    new_values={
                        "installment_number": installment.installment_number,
                        "amount": amount,
                        "remaining_balance": loan.remaining_balance,
                        "status": loan.status,
                    },
                )
                if completed:
                    self._emit(
                        LoanCompleted,
                        actor,
                        loan_id=loan.loan_id,
                        employee_id=loan.employee_id,
                        total_paid=money(loan.total_paid),
                    )
                    logger.info("Loan %s completed", loan.loan_number)
            self.audit.record_status_change(installment, LoanDeductionStatus.PENDING, actor)

        if await self._locked_before(calc):
            # One-time deductions were consumed when the earlier version locked
            return
        for deduction_id in details.get("deduction_ids", []):
            deduction = await self.session.get(EmployeeDeduction, UUID(deduction_id))
            if deduction is not None and deduction.frequency == "one_time":
                deduction.applied_count += 1

    async def _locked_before(self, calc: EmployeePayrollCalculation) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(EmployeePayrollCalculation)
            .where(
                EmployeePayrollCalculation.payroll_period_id == calc.payroll_period_id,
                EmployeePayrollCalculation.employee_id == calc.employee_id,
                EmployeePayrollCalculation.calculation_id != calc.calculation_id,
                EmployeePayrollCalculation.locked_at.is_not(None),
            )
        )
        return result.scalar_one() > 0

    # ----- Queries and aggregates -----

    async def current_calculations(
        self, payroll_period_id: UUID
    ) -> list[EmployeePayrollCalculation]:
        """Latest version of every employee's calculation in the period."""
        await self.session.flush()
        result = await self.session.execute(
            select(EmployeePayrollCalculation)
            .where(
                EmployeePayrollCalculation.payroll_period_id == payroll_period_id,
                EmployeePayrollCalculation.superseded_at.is_(None),
            )
            .order_by(EmployeePayrollCalculation.employee_id)
        )
        return list(result.scalars().all())

    async def count_open_exceptions(self, payroll_period_id: UUID) -> int:
        await self.session.flush()
        result = await self.session.execute(
            select(func.count())
            .select_from(PayrollException)
            .where(
                PayrollException.payroll_period_id == payroll_period_id,
                PayrollException.status == ExceptionStatus.OPEN.value,
            )
        )
        return int(result.scalar_one())

    async def calculations_with_open_exceptions(self, payroll_period_id: UUID) -> set[UUID]:
        await self.session.flush()
        result = await self.session.execute(
            select(PayrollException.calculation_id).where(
                PayrollException.payroll_period_id == payroll_period_id,
                PayrollException.status == ExceptionStatus.OPEN.value,
            )
        )
        return set(result.scalars().all())

    async def payable_calculations(
        self, calculations: list[EmployeePayrollCalculation]
    ) -> list[EmployeePayrollCalculation]:
        """The calculations that may be paid: no open exceptions and no calculation error.

        Flagged calculations keep their exclusion after the period locks them.
        """
        if not calculations:
            return []
        blocked = await self.calculations_with_open_exceptions(calculations[0].payroll_period_id)
        return [
            c
            for c in calculations
            if c.calculation_status in CalculationStateMachine.PAYABLE
            and c.calculation_id not in blocked
            and not c.error_message
        ]

    async def verify_reconciliation(self, period: PayrollPeriod) -> None:
        """Raise IntegrityViolation if any current calculation fails to reconcile."""
        broken: dict[str, list[str]] = {}
        for calc in await self.current_calculations(period.payroll_period_id):
            errors = calc.reconciliation_errors()
            if errors:
                broken[str(calc.calculation_id)] = errors
        if broken:
            logger.critical(
                "Period %s has %d unreconciled calculation(s)", period.period_number, len(broken)
            )
            raise IntegrityViolation(
                f"Period {period.period_number} does not reconcile", {"calculations": broken}
            )

    async def refresh_totals(self, period: PayrollPeriod) -> PayrollPeriod:
        """Recompute the period aggregates from current calculations."""
        calculations = await self.current_calculations(period.payroll_period_id)
        payable = await self.payable_calculations(calculations)
        period.total_employees = len(calculations)
        period.active_employees = len(payable)
        period.excluded_employees = len(calculations) - len(payable)
        period.total_gross_pay = sum_money(c.gross_pay for c in payable)
        period.total_deductions = sum_money(c.total_deductions for c in payable)
        period.total_net_pay = sum_money(c.final_net_pay for c in payable)
        period.total_government_contributions = sum_money(
            c.total_government_deductions for c in payable
        )
        period.total_loan_deductions = sum_money(c.total_loan_deductions for c in payable)
        period.total_adjustments = sum_money(c.adjustments_total for c in payable)
        period.exceptions_count = await self.count_open_exceptions(period.payroll_period_id)

        result = await self.session.execute(
            select(func.count())
            .select_from(PayrollAdjustment)
            .where(PayrollAdjustment.payroll_period_id == period.payroll_period_id)
        )
        period.adjustments_count = int(result.scalar_one())
        return period

    async def summary(self, payroll_period_id: UUID) -> dict[str, Any]:
        """Dashboard summary: totals, status counts, open exceptions, employer shares."""
        period = await self.get_period(payroll_period_id)
        await self.refresh_totals(period)
        calculations = await self.current_calculations(payroll_period_id)

        by_status: dict[str, int] = {}
        for calc in calculations:
            by_status[calc.calculation_status] = by_status.get(calc.calculation_status, 0) + 1

        result = await self.session.execute(
            select(PayrollException.severity, func.count())
            .where(
                PayrollException.payroll_period_id == payroll_period_id,
                PayrollException.status == ExceptionStatus.OPEN.value,
            )
            .group_by(PayrollException.severity)
        )
        open_by_severity = {severity: int(count) for severity, count in result.all()}

        payable = await self.payable_calculations(calculations)
        employer = {
            "sss": sum_money(c.sss_employer_share for c in payable),
            "philhealth": sum_money(c.philhealth_employer_share for c in payable),
            "pagibig": sum_money(c.pagibig_employer_share for c in payable),
        }
        employer["total"] = sum_money(employer.values())

        return {
            "payroll_period_id": str(period.payroll_period_id),
            "period_number": period.period_number,
            "status": period.status,
            "progress_percentage": period.progress_percentage(),
            "days_until_payment": period.days_until_payment(self.clock.today()),
            "total_employees": period.total_employees,
            "active_employees": period.active_employees,
            "excluded_employees": period.excluded_employees,
            "employees_processed": period.employees_processed,
            "employees_failed": period.employees_failed,
            "total_gross_pay": money(period.total_gross_pay),
            "total_deductions": money(period.total_deductions),
            "total_net_pay": money(period.total_net_pay),
            "total_government_contributions": money(period.total_government_contributions),
            "total_loan_deductions": money(period.total_loan_deductions),
            "total_adjustments": money(period.total_adjustments),
            "adjustments_count": period.adjustments_count,
            "calculations_by_status": by_status,
            "open_exceptions": sum(open_by_severity.values()),
            "open_exceptions_by_severity": open_by_severity,
            "employer_contributions": employer,
        }


def _default_period_name(start: date, end: date) -> str:
    if start.month == end.month:
        return f"{start:%B} {start.day}-{end.day}, {start.year}"
    return f"{start:%B} {start.day} - {end:%B} {end.day}, {end.year}"
