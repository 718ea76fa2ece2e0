"""Loan creation, installment schedule and default policy."""

from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select

from peso_payroll.actors import Actor
from peso_payroll.calculators.types import LoanInstallment
from peso_payroll.errors import StateConflict, ValidationFailure
from peso_payroll.events import LoanDefaulted
from peso_payroll.models import (
    EmployeeLoan,
    EmployeePayrollCalculation,
    LoanDeduction,
    PayrollPeriod,
)
from peso_payroll.money import money
from peso_payroll.services.base import ServiceBase
from peso_payroll.services.state_machine import LoanDeductionStatus, LoanStatus

logger = logging.getLogger(__name__)


def cutoff_on_or_after(day: date) -> date:
    """The 15th or the month end, whichever comes first on or after `day`."""
    if day.day <= 15:
        return day.replace(day=15)
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def cutoff_schedule(first: date, count: int) -> list[date]:
    """`count` consecutive semi-monthly cutoff dates starting at `first`."""
    dates = [cutoff_on_or_after(first)]
    while len(dates) < count:
        dates.append(cutoff_on_or_after(dates[-1] + timedelta(days=1)))
    return dates


class LoanService(ServiceBase):
    """Service for the loan amortization ledger.

    Installments move pending -> deducted when a period locks (PeriodService),
    and deducted -> paid/partial_paid when treasury reconciles them here.
    """

    async def get_loan(self, loan_id: UUID) -> EmployeeLoan:
        return await self._get(EmployeeLoan, loan_id)

    async def next_loan_number(self, year: int) -> str:
        prefix = f"LN-{year}-"
        await self.session.flush()
        result = await self.session.execute(
            select(func.count())
            .select_from(EmployeeLoan)
            .where(EmployeeLoan.loan_number.like(f"{prefix}%"))
        )
        return f"{prefix}{int(result.scalar_one()) + 1:05d}"

    async def create_loan(
        self,
        employee_id: UUID,
        loan_type: str,
        principal_amount: Decimal,
        number_of_installments: int,
        loan_date: date,
        first_deduction_date: date,
        actor: Actor,
        interest_rate: Decimal = Decimal("0"),
        external_reference: str | None = None,
        notes: str | None = None,
    ) -> EmployeeLoan:
        """Create a loan with one LoanDeduction per installment."""
        if first_deduction_date < loan_date:
            raise ValidationFailure(
                "first_deduction_date must not be before loan_date", "first_deduction_date"
            )
        loan = EmployeeLoan.build(
            employee_id=employee_id,
            loan_number=await self.next_loan_number(loan_date.year),
            loan_type=loan_type,
            principal_amount=principal_amount,
            number_of_installments=number_of_installments,
            loan_date=loan_date,
            first_deduction_date=first_deduction_date,
            interest_rate=interest_rate,
            external_reference=external_reference,
            notes=notes,
        )
        self.session.add(loan)

        due_dates = cutoff_schedule(first_deduction_date, number_of_installments)
        for number, due in enumerate(due_dates, start=1):
            self.session.add(
                LoanDeduction(
                    loan_id=loan.loan_id,
                    employee_id=employee_id,
                    installment_number=number,
                    due_date=due,
                    total_deduction=loan.scheduled_amount(number),
                )
            )
        await self.session.flush()

        self.audit.record(
            loan,
            "created",
            actor,
            new_values={
                "loan_number": loan.loan_number,
                "loan_type": loan_type,
                "total_loan_amount": loan.total_loan_amount,
                "number_of_installments": number_of_installments,
                "installment_amount": loan.installment_amount,
            },
        )
        logger.info("Created loan %s for employee %s", loan.loan_number, employee_id)
        return loan

    async def schedule(self, loan_id: UUID) -> list[LoanDeduction]:
        await self.session.flush()
        result = await self.session.execute(
            select(LoanDeduction)
            .where(LoanDeduction.loan_id == loan_id)
            .order_by(LoanDeduction.installment_number)
        )
        return list(result.scalars().all())

    async def due_deductions(
        self, employee_id: UUID, period: PayrollPeriod
    ) -> list[LoanDeduction]:
        """Installments the period's calculation must take.

        Pending installments of active loans due within the period, plus any
        already deducted by this same period (recalculation after an unlock).
        """
        await self.session.flush()
        result = await self.session.execute(
            select(LoanDeduction)
            .join(EmployeeLoan, EmployeeLoan.loan_id == LoanDeduction.loan_id)
            .where(
                LoanDeduction.employee_id == employee_id,
                EmployeeLoan.deleted_at.is_(None),
                or_(
                    (LoanDeduction.status == LoanDeductionStatus.PENDING.value)
                    & (EmployeeLoan.status == LoanStatus.ACTIVE.value)
                    & (LoanDeduction.due_date >= period.period_start)
                    & (LoanDeduction.due_date <= period.period_end),
                    (LoanDeduction.status == LoanDeductionStatus.DEDUCTED.value)
                    & (LoanDeduction.payroll_period_id == period.payroll_period_id),
                ),
            )
            .order_by(LoanDeduction.due_date, LoanDeduction.installment_number)
        )
        return list(result.scalars().all())

    async def installments_for(
        self, employee_id: UUID, period: PayrollPeriod
    ) -> list[LoanInstallment]:
        """Due installments in the shape the calculation engine consumes."""
        installments = []
        for deduction in await self.due_deductions(employee_id, period):
            loan = await self.session.get(EmployeeLoan, deduction.loan_id)
            installments.append(
                LoanInstallment(
                    loan_deduction_id=deduction.loan_deduction_id,
                    loan_id=deduction.loan_id,
                    loan_type=loan.loan_type,
                    amount=deduction.amount_due,
                )
            )
        return installments

    async def record_payment(
        self,
        loan_deduction_id: UUID,
        amount: Decimal,
        actor: Actor,
        reference: str | None = None,
    ) -> LoanDeduction:
        """Treasury reconciliation of a deducted (or overdue) installment."""
        installment = await self._get(LoanDeduction, loan_deduction_id)
        loan = await self.get_loan(installment.loan_id)
        before = installment.status
        amount = money(amount)
        today = self.clock.today()
        if amount >= installment.get_outstanding_amount():
            installment.mark_as_paid(loan.remaining_balance, today, reference)
        else:
            installment.mark_as_partial_paid(amount, today)
            if reference:
                installment.reference = reference
        self.audit.record_status_change(
            installment, before, actor, amount=amount, reference=reference
        )
        return installment

    async def waive(self, loan_deduction_id: UUID, reason: str, actor: Actor) -> LoanDeduction:
        installment = await self._get(LoanDeduction, loan_deduction_id)
        before = installment.status
        installment.waive(reason)
        self.audit.record_status_change(installment, before, actor, notes=reason)
        return installment

    async def cancel_loan(self, loan_id: UUID, reason: str, actor: Actor) -> EmployeeLoan:
        """Cancel a loan before any installment was taken."""
        if not reason or not reason.strip():
            raise ValidationFailure("A cancellation reason is required", "reason")
        loan = await self.get_loan(loan_id)
        if loan.installments_paid or money(loan.total_paid) > 0:
            raise StateConflict(f"Loan {loan.loan_number} already has deductions")
        before = loan.status
        if loan.status != LoanStatus.ACTIVE:
            raise StateConflict(f"Loan {loan.loan_number} is {loan.status}")
        loan.status = LoanStatus.CANCELLED.value
        loan.completion_reason = reason
        for installment in await self.schedule(loan_id):
            if installment.status == LoanDeductionStatus.PENDING:
                installment.waive(f"Loan cancelled: {reason}")
        self.audit.record_status_change(loan, before, actor, notes=reason)
        return loan

    async def flag_defaults(self, as_of: date, actor: Actor) -> dict[str, Any]:
        """Apply the default policy as of a date.

        Pending installments past their due date become overdue. A loan with an
        overdue installment more than loan_default_grace_days old is defaulted.
        """
        await self.session.flush()
        grace = timedelta(days=self.settings.loan_default_grace_days)
        result = await self.session.execute(
            select(LoanDeduction)
            .join(EmployeeLoan, EmployeeLoan.loan_id == LoanDeduction.loan_id)
            .where(
                EmployeeLoan.status == LoanStatus.ACTIVE.value,
                EmployeeLoan.deleted_at.is_(None),
                LoanDeduction.status.in_(
                    [LoanDeductionStatus.PENDING.value, LoanDeductionStatus.OVERDUE.value]
                ),
                LoanDeduction.due_date < as_of,
            )
            .order_by(LoanDeduction.due_date)
        )
        held = await self._held_by_open_calculations()
        marked_overdue = 0
        oldest_overdue: dict[UUID, date] = {}
        for installment in result.scalars().all():
            if installment.loan_deduction_id in held:
                continue
            if installment.status == LoanDeductionStatus.PENDING:
                installment.mark_as_overdue()
                self.audit.record_status_change(installment, LoanDeductionStatus.PENDING, actor)
                marked_overdue += 1
            oldest_overdue.setdefault(installment.loan_id, installment.due_date)

        defaulted: list[str] = []
        for loan_id, due in oldest_overdue.items():
            if as_of - due <= grace:
                continue
            loan = await self.get_loan(loan_id)
            reason = (
                f"Installment due {due.isoformat()} unpaid for more than "
                f"{self.settings.loan_default_grace_days} days"
            )
            before = loan.status
            loan.mark_as_defaulted(reason, as_of)
            self.audit.record_status_change(loan, before, actor, notes=reason)
            self._emit(
                LoanDefaulted,
                actor,
                loan_id=loan.loan_id,
                employee_id=loan.employee_id,
                remaining_balance=money(loan.remaining_balance),
                reason=reason,
            )
            logger.warning("Loan %s defaulted: %s", loan.loan_number, reason)
            defaulted.append(loan.loan_number)

        return {"as_of": as_of.isoformat(), "marked_overdue": marked_overdue, "defaulted": defaulted}

    async def _held_by_open_calculations(self) -> set[UUID]:
        """Installments already taken by a current calculation that has not locked yet.

        They are posted when their period locks, so they are not overdue.
        """
        result = await self.session.execute(
            select(EmployeePayrollCalculation.calculation_details).where(
                EmployeePayrollCalculation.superseded_at.is_(None),
                EmployeePayrollCalculation.locked_at.is_(None),
            )
        )
        held: set[UUID] = set()
        for details in result.scalars().all():
            held.update(UUID(i) for i in (details or {}).get("loan_deduction_ids", []))
        return held
