"""Adjustment workflow: file, review, and apply as a new calculation version."""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from peso_payroll.actors import Actor, Role
from peso_payroll.calculators.types import ExceptionFlag
from peso_payroll.errors import InvalidTransitionError, StateConflict, ValidationFailure
from peso_payroll.events import AdjustmentApplied
from peso_payroll.models import EmployeePayrollCalculation, PayrollAdjustment, PayrollPeriod
from peso_payroll.models.payroll import EXCEPTION_SEVERITIES
from peso_payroll.money import money
from peso_payroll.services.base import ServiceBase
from peso_payroll.services.calculation_service import CalculationService
from peso_payroll.services.state_machine import (
    AdjustmentStateMachine,
    AdjustmentStatus,
    CalculationStatus,
    PeriodStateMachine,
)

logger = logging.getLogger(__name__)

PREPARER_ROLES = frozenset({Role.PAYROLL_OFFICER, Role.HR_MANAGER, Role.OFFICE_ADMIN})


class AdjustmentService(ServiceBase):
    """Files, approves, rejects and applies payroll adjustments.

    Amounts below `adjustment_approval_threshold` are approved on filing.
    Applying never edits a calculation in place: it creates the next version
    with the signed amount added to `adjustments_total`.
    """

    def __init__(self, session, clock=None, settings=None, emitter=None):
        super().__init__(session, clock, settings, emitter)
        self.calculations = CalculationService(session, self.clock, self.settings, self.emitter)

    async def get_adjustment(self, adjustment_id: UUID) -> PayrollAdjustment:
        return await self._get(PayrollAdjustment, adjustment_id)

    async def create_adjustment(
        self,
        calculation_id: UUID,
        adjustment_type: str,
        reason: str,
        actor: Actor,
        amount: Decimal | None = None,
        original_amount: Decimal | None = None,
        adjusted_amount: Decimal | None = None,
        category: str = "correction",
        component: str | None = None,
        justification: str | None = None,
    ) -> PayrollAdjustment:
        actor.require(PREPARER_ROLES, "file payroll adjustments")
        calc = await self._get(EmployeePayrollCalculation, calculation_id)
        if not calc.is_current:
            raise StateConflict(
                f"Calculation version {calc.version} has been superseded; adjust the current version"
            )
        period = await self._adjustable_period(calc.payroll_period_id)

        now = self.clock.now()
        adjustment = PayrollAdjustment.build(
            calc,
            adjustment_type,
            reason,
            amount=amount,
            original_amount=original_amount,
            adjusted_amount=adjusted_amount,
            category=category,
            component=component,
            justification=justification,
            status=AdjustmentStatus.PENDING.value,
            submitted_at=now,
            submitted_by=actor.user_id,
        )
        adjustment.requires_approval = adjustment.needs_approval(
            self.settings.adjustment_approval_threshold
        )
        self.session.add(adjustment)
        self.audit.record(
            adjustment,
            "created",
            actor,
            new_values={
                "adjustment_type": adjustment.adjustment_type,
                "category": adjustment.category,
                "amount": adjustment.amount,
                "signed_amount": adjustment.signed_amount(),
                "calculation_id": calc.calculation_id,
                "requires_approval": adjustment.requires_approval,
            },
            notes=reason,
        )
        if not adjustment.requires_approval:
            adjustment.status = AdjustmentStatus.APPROVED.value
            adjustment.approved_at = now
            adjustment.approved_by = actor.user_id
            self.audit.record_status_change(
                adjustment,
                AdjustmentStatus.PENDING,
                actor,
                notes="Below approval threshold",
            )
        await self.session.flush()
        logger.info(
            "Adjustment %s filed on period %s (%s %s)",
            adjustment.adjustment_id,
            period.period_number,
            adjustment.adjustment_type,
            adjustment.amount,
        )
        return adjustment

    async def approve(
        self, adjustment_id: UUID, actor: Actor, notes: str | None = None
    ) -> PayrollAdjustment:
        adjustment = await self.get_adjustment(adjustment_id)
        actor.require(AdjustmentStateMachine.REVIEWER_ROLES, "approve payroll adjustments")
        AdjustmentStateMachine.validate_transition(adjustment.status, AdjustmentStatus.APPROVED)
        before = adjustment.status
        adjustment.status = AdjustmentStatus.APPROVED.value
        adjustment.approved_at = self.clock.now()
        adjustment.approved_by = actor.user_id
        self.audit.record_status_change(adjustment, before, actor, notes=notes)
        logger.info("Adjustment %s approved by %s", adjustment_id, actor.name)
        return adjustment

    async def reject(self, adjustment_id: UUID, actor: Actor, reason: str) -> PayrollAdjustment:
        if not reason or not reason.strip():
            raise ValidationFailure("A rejection reason is required", "reason")
        adjustment = await self.get_adjustment(adjustment_id)
        actor.require(AdjustmentStateMachine.REVIEWER_ROLES, "reject payroll adjustments")
        AdjustmentStateMachine.validate_transition(adjustment.status, AdjustmentStatus.REJECTED)
        before = adjustment.status
        adjustment.status = AdjustmentStatus.REJECTED.value
        adjustment.rejected_at = self.clock.now()
        adjustment.rejected_by = actor.user_id
        adjustment.rejection_reason = reason
        self.audit.record_status_change(adjustment, before, actor, notes=reason)
        logger.info("Adjustment %s rejected by %s: %s", adjustment_id, actor.name, reason)
        return adjustment

    async def apply(self, adjustment_id: UUID, actor: Actor) -> EmployeePayrollCalculation:
        """Apply an approved adjustment; returns the new calculation version.

        The adjustment lands on the employee's current version, which may be
        newer than the one it was filed against. Raises
        ConcurrentModificationError if another writer superseded that version
        first.
        """
        adjustment = await self.get_adjustment(adjustment_id)
        actor.require(PREPARER_ROLES, "apply payroll adjustments")
        if not adjustment.can_apply():
            raise InvalidTransitionError(
                adjustment.status,
                AdjustmentStatus.APPLIED.value,
                "Only approved, unapplied adjustments can be applied",
            )
        period = await self._adjustable_period(adjustment.payroll_period_id)
        base = await self.calculations.current_calculation(
            adjustment.payroll_period_id, adjustment.employee_id
        )
        if base is None:
            raise StateConflict("The employee has no calculation to adjust in this period")

        signed = adjustment.signed_amount()
        now = self.clock.now()
        new = base.copy_as_next_version()
        new.adjustments_total = money(money(base.adjustments_total) + signed)
        new.has_adjustments = True
        new.recompute_totals()
        new.calculated_at = now
        new.calculated_by = actor.user_id
        new.calculation_status = CalculationStatus.ADJUSTED.value

        self.session.add(new)
        await self.session.flush()
        await self.calculations.supersede_version(base, new, actor, carry_exceptions=True)

        flags: list[ExceptionFlag] = []
        if new.final_net_pay < 0:
            flags.append(
                ExceptionFlag(
                    exception_type="negative_net_pay",
                    severity=EXCEPTION_SEVERITIES["negative_net_pay"],
                    title="Negative net pay after adjustment",
                    description=(
                        f"Final net pay {new.final_net_pay} after adjustment {signed}"
                    ),
                    current_value=money(new.final_net_pay),
                    detection_rule="adjustment",
                )
            )
            self.calculations.exceptions.open_from_flags(new, flags)
        open_exceptions = await self.calculations.exceptions.for_calculation(
            new.calculation_id, only_open=True
        )
        new.has_exceptions = bool(open_exceptions)
        new.exception_flags = sorted({e.exception_type for e in open_exceptions}) or None
        if open_exceptions:
            new.calculation_status = CalculationStatus.EXCEPTION.value

        before = adjustment.status
        adjustment.status = AdjustmentStatus.APPLIED.value
        adjustment.applied_at = now
        adjustment.applied_by = actor.user_id
        adjustment.applied_calculation_id = new.calculation_id
        self.audit.record_status_change(
            adjustment, before, actor, applied_calculation_id=new.calculation_id
        )
        self.audit.record(
            new,
            "adjustment_applied",
            actor,
            old_values={
                "version": base.version,
                "adjustments_total": base.adjustments_total,
                "final_net_pay": base.final_net_pay,
            },
            new_values={
                "version": new.version,
                "adjustments_total": new.adjustments_total,
                "final_net_pay": new.final_net_pay,
                "adjustment_id": adjustment.adjustment_id,
            },
        )
        await self.calculations.periods.refresh_totals(period)
        self._emit(
            AdjustmentApplied,
            actor,
            adjustment_id=adjustment.adjustment_id,
            base_calculation_id=base.calculation_id,
            new_calculation_id=new.calculation_id,
            signed_amount=signed,
        )
        logger.info(
            "Adjustment %s applied: version %d -> %d, final net pay %s",
            adjustment.adjustment_id,
            base.version,
            new.version,
            new.final_net_pay,
        )
        return new

    async def for_period(
        self, payroll_period_id: UUID, status: AdjustmentStatus | None = None
    ) -> list[PayrollAdjustment]:
        stmt = select(PayrollAdjustment).where(
            PayrollAdjustment.payroll_period_id == payroll_period_id
        )
        if status is not None:
            stmt = stmt.where(PayrollAdjustment.status == status.value)
        result = await self.session.execute(stmt.order_by(PayrollAdjustment.created_at))
        return list(result.scalars().all())

    async def _adjustable_period(self, payroll_period_id: UUID) -> PayrollPeriod:
        period = await self._get(PayrollPeriod, payroll_period_id)
        if not PeriodStateMachine.can_adjust(period.status):
            raise StateConflict(
                f"Period {period.period_number} is {period.status}; adjustments are closed"
            )
        if not period.can_adjust(self.clock.today()):
            raise StateConflict(
                f"Adjustment deadline {period.adjustment_deadline} for period "
                f"{period.period_number} has passed"
            )
        return period
