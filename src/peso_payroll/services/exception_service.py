"""Review workflow for flagged calculation anomalies."""

from __future__ import annotations

import logging
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select

from peso_payroll.actors import Actor
from peso_payroll.calculators.types import ExceptionFlag
from peso_payroll.errors import StateConflict, ValidationFailure
from peso_payroll.models import EmployeePayrollCalculation, PayrollException, PayrollPeriod
from peso_payroll.services.base import ServiceBase
from peso_payroll.services.state_machine import (
    CalculationStatus,
    ExceptionStateMachine,
    ExceptionStatus,
)

logger = logging.getLogger(__name__)


class ExceptionService(ServiceBase):
    """Opens, acknowledges, resolves and ignores PayrollException rows.

    A calculation stays in `exception` status while any of its exceptions is
    open; closing the last one returns it to calculated (or adjusted).
    """

    async def get_exception(self, exception_id: UUID) -> PayrollException:
        return await self._get(PayrollException, exception_id)

    def open_from_flags(
        self,
        calculation: EmployeePayrollCalculation,
        flags: Sequence[ExceptionFlag],
    ) -> list[PayrollException]:
        """Create one open exception per flag on a freshly persisted calculation."""
        rows = []
        for flag in flags:
            row = PayrollException(
                calculation_id=calculation.calculation_id,
                payroll_period_id=calculation.payroll_period_id,
                employee_id=calculation.employee_id,
                exception_type=flag.exception_type,
                severity=flag.severity,
                title=flag.title,
                description=flag.description,
                details=_json_details(flag.details),
                current_value=flag.current_value,
                expected_value=flag.expected_value,
                variance_percent=flag.variance_percent,
                detection_rule=flag.detection_rule,
            )
            self.session.add(row)
            rows.append(row)
        return rows

    async def for_calculation(
        self, calculation_id: UUID, only_open: bool = False
    ) -> list[PayrollException]:
        await self.session.flush()
        stmt = select(PayrollException).where(PayrollException.calculation_id == calculation_id)
        if only_open:
            stmt = stmt.where(PayrollException.status == ExceptionStatus.OPEN.value)
        result = await self.session.execute(stmt.order_by(PayrollException.created_at))
        return list(result.scalars().all())

    async def list_open(
        self, payroll_period_id: UUID, severity: str | None = None
    ) -> list[PayrollException]:
        await self.session.flush()
        stmt = select(PayrollException).where(
            PayrollException.payroll_period_id == payroll_period_id,
            PayrollException.status == ExceptionStatus.OPEN.value,
        )
        if severity is not None:
            stmt = stmt.where(PayrollException.severity == severity)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def counts_by_type(self, payroll_period_id: UUID) -> dict[str, int]:
        await self.session.flush()
        result = await self.session.execute(
            select(PayrollException.exception_type, func.count())
            .where(
                PayrollException.payroll_period_id == payroll_period_id,
                PayrollException.status == ExceptionStatus.OPEN.value,
            )
            .group_by(PayrollException.exception_type)
        )
        return {exception_type: int(n) for exception_type, n in result.all()}

    async def acknowledge(
        self, exception_id: UUID, actor: Actor, notes: str | None = None
    ) -> PayrollException:
        return await self._close(exception_id, ExceptionStatus.ACKNOWLEDGED, actor, notes)

    async def resolve(self, exception_id: UUID, actor: Actor, notes: str) -> PayrollException:
        if not notes or not notes.strip():
            raise ValidationFailure("Resolution notes are required", "resolution_notes")
        return await self._close(exception_id, ExceptionStatus.RESOLVED, actor, notes)

    async def ignore(self, exception_id: UUID, actor: Actor, notes: str) -> PayrollException:
        """Dismiss a non-critical exception."""
        if not notes or not notes.strip():
            raise ValidationFailure("A reason is required to ignore an exception", "resolution_notes")
        exception = await self.get_exception(exception_id)
        if exception.severity == "critical":
            raise StateConflict(
                f"Critical {exception.exception_type} exceptions cannot be ignored; resolve them"
            )
        return await self._close(exception_id, ExceptionStatus.IGNORED, actor, notes)

    async def supersede(
        self, calculation: EmployeePayrollCalculation, new_version: int, actor: Actor
    ) -> int:
        """Resolve the open exceptions of a calculation replaced by a recalculation."""
        closed = 0
        for exception in await self.for_calculation(calculation.calculation_id, only_open=True):
            exception.status = ExceptionStatus.RESOLVED.value
            exception.resolution_notes = f"Superseded by version {new_version}"
            exception.resolved_at = self.clock.now()
            exception.resolved_by = actor.user_id
            closed += 1
        return closed

    async def carry_forward(
        self, calculation: EmployeePayrollCalculation, replacement: EmployeePayrollCalculation
    ) -> int:
        """Re-point open exceptions at the version an adjustment produced."""
        moved = await self.for_calculation(calculation.calculation_id, only_open=True)
        for exception in moved:
            exception.calculation_id = replacement.calculation_id
        return len(moved)

    async def _close(
        self,
        exception_id: UUID,
        to_status: ExceptionStatus,
        actor: Actor,
        notes: str | None,
    ) -> PayrollException:
        exception = await self.get_exception(exception_id)
        before = exception.status
        ExceptionStateMachine.validate_transition(exception.status, to_status)
        exception.status = to_status.value
        exception.resolution_notes = notes
        if to_status != ExceptionStatus.ACKNOWLEDGED:
            exception.resolved_at = self.clock.now()
            exception.resolved_by = actor.user_id
        self.audit.record_status_change(exception, before, actor, notes=notes)

        if before == ExceptionStatus.OPEN:
            await self._restore_calculation_status(exception.calculation_id)
            period = await self.session.get(PayrollPeriod, exception.payroll_period_id)
            if period is not None:
                period.exceptions_count = max(period.exceptions_count - 1, 0)
        logger.info(
            "Exception %s (%s) %s by %s",
            exception.exception_id,
            exception.exception_type,
            to_status.value,
            actor.name,
        )
        return exception

    async def _restore_calculation_status(self, calculation_id: UUID) -> None:
        calc = await self.session.get(EmployeePayrollCalculation, calculation_id)
        if calc is None or calc.is_locked or calc.calculation_status != CalculationStatus.EXCEPTION:
            return
        if calc.error_message:
            # Needs a recalculation, not a review decision
            return
        if await self.for_calculation(calculation_id, only_open=True):
            return
        calc.calculation_status = (
            CalculationStatus.ADJUSTED.value if calc.has_adjustments else CalculationStatus.CALCULATED.value
        )


def _json_details(details: dict) -> dict | None:
    if not details:
        return None
    return {k: [str(i) for i in v] if isinstance(v, list) else str(v) for k, v in details.items()}
