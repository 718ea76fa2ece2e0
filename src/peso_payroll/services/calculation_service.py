"""Period-wide payroll calculation runs and calculation versioning."""

from __future__ import annotations

import logging
import time
from datetime import date
from decimal import Decimal
from typing import Iterable, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from peso_payroll.actors import Actor
from peso_payroll.calculators.engine import PayrollCalculationEngine, default_rules
from peso_payroll.calculators.types import (
    CalculationContext,
    CalculationResult,
    ExceptionFlag,
    PeriodCalculationResult,
    RuleSet,
)
from peso_payroll.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    PayrollError,
)
from peso_payroll.events import (
    EmployeePayrollCalculated,
    PayrollCalculationCompleted,
    PayrollCalculationFailed,
    PayrollCalculationStarted,
)
from peso_payroll.models import (
    Employee,
    EmployeeAllowance,
    EmployeeDeduction,
    EmployeePayrollCalculation,
    EmployeePayrollInfo,
    EmployeeSalaryComponent,
    PayrollPeriod,
    SalaryComponent,
)
from peso_payroll.models.payroll import EXCEPTION_SEVERITIES
from peso_payroll.money import ZERO, money
from peso_payroll.schemas import AttendanceSummary, LeaveSummary
from peso_payroll.services.base import ServiceBase
from peso_payroll.services.exception_service import ExceptionService
from peso_payroll.services.loan_service import LoanService
from peso_payroll.services.period_service import PeriodService
from peso_payroll.services.state_machine import (
    CalculationStatus,
    PeriodStateMachine,
    PeriodStatus,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class PayrollInputs(Protocol):
    """Timekeeping and leave summaries for one period."""

    def attendance_for(
        self, employee_id: UUID, period: PayrollPeriod
    ) -> AttendanceSummary | None:
        ...

    def leave_for(self, employee_id: UUID, period: PayrollPeriod) -> LeaveSummary | None:
        ...


class StaticPayrollInputs:
    """PayrollInputs backed by in-memory summaries keyed by employee."""

    def __init__(
        self,
        attendance: Iterable[AttendanceSummary] = (),
        leave: Iterable[LeaveSummary] = (),
    ):
        self._attendance = {a.employee_id: a for a in attendance}
        self._leave = {lv.employee_id: lv for lv in leave}

    def attendance_for(self, employee_id, period):
        return self._attendance.get(employee_id)

    def leave_for(self, employee_id, period):
        return self._leave.get(employee_id)


class CancellationToken:
    """Cooperative cancellation checked between employees."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class CalculationService(ServiceBase):
    """Runs the calculation engine over a period and persists versioned results.

    Per-employee failures are contained and counted; database failures abort
    the run. An employee whose current calculation is locked is skipped.
    """

    def __init__(self, session, clock=None, settings=None, emitter=None):
        super().__init__(session, clock, settings, emitter)
        self.periods = PeriodService(session, self.clock, self.settings, self.emitter)
        self.loans = LoanService(session, self.clock, self.settings, self.emitter)
        self.exceptions = ExceptionService(session, self.clock, self.settings, self.emitter)

    async def calculate_period(
        self,
        payroll_period_id: UUID,
        inputs: PayrollInputs,
        actor: Actor,
        employee_ids: list[UUID] | None = None,
        cancellation: CancellationToken | None = None,
        rules: RuleSet | None = None,
    ) -> PeriodCalculationResult:
        """Calculate every payable employee of a period.

        The period moves to `calculating` for the run and to `calculated` when
        it finishes, or back to `active` when the run is cancelled or aborts.
        """
        period = await self.periods.get_period(payroll_period_id)
        if not PeriodStateMachine.can_calculate(period.status):
            raise InvalidTransitionError(
                period.status,
                PeriodStatus.CALCULATING.value,
                "Period is not open for calculation",
            )
        rerun = period.status == PeriodStatus.CALCULATED
        await self.periods.transition(period, PeriodStatus.CALCULATING, actor)

        rules = rules or default_rules(self.settings)
        engine = PayrollCalculationEngine(rules, self.settings)
        period.calculation_config = rules.to_config()
        period.calculation_started_at = self.clock.now()
        period.calculation_completed_at = None
        period.calculation_errors = None
        period.employees_processed = 0
        period.employees_failed = 0
        if rerun:
            period.calculation_retries += 1

        employees = await self._payable_employees(period, employee_ids)
        period.total_employees = len(employees)
        await self.session.flush()

        outcome = PeriodCalculationResult(payroll_period_id=payroll_period_id)
        started = time.monotonic()
        self.audit.record_calculation_log(
            payroll_period_id,
            "calculation_started",
            f"Calculation started for {len(employees)} employee(s)",
            actor,
            details={"engine_version": rules.engine_version, "rules": rules.fingerprint()},
        )
        self._emit(
            PayrollCalculationStarted,
            actor,
            payroll_period_id=payroll_period_id,
            total_employees=len(employees),
        )
        logger.info(
            "Calculating period %s for %d employee(s)", period.period_number, len(employees)
        )

        try:
            for employee in employees:
                if cancellation is not None and cancellation.cancelled:
                    outcome.cancelled = True
                    break
                await self._calculate_one(period, employee, inputs, engine, actor, outcome)
        except SQLAlchemyError as exc:
            await self._abort(period, actor, outcome, started, exc)
            raise

        outcome.processing_time_seconds = _elapsed(started)
        await self.session.flush()
        await self.session.refresh(period, ["employees_processed", "employees_failed"])
        period.calculation_errors = [
            {"employee_id": str(eid), "error": msg} for eid, msg in outcome.failures.items()
        ] or None

        if outcome.cancelled:
            self.audit.record_calculation_log(
                payroll_period_id,
                "calculation_cancelled",
                f"Calculation cancelled after {outcome.processed} employee(s)",
                actor,
                severity="warning",
                **_counts(outcome),
            )
            await self.periods.refresh_totals(period)
            await self.periods.transition(
                period, PeriodStatus.ACTIVE, actor, reason="Calculation cancelled"
            )
            logger.warning("Calculation of period %s cancelled", period.period_number)
        else:
            period.calculation_completed_at = self.clock.now()
            self.audit.record_calculation_log(
                payroll_period_id,
                "calculation_completed",
                f"Calculated {outcome.succeeded} of {outcome.processed} employee(s)",
                actor,
                severity="warning" if outcome.failed else "info",
                **_counts(outcome),
            )
            await self.periods.refresh_totals(period)
            await self.periods.transition(period, PeriodStatus.CALCULATED, actor)
            logger.info(
                "Calculated period %s: %d ok, %d failed, %d exception(s)",
                period.period_number,
                outcome.succeeded,
                outcome.failed,
                outcome.exceptions,
            )

        outcome.total_gross = money(period.total_gross_pay)
        outcome.total_net = money(period.total_net_pay)
        self._emit(
            PayrollCalculationCompleted,
            actor,
            payroll_period_id=payroll_period_id,
            employees_processed=outcome.processed,
            employees_failed=outcome.failed,
            exceptions_count=outcome.exceptions,
            cancelled=outcome.cancelled,
        )
        return outcome

    async def _abort(
        self,
        period: PayrollPeriod,
        actor: Actor,
        outcome: PeriodCalculationResult,
        started: float,
        exc: Exception,
    ) -> None:
        """Roll back the partial run and commit a `calculation_failed` log on its own.

        Work done since the last commit is discarded, so the period returns to
        the status it had before the run began. The log survives the caller's
        rollback.
        """
        payroll_period_id = period.payroll_period_id
        period_number = period.period_number
        outcome.processing_time_seconds = _elapsed(started)
        logger.critical("Calculation of period %s aborted: %s", period_number, exc)
        await self.session.rollback()
        self.audit.record_calculation_log(
            payroll_period_id,
            "calculation_failed",
            f"Calculation aborted: {exc}",
            actor,
            severity="critical",
            details={"error_type": type(exc).__name__},
            **_counts(outcome),
        )
        try:
            await self.session.commit()
        except SQLAlchemyError:
            logger.exception("Could not store the failure log of period %s", period_number)
            await self.session.rollback()
        self._emit(
            PayrollCalculationFailed,
            actor,
            payroll_period_id=payroll_period_id,
            error=str(exc),
        )

    async def _calculate_one(
        self,
        period: PayrollPeriod,
        employee: Employee,
        inputs: PayrollInputs,
        engine: PayrollCalculationEngine,
        actor: Actor,
        outcome: PeriodCalculationResult,
    ) -> None:
        outcome.processed += 1
        try:
            calc = await self.calculate_employee(period, employee, inputs, engine, actor)
        except (PayrollError, ValueError, ArithmeticError, LookupError) as exc:
            outcome.failed += 1
            outcome.failures[employee.employee_id] = str(exc)
            await self._bump_counters(period, failed=True)
            self.audit.record_calculation_log(
                period.payroll_period_id,
                "employee_failed",
                f"{employee.employee_number}: {exc}",
                actor,
                severity="error",
                employee_id=employee.employee_id,
            )
            logger.warning(
                "Calculation failed for employee %s: %s", employee.employee_number, exc
            )
            return

        if calc is None:
            outcome.skipped_locked += 1
            outcome.succeeded += 1
            await self._bump_counters(period)
            return

        if calc.error_message:
            outcome.failed += 1
            outcome.failures[employee.employee_id] = calc.error_message
            await self._bump_counters(period, failed=True)
            self.audit.record_calculation_log(
                period.payroll_period_id,
                "employee_failed",
                f"{employee.employee_number}: {calc.error_message}",
                actor,
                severity="error",
                employee_id=employee.employee_id,
            )
        else:
            outcome.succeeded += 1
            await self._bump_counters(period)
        if calc.has_exceptions:
            outcome.exceptions += len(calc.exception_flags or [])

    async def _bump_counters(self, period: PayrollPeriod, failed: bool = False) -> None:
        """Atomic increment of the shared period counters."""
        values = {"employees_processed": PayrollPeriod.employees_processed + 1}
        if failed:
            values["employees_failed"] = PayrollPeriod.employees_failed + 1
        await self.session.execute(
            update(PayrollPeriod)
            .where(PayrollPeriod.payroll_period_id == period.payroll_period_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def calculate_employee(
        self,
        period: PayrollPeriod,
        employee: Employee,
        inputs: PayrollInputs,
        engine: PayrollCalculationEngine,
        actor: Actor,
    ) -> EmployeePayrollCalculation | None:
        """Calculate and persist one employee.

        Returns None when the current calculation is locked (no-op). Returns
        the current row unchanged when inputs and rules are identical to it.
        """
        current = await self.current_calculation(period.payroll_period_id, employee.employee_id)
        if current is not None and current.is_locked:
            logger.debug("Skipping locked calculation for %s", employee.employee_number)
            return None

        ctx = await self.build_context(period, employee, inputs)
        result = engine.calculate(ctx)

        if (
            current is not None
            and current.inputs_fingerprint == result.inputs_fingerprint
            and current.rules_fingerprint == result.rules_fingerprint
        ):
            return current

        calc = EmployeePayrollCalculation(
            payroll_period_id=period.payroll_period_id,
            employee_id=employee.employee_id,
            employee_payroll_info_id=ctx.profile.employee_payroll_info_id if ctx.profile else None,
            salary_type=ctx.profile.salary_type if ctx.profile else None,
        )
        if current is not None:
            calc.version = current.version + 1
            calc.previous_version_id = current.calculation_id
            calc.adjustments_total = money(current.adjustments_total)
            calc.has_adjustments = current.has_adjustments
        self._apply_result(calc, result)
        calc.calculated_at = self.clock.now()
        calc.calculated_by = actor.user_id

        flags = list(result.flags)
        reconciliation = calc.reconciliation_errors() if result.success else []
        if reconciliation:
            logger.critical(
                "Calculation for %s does not reconcile: %s",
                employee.employee_number,
                "; ".join(reconciliation),
            )
            flags.append(
                ExceptionFlag(
                    exception_type="data_inconsistency",
                    severity=EXCEPTION_SEVERITIES["data_inconsistency"],
                    title="Totals do not reconcile",
                    description="; ".join(reconciliation),
                    detection_rule="reconciliation",
                )
            )

        calc.has_exceptions = bool(flags)
        calc.exception_flags = [f.exception_type for f in flags] or None
        calc.error_message = "; ".join(result.errors) or None
        calc.calculation_status = (
            CalculationStatus.EXCEPTION.value if flags else CalculationStatus.CALCULATED.value
        )

        self.session.add(calc)
        await self.session.flush()
        if current is not None:
            await self.supersede_version(current, calc, actor)
        self.exceptions.open_from_flags(calc, flags)

        self._emit(
            EmployeePayrollCalculated,
            actor,
            payroll_period_id=period.payroll_period_id,
            employee_id=employee.employee_id,
            calculation_id=calc.calculation_id,
            version=calc.version,
            calculation_status=calc.calculation_status,
            final_net_pay=money(calc.final_net_pay),
        )
        return calc

    async def supersede_version(
        self,
        current: EmployeePayrollCalculation,
        replacement: EmployeePayrollCalculation,
        actor: Actor,
        carry_exceptions: bool = False,
    ) -> None:
        """Mark `current` superseded, failing if another writer got there first.

        Open exceptions of `current` are resolved, or moved to `replacement`
        when `carry_exceptions` is set.
        """
        now = self.clock.now()
        result = await self.session.execute(
            update(EmployeePayrollCalculation)
            .where(
                EmployeePayrollCalculation.calculation_id == current.calculation_id,
                EmployeePayrollCalculation.version == current.version,
                EmployeePayrollCalculation.superseded_at.is_(None),
            )
            .values(superseded_at=now, superseded_by_id=replacement.calculation_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError(
                "EmployeePayrollCalculation",
                current.calculation_id,
                f"version {current.version} was already superseded",
            )
        await self.session.refresh(current, ["superseded_at", "superseded_by_id"])
        if carry_exceptions:
            await self.exceptions.carry_forward(current, replacement)
        else:
            await self.exceptions.supersede(current, replacement.version, actor)

    def _apply_result(self, calc: EmployeePayrollCalculation, result: CalculationResult) -> None:
        for key, value in result.inputs.items():
            setattr(calc, key, value)
        for key, value in result.amounts.items():
            setattr(calc, key, money(value))
        calc.final_net_pay = money(calc.net_pay + money(calc.adjustments_total))
        calc.calculation_details = result.details
        calc.inputs_fingerprint = result.inputs_fingerprint
        calc.rules_fingerprint = result.rules_fingerprint

    # ----- Loading -----

    async def current_calculation(
        self, payroll_period_id: UUID, employee_id: UUID
    ) -> EmployeePayrollCalculation | None:
        await self.session.flush()
        result = await self.session.execute(
            select(EmployeePayrollCalculation)
            .where(
                EmployeePayrollCalculation.payroll_period_id == payroll_period_id,
                EmployeePayrollCalculation.employee_id == employee_id,
                EmployeePayrollCalculation.superseded_at.is_(None),
            )
            .order_by(EmployeePayrollCalculation.version.desc())
        )
        return result.scalars().first()

    async def version_chain(
        self, payroll_period_id: UUID, employee_id: UUID
    ) -> list[EmployeePayrollCalculation]:
        """All versions for one employee-period, oldest first."""
        await self.session.flush()
        result = await self.session.execute(
            select(EmployeePayrollCalculation)
            .where(
                EmployeePayrollCalculation.payroll_period_id == payroll_period_id,
                EmployeePayrollCalculation.employee_id == employee_id,
            )
            .order_by(EmployeePayrollCalculation.version)
        )
        return list(result.scalars().all())

    async def _payable_employees(
        self, period: PayrollPeriod, employee_ids: list[UUID] | None
    ) -> list[Employee]:
        stmt = (
            select(Employee)
            .where(
                Employee.deleted_at.is_(None),
                Employee.hire_date <= period.period_end,
                (Employee.separation_date.is_(None))
                | (Employee.separation_date >= period.period_start),
            )
            .order_by(Employee.employee_number)
        )
        if employee_ids is not None:
            stmt = stmt.where(Employee.employee_id.in_(employee_ids))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def active_profile(
        self, employee_id: UUID, as_of: date
    ) -> EmployeePayrollInfo | None:
        result = await self.session.execute(
            select(EmployeePayrollInfo)
            .where(
                EmployeePayrollInfo.employee_id == employee_id,
                EmployeePayrollInfo.deleted_at.is_(None),
                EmployeePayrollInfo.is_active.is_(True),
                EmployeePayrollInfo.effective_date <= as_of,
            )
            .order_by(EmployeePayrollInfo.effective_date.desc())
        )
        for profile in result.scalars().all():
            if profile.is_active_on(as_of):
                return profile
        return None

    async def build_context(
        self, period: PayrollPeriod, employee: Employee, inputs: PayrollInputs
    ) -> CalculationContext:
        employee_id = employee.employee_id
        start, end = period.period_start, period.period_end

        allowances = await self.session.execute(
            select(EmployeeAllowance).where(
                EmployeeAllowance.employee_id == employee_id,
                EmployeeAllowance.deleted_at.is_(None),
            )
        )
        deductions = await self.session.execute(
            select(EmployeeDeduction).where(
                EmployeeDeduction.employee_id == employee_id,
                EmployeeDeduction.deleted_at.is_(None),
            )
        )
        components = await self.session.execute(
            select(SalaryComponent, EmployeeSalaryComponent)
            .join(
                EmployeeSalaryComponent,
                EmployeeSalaryComponent.salary_component_id
                == SalaryComponent.salary_component_id,
            )
            .where(
                EmployeeSalaryComponent.employee_id == employee_id,
                EmployeeSalaryComponent.deleted_at.is_(None),
                SalaryComponent.deleted_at.is_(None),
            )
            .order_by(SalaryComponent.display_order, SalaryComponent.code)
        )

        return CalculationContext(
            employee_id=employee_id,
            period_start=start,
            period_end=end,
            is_second_cutoff=period.is_second_cutoff,
            profile=await self.active_profile(employee_id, end),
            attendance=inputs.attendance_for(employee_id, period),
            leave=inputs.leave_for(employee_id, period),
            allowances=[a for a in allowances.scalars().all() if a.is_active_between(start, end)],
            deductions=[d for d in deductions.scalars().all() if d.is_active_between(start, end)],
            components=[(c, a) for c, a in components.all()],
            loan_installments=await self.loans.installments_for(employee_id, period),
            previous_final_net_pay=await self._previous_final_net_pay(employee_id, period),
        )

    async def _previous_final_net_pay(
        self, employee_id: UUID, period: PayrollPeriod
    ) -> Decimal | None:
        result = await self.session.execute(
            select(EmployeePayrollCalculation.final_net_pay)
            .join(
                PayrollPeriod,
                PayrollPeriod.payroll_period_id == EmployeePayrollCalculation.payroll_period_id,
            )
            .where(
                EmployeePayrollCalculation.employee_id == employee_id,
                EmployeePayrollCalculation.superseded_at.is_(None),
                PayrollPeriod.period_end < period.period_start,
                PayrollPeriod.period_type == period.period_type,
            )
            .order_by(PayrollPeriod.period_end.desc())
            .limit(1)
        )
        value = result.scalar_one_or_none()
        if value is None or money(value) == ZERO:
            return None
        return money(value)


def _elapsed(started: float) -> Decimal:
    return Decimal(str(round(time.monotonic() - started, 2)))


def _counts(outcome: PeriodCalculationResult) -> dict[str, object]:
    return {
        "employees_processed": outcome.processed,
        "employees_success": outcome.succeeded,
        "employees_failed": outcome.failed,
        "exceptions_generated": outcome.exceptions,
        "processing_time_seconds": outcome.processing_time_seconds,
    }
