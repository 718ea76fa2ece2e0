"""Payment generation, channel batching, settlement and cash handling."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import func, select

from peso_payroll.actors import Actor, Role
from peso_payroll.errors import RetryableTransportFailure, StateConflict, ValidationFailure
from peso_payroll.events import BankFileGenerated, PaymentStatusChanged
from peso_payroll.models import (
    BankFileBatch,
    CashDistributionBatch,
    Employee,
    EmployeePayrollCalculation,
    EmployeePayrollInfo,
    PaymentMethod,
    PayrollPayment,
    PayrollPeriod,
)
from peso_payroll.models.payments import denomination_breakdown, merge_breakdowns
from peso_payroll.money import ZERO, money, sum_money
from peso_payroll.schemas import SettlementConfirmation
from peso_payroll.services import bank_file
from peso_payroll.services.base import ServiceBase
from peso_payroll.services.period_service import PeriodService
from peso_payroll.services.state_machine import (
    BankBatchStatus,
    CashBatchStatus,
    PaymentStatus,
    PeriodStateMachine,
)
from peso_payroll.vault import AccountVault

logger = logging.getLogger(__name__)

DISBURSEMENT_ROLES = frozenset({Role.PAYROLL_OFFICER, Role.OFFICE_ADMIN})
SETTLEMENT_ROLES = frozenset({Role.PAYROLL_OFFICER, Role.OFFICE_ADMIN, Role.SYSTEM})

# Payment deduction column -> calculation fields it snapshots
_DEDUCTION_SOURCES: dict[str, tuple[str, ...]] = {
    "sss_deduction": ("sss_contribution",),
    "philhealth_deduction": ("philhealth_contribution",),
    "pagibig_deduction": ("pagibig_contribution",),
    "tax_deduction": ("withholding_tax",),
    "loan_deduction": EmployeePayrollCalculation.LOAN_FIELDS,
    "advance_deduction": EmployeePayrollCalculation.ADVANCE_FIELDS,
    "leave_deduction": ("leave_deduction_amount",),
    "attendance_deduction": EmployeePayrollCalculation.ATTENDANCE_DEDUCTION_FIELDS,
    "other_deductions": EmployeePayrollCalculation.OTHER_DEDUCTION_FIELDS,
}

_BANK_FINISHED = (PaymentStatus.PAID, PaymentStatus.FAILED)


class DisbursementService(ServiceBase):
    """Turns finalized calculations into payments and moves them through channels.

    Payment amounts are snapshots of the calculation at generation time.
    Every payment or batch mutation is written to the payment audit log.
    """

    def __init__(self, session, clock=None, settings=None, emitter=None):
        super().__init__(session, clock, settings, emitter)
        self.periods = PeriodService(session, self.clock, self.settings, self.emitter)

    # ----- Payment generation -----

    async def generate_payments(
        self, payroll_period_id: UUID, actor: Actor
    ) -> list[PayrollPayment]:
        """Create one pending payment per payable calculation of a finalized period.

        Calculations with open exceptions or errors are skipped. Employees that
        already have a payment for the period are left alone, so the call can
        be repeated.
        """
        actor.require(DISBURSEMENT_ROLES, "generate payments")
        await self.session.flush()
        period = await self._get(PayrollPeriod, payroll_period_id)
        if not PeriodStateMachine.can_disburse(period.status):
            raise StateConflict(
                f"Period {period.period_number} is {period.status}; "
                "payments need a finalized or locked period"
            )

        calculations = await self.periods.current_calculations(payroll_period_id)
        payable = {
            c.calculation_id for c in await self.periods.payable_calculations(calculations)
        }
        existing = set(
            (
                await self.session.execute(
                    select(PayrollPayment.employee_id).where(
                        PayrollPayment.payroll_period_id == payroll_period_id,
                        PayrollPayment.deleted_at.is_(None),
                    )
                )
            )
            .scalars()
            .all()
        )
        methods = await self.enabled_methods()
        now = self.clock.now()

        created: list[PayrollPayment] = []
        for calc in calculations:
            if calc.employee_id in existing:
                continue
            if calc.calculation_id not in payable:
                logger.warning(
                    "Skipping payment for employee %s: calculation %s is not payable",
                    calc.employee_id,
                    calc.calculation_id,
                )
                continue
            if money(calc.final_net_pay) <= 0:
                logger.warning(
                    "Skipping payment for employee %s: nothing to disburse (%s)",
                    calc.employee_id,
                    calc.final_net_pay,
                )
                continue

            employee = await self._get(Employee, calc.employee_id)
            profile = (
                await self.session.get(EmployeePayrollInfo, calc.employee_payroll_info_id)
                if calc.employee_payroll_info_id
                else None
            )
            method = self.resolve_method(profile, money(calc.final_net_pay), methods, now)
            payment = self._build_payment(period, calc, employee, profile, method)
            payment.prepared_by = actor.user_id
            self.session.add(payment)
            self.audit.record(
                payment,
                "created",
                actor,
                new_values={
                    "payment_reference": payment.payment_reference,
                    "method_type": method.method_type,
                    "final_net_pay": payment.final_net_pay,
                    "calculation_id": calc.calculation_id,
                },
            )
            method.last_used_at = now
            created.append(payment)

        await self.session.flush()
        logger.info(
            "Generated %d payment(s) for period %s", len(created), period.period_number
        )
        return created

    def resolve_method(
        self,
        profile: EmployeePayrollInfo | None,
        amount: Decimal,
        methods: list[PaymentMethod],
        now: datetime,
    ) -> PaymentMethod:
        """The employee's preferred channel if it can carry the amount now, else cash."""
        preferred = profile.payment_method if profile is not None else "cash"
        if preferred != "cash":
            for method in methods:
                if method.method_type != preferred:
                    continue
                if preferred == "bank" and (
                    not profile.bank_account_token or method.bank_code != profile.bank_code
                ):
                    continue
                if preferred == "ewallet" and (
                    not profile.ewallet_account_token
                    or method.provider_name != profile.ewallet_provider
                ):
                    continue
                if method.supports_amount(amount) and method.is_available_for_payment(now):
                    return method
            logger.warning(
                "No %s channel can pay %s for employee %s; falling back to cash",
                preferred,
                amount,
                profile.employee_id,
            )
        for method in methods:
            if method.is_cash:
                return method
        raise ValidationFailure("No enabled cash payment method to fall back to", "payment_method")

    def _build_payment(
        self,
        period: PayrollPeriod,
        calc: EmployeePayrollCalculation,
        employee: Employee,
        profile: EmployeePayrollInfo | None,
        method: PaymentMethod,
    ) -> PayrollPayment:
        payment = PayrollPayment(
            employee_id=calc.employee_id,
            payroll_period_id=period.payroll_period_id,
            calculation_id=calc.calculation_id,
            payment_method_id=method.payment_method_id,
            period_start=period.period_start,
            period_end=period.period_end,
            payment_date=period.payment_date,
            gross_pay=money(calc.gross_pay),
            total_deductions=money(calc.total_deductions),
            net_pay=money(calc.net_pay),
            adjustments_total=money(calc.adjustments_total),
            final_net_pay=money(calc.final_net_pay),
            transaction_fee=method.calculate_fee(calc.final_net_pay),
            payment_reference=f"PAY-{period.period_number}-{employee.employee_number}",
        )
        for column, sources in _DEDUCTION_SOURCES.items():
            setattr(payment, column, sum_money(getattr(calc, f) for f in sources))

        if method.is_bank:
            payment.bank_code = method.bank_code
            payment.bank_name = method.bank_name
            payment.bank_account_token = profile.bank_account_token
            payment.bank_account_last4 = profile.bank_account_last4
        elif method.is_ewallet:
            payment.ewallet_provider = method.provider_name
            payment.ewallet_account_token = profile.ewallet_account_token
            payment.ewallet_account_last4 = profile.ewallet_account_last4
            payment.batch_number = f"EWALLET-{period.period_number}-{method.provider_name}"
        else:
            payment.denomination_breakdown = denomination_breakdown(payment.final_net_pay)
        return payment

    async def enabled_methods(self) -> list[PaymentMethod]:
        result = await self.session.execute(
            select(PaymentMethod)
            .where(PaymentMethod.is_enabled.is_(True), PaymentMethod.deleted_at.is_(None))
            .order_by(PaymentMethod.sort_order, PaymentMethod.display_name)
        )
        return list(result.scalars().all())

    async def payments_for(
        self,
        payroll_period_id: UUID,
        method_type: str | None = None,
        status: PaymentStatus | None = None,
        unbatched: bool = False,
    ) -> list[PayrollPayment]:
        await self.session.flush()
        stmt = select(PayrollPayment).where(
            PayrollPayment.payroll_period_id == payroll_period_id,
            PayrollPayment.deleted_at.is_(None),
        )
        if method_type is not None:
            stmt = stmt.join(
                PaymentMethod,
                PaymentMethod.payment_method_id == PayrollPayment.payment_method_id,
            ).where(PaymentMethod.method_type == method_type)
        if status is not None:
            stmt = stmt.where(PayrollPayment.status == status.value)
        if unbatched:
            stmt = stmt.where(PayrollPayment.batch_number.is_(None))
        result = await self.session.execute(stmt.order_by(PayrollPayment.payment_reference))
        return list(result.scalars().all())

    # ----- Payment status -----

    async def _change_payment(
        self,
        payment: PayrollPayment,
        change: Callable[[], None],
        actor: Actor,
        notes: str | None = None,
        **extra: Any,
    ) -> PayrollPayment:
        before = payment.status
        change()
        self.audit.record_status_change(payment, before, actor, notes=notes, **extra)
        self._emit(
            PaymentStatusChanged,
            actor,
            payment_id=payment.payment_id,
            from_status=str(before),
            to_status=payment.status,
            retry_count=payment.retry_count,
        )
        logger.info(
            "Payment %s: %s -> %s", payment.payment_reference, before, payment.status
        )
        return payment

    async def mark_processing(self, payment_id: UUID, actor: Actor) -> PayrollPayment:
        actor.require(SETTLEMENT_ROLES, "dispatch payments")
        payment = await self._get(PayrollPayment, payment_id)
        return await self._change_payment(
            payment, lambda: payment.mark_as_processing(self.clock.now()), actor
        )

    async def apply_settlement(
        self, confirmation: SettlementConfirmation, actor: Actor
    ) -> PayrollPayment:
        """Apply a channel's paid/failed/unclaimed report to a processing payment."""
        actor.require(SETTLEMENT_ROLES, "settle payments")
        payment = await self._get(PayrollPayment, confirmation.payment_id)
        now = self.clock.now()
        if confirmation.status == "paid":
            await self._change_payment(
                payment,
                lambda: payment.mark_as_paid(
                    now,
                    confirmation_code=confirmation.confirmation_code,
                    provider_response=confirmation.provider_response,
                ),
                actor,
                confirmation_code=confirmation.confirmation_code,
            )
        elif confirmation.status == "failed":
            reason = confirmation.failure_reason or "Rejected by provider"
            await self._change_payment(
                payment,
                lambda: payment.mark_as_failed(reason, now, confirmation.provider_response),
                actor,
                notes=reason,
            )
            if not payment.can_retry(self.settings.max_payment_retries):
                logger.error(
                    "Payment %s failed after %d retries; reissue manually",
                    payment.payment_reference,
                    payment.retry_count,
                )
        else:
            await self._change_payment(payment, lambda: payment.mark_as_unclaimed(now), actor)

        if payment.batch_number and payment.batch_number.startswith("BANK-"):
            await self._refresh_bank_batch(payment.batch_number, actor)
        return payment

    async def record_transport_failure(
        self, payment_id: UUID, failure: RetryableTransportFailure, actor: Actor
    ) -> PayrollPayment:
        """Mark a processing payment failed after a provider call raised."""
        actor.require(SETTLEMENT_ROLES, "settle payments")
        payment = await self._get(PayrollPayment, payment_id)
        reason = str(failure)
        logger.warning("Provider error on payment %s: %s", payment.payment_reference, reason)
        await self._change_payment(
            payment,
            lambda: payment.mark_as_failed(reason, self.clock.now(), failure.provider_response),
            actor,
            notes=reason,
            provider=failure.provider,
        )
        if payment.batch_number and payment.batch_number.startswith("BANK-"):
            await self._refresh_bank_batch(payment.batch_number, actor)
        return payment

    async def retry_payment(self, payment_id: UUID, actor: Actor) -> PayrollPayment:
        """Send a failed payment again; refused once max_payment_retries is reached."""
        actor.require(SETTLEMENT_ROLES, "retry payments")
        payment = await self._get(PayrollPayment, payment_id)
        return await self._change_payment(
            payment,
            lambda: payment.start_retry(self.clock.now(), self.settings.max_payment_retries),
            actor,
            notes="retry",
        )

    async def dispatch_ewallet_payments(
        self, payroll_period_id: UUID, actor: Actor
    ) -> list[PayrollPayment]:
        """Hand pending e-wallet payments to their providers."""
        actor.require(DISBURSEMENT_ROLES, "dispatch e-wallet payments")
        payments = await self.payments_for(
            payroll_period_id, method_type="ewallet", status=PaymentStatus.PENDING
        )
        now = self.clock.now()
        for payment in payments:
            await self._change_payment(payment, lambda p=payment: p.mark_as_processing(now), actor)
        return payments

    # ----- Bank batches -----

    async def create_bank_batches(
        self, payroll_period_id: UUID, actor: Actor
    ) -> list[BankFileBatch]:
        """Group unbatched pending bank payments into one batch per bank channel."""
        actor.require(DISBURSEMENT_ROLES, "create bank batches")
        period = await self._get(PayrollPeriod, payroll_period_id)
        payments = await self.payments_for(
            payroll_period_id, method_type="bank", status=PaymentStatus.PENDING, unbatched=True
        )
        by_method: dict[UUID, list[PayrollPayment]] = {}
        for payment in payments:
            by_method.setdefault(payment.payment_method_id, []).append(payment)

        batches: list[BankFileBatch] = []
        for method_id, group in by_method.items():
            method = await self._get(PaymentMethod, method_id)
            prefix = f"BANK-{period.period_number}-{method.bank_code}"
            batch_number = f"{prefix}-{await self._next_sequence(BankFileBatch, prefix):02d}"
            batch = BankFileBatch(
                payroll_period_id=payroll_period_id,
                payment_method_id=method_id,
                batch_number=batch_number,
                batch_name=f"{method.bank_name} payroll {period.period_name}",
                payment_date=period.payment_date,
                bank_code=method.bank_code,
                bank_name=method.bank_name,
                transfer_type=method.transfer_type,
                file_format=method.file_format or "csv",
                total_employees=len(group),
                total_amount=sum_money(p.final_net_pay for p in group),
                total_fees=sum_money(p.transaction_fee for p in group),
                generated_by=actor.user_id,
            )
            self.session.add(batch)
            for payment in group:
                payment.batch_number = batch_number
            self.audit.record(
                batch,
                "created",
                actor,
                new_values={
                    "batch_number": batch_number,
                    "total_employees": batch.total_employees,
                    "total_amount": batch.total_amount,
                },
            )
            batches.append(batch)
            await self.session.flush()
            logger.info(
                "Bank batch %s: %d payment(s), %s",
                batch_number,
                batch.total_employees,
                batch.total_amount,
            )
        return batches

    async def generate_bank_file(
        self, bank_file_batch_id: UUID, actor: Actor, vault: AccountVault
    ) -> bytes:
        """Render the batch file, hash it, and validate it.

        A valid file moves the batch to `ready`; an invalid one leaves it in
        `draft` with `validation_errors` set.
        """
        actor.require(DISBURSEMENT_ROLES, "generate bank files")
        batch = await self._get(BankFileBatch, bank_file_batch_id)
        if batch.status != BankBatchStatus.DRAFT:
            raise StateConflict(f"Bank batch {batch.batch_number} is already {batch.status}")
        method = await self._get(PaymentMethod, batch.payment_method_id)
        rows = await self._bank_rows(batch, vault)

        content = bank_file.render(rows, batch.file_format, method.file_template, batch.batch_number)
        now = self.clock.now()
        batch.file_name = f"{batch.batch_number}.{batch.file_format}"
        batch.file_size = len(content)
        batch.file_hash = bank_file.file_hash(content)

        errors = bank_file.validate_rows(rows, batch.total_employees, batch.total_amount)
        batch.is_validated = not errors
        batch.validation_errors = errors or None
        batch.validated_at = now
        if errors:
            logger.warning(
                "Bank batch %s failed validation: %s", batch.batch_number, "; ".join(errors)
            )
        else:
            batch.move_to(BankBatchStatus.READY)
        self.audit.record(
            batch,
            "file_generated",
            actor,
            new_values={
                "file_name": batch.file_name,
                "file_hash": batch.file_hash,
                "file_size": batch.file_size,
                "is_validated": batch.is_validated,
                "status": batch.status,
            },
            metadata={"validation_errors": errors} if errors else None,
        )
        self._emit(
            BankFileGenerated,
            actor,
            batch_id=batch.bank_file_batch_id,
            batch_number=batch.batch_number,
            file_name=batch.file_name,
            file_hash=batch.file_hash,
            total_amount=money(batch.total_amount),
        )
        return content

    async def _bank_rows(
        self, batch: BankFileBatch, vault: AccountVault
    ) -> list[bank_file.BankFileRow]:
        result = await self.session.execute(
            select(PayrollPayment, Employee, EmployeePayrollInfo)
            .join(Employee, Employee.employee_id == PayrollPayment.employee_id)
            .outerjoin(
                EmployeePayrollCalculation,
                EmployeePayrollCalculation.calculation_id == PayrollPayment.calculation_id,
            )
            .outerjoin(
                EmployeePayrollInfo,
                EmployeePayrollInfo.employee_payroll_info_id
                == EmployeePayrollCalculation.employee_payroll_info_id,
            )
            .where(
                PayrollPayment.batch_number == batch.batch_number,
                PayrollPayment.deleted_at.is_(None),
            )
            .order_by(Employee.employee_number)
        )
        rows = []
        for payment, employee, profile in result.all():
            account = (
                vault.reveal(payment.bank_account_token) if payment.bank_account_token else ""
            )
            name = (profile.bank_account_name if profile is not None else None) or employee.full_name
            rows.append(
                bank_file.BankFileRow(
                    account_number=account,
                    account_name=name,
                    amount=money(payment.final_net_pay),
                    reference=payment.payment_reference or str(payment.payment_id),
                    employee_number=employee.employee_number,
                    bank_code=batch.bank_code,
                    transfer_type=batch.transfer_type,
                    payment_date=batch.payment_date,
                )
            )
        return rows

    async def submit_bank_batch(self, bank_file_batch_id: UUID, actor: Actor) -> BankFileBatch:
        actor.require(DISBURSEMENT_ROLES, "submit bank batches")
        batch = await self._get(BankFileBatch, bank_file_batch_id)
        if not batch.can_submit():
            raise StateConflict(
                f"Bank batch {batch.batch_number} cannot be submitted "
                f"(status={batch.status}, validated={batch.is_validated})"
            )
        before = batch.status
        batch.move_to(BankBatchStatus.SUBMITTED)
        batch.submitted_at = self.clock.now()
        batch.submitted_by = actor.user_id
        self.audit.record_status_change(batch, before, actor)
        for payment in await self._batch_payments(batch.batch_number):
            if payment.status == PaymentStatus.PENDING:
                await self._change_payment(
                    payment, lambda p=payment: p.mark_as_processing(self.clock.now()), actor
                )
        return batch

    async def acknowledge_bank_batch(
        self,
        bank_file_batch_id: UUID,
        actor: Actor,
        confirmation_number: str | None = None,
        bank_response: str | None = None,
    ) -> BankFileBatch:
        """The bank accepted the file and is processing it."""
        actor.require(SETTLEMENT_ROLES, "acknowledge bank batches")
        batch = await self._get(BankFileBatch, bank_file_batch_id)
        before = batch.status
        batch.move_to(BankBatchStatus.PROCESSING)
        batch.bank_confirmation_number = confirmation_number
        batch.bank_response = bank_response
        self.audit.record_status_change(batch, before, actor)
        return batch

    async def _refresh_bank_batch(self, batch_number: str, actor: Actor) -> None:
        result = await self.session.execute(
            select(BankFileBatch).where(BankFileBatch.batch_number == batch_number)
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            return
        payments = await self._batch_payments(batch_number)
        batch.successful_count = sum(1 for p in payments if p.status == PaymentStatus.PAID)
        batch.failed_count = sum(1 for p in payments if p.status == PaymentStatus.FAILED)
        if batch.status != BankBatchStatus.PROCESSING:
            return
        if any(p.status not in _BANK_FINISHED for p in payments):
            return
        if batch.failed_count == 0:
            outcome = BankBatchStatus.COMPLETED
        elif batch.successful_count == 0:
            outcome = BankBatchStatus.FAILED
        else:
            outcome = BankBatchStatus.PARTIALLY_COMPLETED
        before = batch.status
        batch.move_to(outcome)
        batch.completed_at = self.clock.now()
        batch.settlement_date = self.clock.today()
        self.audit.record_status_change(
            batch, before, actor, success_rate=batch.success_rate()
        )
        logger.info(
            "Bank batch %s %s (%s%% success)", batch_number, outcome.value, batch.success_rate()
        )

    # ----- Cash batches -----

    async def create_cash_batch(
        self,
        payroll_period_id: UUID,
        actor: Actor,
        distribution_date: date | None = None,
        distribution_location: str | None = None,
    ) -> CashDistributionBatch:
        """Prepare numbered envelopes for every unbatched pending cash payment."""
        actor.require(DISBURSEMENT_ROLES, "prepare cash distributions")
        period = await self._get(PayrollPeriod, payroll_period_id)
        payments = await self.payments_for(
            payroll_period_id, method_type="cash", status=PaymentStatus.PENDING, unbatched=True
        )
        if not payments:
            raise StateConflict(f"Period {period.period_number} has no unbatched cash payments")

        prefix = f"CASH-{period.period_number}"
        batch_number = f"{prefix}-{await self._next_sequence(CashDistributionBatch, prefix):02d}"
        distribution_date = distribution_date or period.payment_date
        breakdowns = []
        for index, payment in enumerate(payments, start=1):
            payment.batch_number = batch_number
            payment.envelope_number = f"ENV-{index:04d}"
            payment.denomination_breakdown = denomination_breakdown(payment.final_net_pay)
            breakdowns.append(payment.denomination_breakdown)

        total = sum_money(p.final_net_pay for p in payments)
        batch = CashDistributionBatch(
            payroll_period_id=payroll_period_id,
            batch_number=batch_number,
            distribution_date=distribution_date,
            distribution_location=distribution_location,
            total_cash_amount=total,
            total_employees=len(payments),
            denomination_breakdown=merge_breakdowns(breakdowns),
            withdrawal_amount=total,
            envelopes_prepared=len(payments),
            unclaimed_deadline=distribution_date
            + timedelta(days=self.settings.unclaimed_deadline_days),
            prepared_by=actor.user_id,
        )
        self.session.add(batch)
        self.audit.record(
            batch,
            "created",
            actor,
            new_values={
                "batch_number": batch_number,
                "total_cash_amount": total,
                "envelopes_prepared": len(payments),
                "denomination_breakdown": batch.denomination_breakdown,
            },
        )
        await self.session.flush()
        logger.info("Cash batch %s: %d envelope(s), %s", batch_number, len(payments), total)
        return batch

    async def record_cash_count(
        self, cash_distribution_batch_id: UUID, actor: Actor, notes: str | None = None
    ) -> CashDistributionBatch:
        return await self._verify_cash(cash_distribution_batch_id, actor, "counted_by", notes)

    async def witness_cash_count(
        self, cash_distribution_batch_id: UUID, actor: Actor, notes: str | None = None
    ) -> CashDistributionBatch:
        return await self._verify_cash(cash_distribution_batch_id, actor, "witnessed_by", notes)

    async def _verify_cash(
        self,
        cash_distribution_batch_id: UUID,
        actor: Actor,
        slot: str,
        notes: str | None,
    ) -> CashDistributionBatch:
        """Dual control: two different people count and witness the cash."""
        if actor.is_system or actor.user_id is None:
            raise ValidationFailure("Cash must be counted and witnessed by named people", slot)
        batch = await self._get(CashDistributionBatch, cash_distribution_batch_id)
        if batch.status != CashBatchStatus.PREPARING:
            raise StateConflict(f"Cash batch {batch.batch_number} is already {batch.status}")
        if getattr(batch, slot) is not None:
            raise StateConflict(f"Cash batch {batch.batch_number} already has {slot} recorded")
        other = "witnessed_by" if slot == "counted_by" else "counted_by"
        if getattr(batch, other) == actor.user_id:
            raise ValidationFailure("The counter and the witness must be different people", slot)

        setattr(batch, slot, actor.user_id)
        if notes:
            batch.verification_notes = notes
        self.audit.record(batch, slot.removesuffix("_by"), actor, new_values={slot: actor.user_id})
        if batch.is_verified:
            before = batch.status
            batch.verification_at = self.clock.now()
            batch.move_to(CashBatchStatus.READY)
            self.audit.record_status_change(batch, before, actor)
        return batch

    async def start_distribution(
        self, cash_distribution_batch_id: UUID, actor: Actor
    ) -> CashDistributionBatch:
        actor.require(DISBURSEMENT_ROLES, "start cash distribution")
        batch = await self._get(CashDistributionBatch, cash_distribution_batch_id)
        if not batch.can_start_distribution():
            raise StateConflict(
                f"Cash batch {batch.batch_number} needs both a counter and a witness "
                "and must be ready"
            )
        before = batch.status
        batch.move_to(CashBatchStatus.DISTRIBUTING)
        batch.distribution_started_at = self.clock.now()
        batch.withdrawal_date = batch.withdrawal_date or self.clock.today()
        self.audit.record_status_change(batch, before, actor)
        for payment in await self._batch_payments(batch.batch_number):
            if payment.status == PaymentStatus.PENDING:
                await self._change_payment(
                    payment, lambda p=payment: p.mark_as_processing(self.clock.now()), actor
                )
        return batch

    async def release_envelope(self, payment_id: UUID, actor: Actor) -> PayrollPayment:
        """Hand an envelope to the employee."""
        actor.require(DISBURSEMENT_ROLES, "release cash envelopes")
        payment = await self._get(PayrollPayment, payment_id)
        batch = await self._cash_batch_of(payment)
        if batch.status != CashBatchStatus.DISTRIBUTING:
            raise StateConflict(f"Cash batch {batch.batch_number} is not distributing")
        now = self.clock.now()
        await self._change_payment(
            payment,
            lambda: payment.mark_as_paid(now, claimed_at=now, released_by=actor.user_id),
            actor,
            envelope_number=payment.envelope_number,
        )
        batch.envelopes_distributed += 1
        batch.amount_distributed = money(batch.amount_distributed + payment.final_net_pay)
        return payment

    async def close_distribution(
        self, cash_distribution_batch_id: UUID, actor: Actor
    ) -> CashDistributionBatch:
        """End distribution; envelopes not released become unclaimed."""
        actor.require(DISBURSEMENT_ROLES, "close cash distribution")
        batch = await self._get(CashDistributionBatch, cash_distribution_batch_id)
        now = self.clock.now()
        unclaimed = ZERO
        count = 0
        for payment in await self._batch_payments(batch.batch_number):
            if payment.status == PaymentStatus.PROCESSING:
                await self._change_payment(
                    payment, lambda p=payment: p.mark_as_unclaimed(now), actor
                )
                unclaimed += money(payment.final_net_pay)
                count += 1
        batch.envelopes_unclaimed = count
        batch.amount_unclaimed = money(unclaimed)
        before = batch.status
        batch.move_to(
            CashBatchStatus.PARTIALLY_COMPLETED if count else CashBatchStatus.COMPLETED
        )
        batch.distribution_completed_at = now
        self.audit.record_status_change(
            batch, before, actor, envelopes_unclaimed=count, amount_unclaimed=batch.amount_unclaimed
        )
        if count:
            logger.warning(
                "Cash batch %s closed with %d unclaimed envelope(s) totalling %s",
                batch.batch_number,
                count,
                batch.amount_unclaimed,
            )
        return batch

    async def claim_late(self, payment_id: UUID, actor: Actor) -> PayrollPayment:
        """Release an unclaimed envelope before the unclaimed deadline."""
        actor.require(DISBURSEMENT_ROLES, "release cash envelopes")
        payment = await self._get(PayrollPayment, payment_id)
        if payment.status != PaymentStatus.UNCLAIMED:
            raise StateConflict(
                f"Payment {payment.payment_reference} is {payment.status}, not unclaimed"
            )
        batch = await self._cash_batch_of(payment)
        if batch.status not in (CashBatchStatus.COMPLETED, CashBatchStatus.PARTIALLY_COMPLETED):
            raise StateConflict(
                f"Cash batch {batch.batch_number} is {batch.status}; close distribution first"
            )
        if batch.redeposit_reference is not None:
            raise StateConflict(f"Cash batch {batch.batch_number} was already redeposited")
        if batch.is_unclaimed_deadline_passed(self.clock.today()):
            raise StateConflict(
                f"Unclaimed deadline {batch.unclaimed_deadline} has passed; redeposit instead"
            )
        now = self.clock.now()
        await self._change_payment(
            payment,
            lambda: payment.mark_as_paid(now, claimed_at=now, released_by=actor.user_id),
            actor,
            envelope_number=payment.envelope_number,
        )
        batch.envelopes_unclaimed -= 1
        batch.envelopes_distributed += 1
        batch.amount_unclaimed = money(batch.amount_unclaimed - payment.final_net_pay)
        batch.amount_distributed = money(batch.amount_distributed + payment.final_net_pay)
        return payment

    async def flag_unclaimed_for_redeposit(self, actor: Actor) -> list[CashDistributionBatch]:
        """Cash batches past their unclaimed deadline that still hold envelopes."""
        actor.require(SETTLEMENT_ROLES, "review unclaimed cash")
        await self.session.flush()
        today = self.clock.today()
        result = await self.session.execute(
            select(CashDistributionBatch).where(
                CashDistributionBatch.status == CashBatchStatus.PARTIALLY_COMPLETED.value,
                CashDistributionBatch.envelopes_unclaimed > 0,
                CashDistributionBatch.redeposit_reference.is_(None),
                CashDistributionBatch.deleted_at.is_(None),
            )
        )
        due = [b for b in result.scalars().all() if b.is_unclaimed_deadline_passed(today)]
        for batch in due:
            logger.warning(
                "Cash batch %s has %s unclaimed past %s; redeposit required",
                batch.batch_number,
                batch.amount_unclaimed,
                batch.unclaimed_deadline,
            )
        return due

    async def redeposit_unclaimed(
        self,
        cash_distribution_batch_id: UUID,
        actor: Actor,
        redeposit_date: date | None = None,
    ) -> CashDistributionBatch:
        actor.require(DISBURSEMENT_ROLES, "redeposit unclaimed cash")
        batch = await self._get(CashDistributionBatch, cash_distribution_batch_id)
        if not batch.has_unclaimed:
            raise StateConflict(f"Cash batch {batch.batch_number} has no unclaimed envelopes")
        if batch.redeposit_reference is not None:
            raise StateConflict(f"Cash batch {batch.batch_number} was already redeposited")
        redeposit_date = redeposit_date or self.clock.today()
        batch.redeposit_date = redeposit_date
        batch.redeposit_reference = f"REDEP-{batch.batch_number}-{redeposit_date:%Y%m%d}"
        batch.unclaimed_disposition = "redeposited"
        self.audit.record(
            batch,
            "redeposited",
            actor,
            new_values={
                "redeposit_reference": batch.redeposit_reference,
                "amount_unclaimed": batch.amount_unclaimed,
            },
        )
        logger.info("Cash batch %s redeposited as %s", batch.batch_number, batch.redeposit_reference)
        return batch

    async def reconcile_cash_batch(
        self, cash_distribution_batch_id: UUID, actor: Actor
    ) -> CashDistributionBatch:
        actor.require(DISBURSEMENT_ROLES, "reconcile cash batches")
        batch = await self._get(CashDistributionBatch, cash_distribution_batch_id)
        if not batch.can_reconcile():
            raise StateConflict(
                f"Cash batch {batch.batch_number} cannot be reconciled; "
                "unclaimed envelopes must be redeposited first"
            )
        accounted = money(batch.amount_distributed + batch.amount_unclaimed)
        if accounted != money(batch.total_cash_amount):
            logger.critical(
                "Cash batch %s does not balance: %s accounted of %s",
                batch.batch_number,
                accounted,
                batch.total_cash_amount,
            )
            raise StateConflict(
                f"Cash batch {batch.batch_number} does not balance: "
                f"{accounted} accounted of {batch.total_cash_amount}"
            )
        before = batch.status
        batch.move_to(CashBatchStatus.RECONCILED)
        self.audit.record_status_change(batch, before, actor)
        return batch

    # ----- Helpers -----

    async def _batch_payments(self, batch_number: str) -> list[PayrollPayment]:
        result = await self.session.execute(
            select(PayrollPayment)
            .where(
                PayrollPayment.batch_number == batch_number,
                PayrollPayment.deleted_at.is_(None),
            )
            .order_by(PayrollPayment.envelope_number, PayrollPayment.payment_reference)
        )
        return list(result.scalars().all())

    async def _cash_batch_of(self, payment: PayrollPayment) -> CashDistributionBatch:
        if not payment.batch_number or not payment.envelope_number:
            raise StateConflict(f"Payment {payment.payment_reference} is not in a cash batch")
        result = await self.session.execute(
            select(CashDistributionBatch).where(
                CashDistributionBatch.batch_number == payment.batch_number
            )
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            raise StateConflict(f"Cash batch {payment.batch_number} not found")
        return batch

    async def _next_sequence(self, model: type, prefix: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(model)
            .where(model.batch_number.like(f"{prefix}-%"))
        )
        return int(result.scalar_one()) + 1
