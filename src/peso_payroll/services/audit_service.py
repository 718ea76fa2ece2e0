"""Append-only audit trail writer.

Every mutating service writes through here so retention and actor capture
stay uniform. Rows are never updated or deleted (see models.audit).
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peso_payroll.actors import Actor
from peso_payroll.clock import Clock, SystemClock
from peso_payroll.config import Settings, get_settings
from peso_payroll.errors import EntityNotFoundError, ValidationFailure
from peso_payroll.models import (
    AuditEntityType,
    BankFileBatch,
    CashDistributionBatch,
    EmployeeLoan,
    EmployeePayrollCalculation,
    LoanDeduction,
    PaymentAuditLog,
    PayrollAdjustment,
    PayrollApprovalHistory,
    PayrollCalculationLog,
    PayrollException,
    PayrollPayment,
    PayrollPeriod,
    Payslip,
)
from peso_payroll.models.audit import retention_date
from peso_payroll.money import money

logger = logging.getLogger(__name__)

EntityLoader = Callable[[AsyncSession, UUID], Awaitable[Any]]

# Model and primary key column per entity type
_ENTITY_MODELS: dict[AuditEntityType, tuple[type, str]] = {
    AuditEntityType.PAYROLL_PERIOD: (PayrollPeriod, "payroll_period_id"),
    AuditEntityType.CALCULATION: (EmployeePayrollCalculation, "calculation_id"),
    AuditEntityType.ADJUSTMENT: (PayrollAdjustment, "adjustment_id"),
    AuditEntityType.EXCEPTION: (PayrollException, "exception_id"),
    AuditEntityType.PAYMENT: (PayrollPayment, "payment_id"),
    AuditEntityType.BANK_FILE_BATCH: (BankFileBatch, "bank_file_batch_id"),
    AuditEntityType.CASH_DISTRIBUTION_BATCH: (
        CashDistributionBatch,
        "cash_distribution_batch_id",
    ),
    AuditEntityType.PAYSLIP: (Payslip, "payslip_id"),
    AuditEntityType.LOAN: (EmployeeLoan, "loan_id"),
    AuditEntityType.LOAN_DEDUCTION: (LoanDeduction, "loan_deduction_id"),
}

# Approval step per (action, role) for the period approval chain
APPROVAL_STEPS = {
    ("submit", "payroll_officer"): "payroll_officer_submit",
    ("approve", "hr_manager"): "hr_manager_approve",
    ("reject", "hr_manager"): "hr_manager_reject",
    ("approve", "office_admin"): "office_admin_approve",
    ("reject", "office_admin"): "office_admin_reject",
    ("lock", None): "locked",
    ("unlock", None): "unlocked",
}


def entity_type_of(entity: Any) -> AuditEntityType:
    for entity_type, (model, _) in _ENTITY_MODELS.items():
        if isinstance(entity, model):
            return entity_type
    raise ValidationFailure(f"{type(entity).__name__} is not an auditable entity", "entity")


def entity_id_of(entity: Any) -> UUID:
    _, pk = _ENTITY_MODELS[entity_type_of(entity)]
    return getattr(entity, pk)


def jsonable(values: dict[str, Any] | None) -> dict[str, Any] | None:
    """Snapshot values for a JSON column; Decimals, UUIDs and dates as strings."""
    if values is None:
        return None
    out: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Decimal):
            out[key] = str(money(value))
        elif isinstance(value, (str, int, float, bool)) or value is None:
            out[key] = value
        elif isinstance(value, dict):
            out[key] = jsonable(value)
        elif isinstance(value, (list, tuple)):
            out[key] = [str(v) if not isinstance(v, (str, int, bool)) else v for v in value]
        else:
            out[key] = str(value)
    return out


def approval_step_for(action: str, actor: Actor) -> str:
    """Map an approval action to its history step.

    Superadmin acts in the slot of the most senior reviewer.
    """
    if action in ("lock", "unlock"):
        return APPROVAL_STEPS[(action, None)]
    role = actor.role.value
    if action == "submit":
        return APPROVAL_STEPS[("submit", "payroll_officer")]
    if role not in ("hr_manager", "office_admin"):
        role = "office_admin"
    return APPROVAL_STEPS[(action, role)]


class AuditService:
    """Writes PaymentAuditLog, PayrollApprovalHistory and PayrollCalculationLog rows."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock(self.settings.timezone)
        self._loaders: dict[AuditEntityType, EntityLoader] = {}

    def _retention(self):
        now = self.clock.now()
        return now, retention_date(now, self.settings.audit_retention_years)

    def record(
        self,
        entity: Any,
        action: str,
        actor: Actor,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        notes: str | None = None,
        actor_type: str | None = None,
        request_id: str | None = None,
    ) -> PaymentAuditLog:
        """Append one audit row for a mutation of `entity`."""
        now, retain = self._retention()
        row = PaymentAuditLog(
            entity_type=entity_type_of(entity).value,
            entity_id=entity_id_of(entity),
            action=action,
            actor_type=actor_type or actor.actor_type,
            actor_id=actor.user_id,
            actor_name=actor.name,
            old_values=jsonable(old_values),
            new_values=jsonable(new_values),
            metadata_json=jsonable(metadata),
            request_id=request_id,
            notes=notes,
            created_at=now,
            retention_until=retain,
        )
        self.session.add(row)
        return row

    def record_status_change(
        self,
        entity: Any,
        from_status: str,
        actor: Actor,
        notes: str | None = None,
        actor_type: str | None = None,
        **extra: Any,
    ) -> PaymentAuditLog:
        return self.record(
            entity,
            "status_change",
            actor,
            old_values={"status": _plain(from_status)},
            new_values={"status": _plain(entity.status), **extra},
            notes=notes,
            actor_type=actor_type,
        )

    def record_approval(
        self,
        period: PayrollPeriod,
        action: str,
        status_from: str,
        actor: Actor,
        comments: str | None = None,
        rejection_reason: str | None = None,
    ) -> PayrollApprovalHistory:
        """Append an approval-chain step with a snapshot of the period totals."""
        now, retain = self._retention()
        snapshot = period.totals_snapshot()
        if action in ("lock", "unlock"):
            snapshot["locked_at"] = period.locked_at.isoformat() if period.locked_at else None
        row = PayrollApprovalHistory(
            payroll_period_id=period.payroll_period_id,
            approval_step=approval_step_for(action, actor),
            action=action,
            status_from=_plain(status_from),
            status_to=_plain(period.status),
            user_id=actor.user_id,
            user_name=actor.name,
            user_role=actor.role.value,
            comments=comments,
            rejection_reason=rejection_reason,
            period_snapshot=snapshot,
            created_at=now,
            retention_until=retain,
        )
        self.session.add(row)
        return row

    def record_calculation_log(
        self,
        payroll_period_id: UUID,
        log_type: str,
        message: str,
        actor: Actor,
        severity: str = "info",
        employee_id: UUID | None = None,
        details: dict[str, Any] | None = None,
        employees_processed: int = 0,
        employees_success: int = 0,
        employees_failed: int = 0,
        exceptions_generated: int = 0,
        processing_time_seconds: Decimal | None = None,
    ) -> PayrollCalculationLog:
        now, retain = self._retention()
        row = PayrollCalculationLog(
            payroll_period_id=payroll_period_id,
            employee_id=employee_id,
            log_type=log_type,
            severity=severity,
            message=message,
            details=jsonable(details),
            employees_processed=employees_processed,
            employees_success=employees_success,
            employees_failed=employees_failed,
            exceptions_generated=exceptions_generated,
            processing_time_seconds=processing_time_seconds,
            actor_type=actor.actor_type,
            actor_id=actor.user_id,
            actor_name=actor.name,
            created_at=now,
            retention_until=retain,
        )
        self.session.add(row)
        if severity == "critical":
            logger.critical("Payroll period %s: %s", payroll_period_id, message)
        return row

    # ----- Polymorphic references -----

    def register_loader(self, entity_type: AuditEntityType, loader: EntityLoader) -> None:
        """Override how one entity type is resolved from an audit row."""
        self._loaders[entity_type] = loader

    async def load_entity(self, row: PaymentAuditLog) -> Any:
        """Resolve the entity an audit row points to."""
        entity_type = AuditEntityType(row.entity_type)
        loader = self._loaders.get(entity_type)
        if loader is not None:
            entity = await loader(self.session, row.entity_id)
        else:
            model, pk = _ENTITY_MODELS[entity_type]
            entity = await self.session.get(model, row.entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_type.value, row.entity_id)
        return entity

    async def history(self, entity: Any) -> list[PaymentAuditLog]:
        """Audit rows for one entity, oldest first."""
        await self.session.flush()
        result = await self.session.execute(
            select(PaymentAuditLog)
            .where(
                PaymentAuditLog.entity_type == entity_type_of(entity).value,
                PaymentAuditLog.entity_id == entity_id_of(entity),
            )
            .order_by(PaymentAuditLog.created_at)
        )
        return list(result.scalars().all())


def _plain(status: Any) -> Any:
    return getattr(status, "value", status)
