"""Domain event types for payroll operations.

All events are immutable (frozen dataclasses), carry explicit payloads and
are traceable through their metadata.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    PERIOD = "period"
    CALCULATION = "calculation"
    ADJUSTMENT = "adjustment"
    DISBURSEMENT = "disbursement"
    LOAN = "loan"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links related events
    actor_id: UUID | None
    actor_type: str  # 'user', 'system', 'webhook'
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        timestamp: datetime,
        correlation_id: UUID | None = None,
        actor_id: UUID | None = None,
        actor_type: str = "system",
        source_service: str = "payroll",
    ) -> EventMetadata:
        """Create metadata with auto-generated ids."""
        return cls(
            event_id=uuid4(),
            timestamp=timestamp,
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return _serialize_dict(data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Period Events
# =============================================================================


@dataclass(frozen=True)
class PayrollPeriodCreated(DomainEvent):
    """A payroll period was opened."""

    payroll_period_id: UUID
    period_number: str
    period_start: date
    period_end: date
    payment_date: date

    @property
    def category(self) -> EventCategory:
        return EventCategory.PERIOD


@dataclass(frozen=True)
class PayrollPeriodTransitioned(DomainEvent):
    """A payroll period moved between statuses."""

    payroll_period_id: UUID
    from_status: str
    to_status: str
    reason: str | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.PERIOD


# =============================================================================
# Calculation Events
# =============================================================================


@dataclass(frozen=True)
class PayrollCalculationStarted(DomainEvent):
    payroll_period_id: UUID
    total_employees: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.CALCULATION


@dataclass(frozen=True)
class EmployeePayrollCalculated(DomainEvent):
    """One employee's calculation was persisted."""

    payroll_period_id: UUID
    employee_id: UUID
    calculation_id: UUID
    version: int
    calculation_status: str
    final_net_pay: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.CALCULATION


@dataclass(frozen=True)
class PayrollCalculationCompleted(DomainEvent):
    payroll_period_id: UUID
    employees_processed: int
    employees_failed: int
    exceptions_count: int
    cancelled: bool = False

    @property
    def category(self) -> EventCategory:
        return EventCategory.CALCULATION


@dataclass(frozen=True)
class PayrollCalculationFailed(DomainEvent):
    """A period-wide run aborted on a systemic failure."""

    payroll_period_id: UUID
    error: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CALCULATION


# =============================================================================
# Adjustment, Disbursement and Loan Events
# =============================================================================


@dataclass(frozen=True)
class AdjustmentApplied(DomainEvent):
    adjustment_id: UUID
    base_calculation_id: UUID
    new_calculation_id: UUID
    signed_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.ADJUSTMENT


@dataclass(frozen=True)
class PaymentStatusChanged(DomainEvent):
    payment_id: UUID
    from_status: str
    to_status: str
    retry_count: int = 0

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISBURSEMENT


@dataclass(frozen=True)
class BankFileGenerated(DomainEvent):
    batch_id: UUID
    batch_number: str
    file_name: str
    file_hash: str
    total_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISBURSEMENT


@dataclass(frozen=True)
class PayslipGenerated(DomainEvent):
    payslip_id: UUID
    payslip_number: str
    employee_id: UUID

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISBURSEMENT


@dataclass(frozen=True)
class LoanCompleted(DomainEvent):
    loan_id: UUID
    employee_id: UUID
    total_paid: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.LOAN


@dataclass(frozen=True)
class LoanDefaulted(DomainEvent):
    loan_id: UUID
    employee_id: UUID
    remaining_balance: Decimal
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.LOAN
