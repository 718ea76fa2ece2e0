"""Domain events for the payroll ledger."""

from peso_payroll.events.emitter import EventEmitter, RecordingHandler
from peso_payroll.events.types import (
    AdjustmentApplied,
    BankFileGenerated,
    DomainEvent,
    EmployeePayrollCalculated,
    EventCategory,
    EventMetadata,
    LoanCompleted,
    LoanDefaulted,
    PaymentStatusChanged,
    PayrollCalculationCompleted,
    PayrollCalculationFailed,
    PayrollCalculationStarted,
    PayrollPeriodCreated,
    PayrollPeriodTransitioned,
    PayslipGenerated,
)

__all__ = [
    "AdjustmentApplied",
    "BankFileGenerated",
    "DomainEvent",
    "EmployeePayrollCalculated",
    "EventCategory",
    "EventEmitter",
    "EventMetadata",
    "LoanCompleted",
    "LoanDefaulted",
    "PaymentStatusChanged",
    "PayrollCalculationCompleted",
    "PayrollCalculationFailed",
    "PayrollCalculationStarted",
    "PayrollPeriodCreated",
    "PayrollPeriodTransitioned",
    "PayslipGenerated",
    "RecordingHandler",
]
