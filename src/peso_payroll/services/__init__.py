"""Payroll ledger services.

Service modules are imported by their full path; this package only exposes
the status enums and state machines, which models also depend on.
"""

from peso_payroll.services.state_machine import (
    AdjustmentStateMachine,
    AdjustmentStatus,
    BankBatchStateMachine,
    BankBatchStatus,
    CalculationStateMachine,
    CalculationStatus,
    CashBatchStateMachine,
    CashBatchStatus,
    ExceptionStatus,
    LoanDeductionStatus,
    LoanStatus,
    PaymentStateMachine,
    PaymentStatus,
    PayslipStatus,
    PeriodStateMachine,
    PeriodStatus,
)

__all__ = [
    "AdjustmentStateMachine",
    "AdjustmentStatus",
    "BankBatchStateMachine",
    "BankBatchStatus",
    "CalculationStateMachine",
    "CalculationStatus",
    "CashBatchStateMachine",
    "CashBatchStatus",
    "ExceptionStatus",
    "LoanDeductionStatus",
    "LoanStatus",
    "PaymentStateMachine",
    "PaymentStatus",
    "PayslipStatus",
    "PeriodStateMachine",
    "PeriodStatus",
]
