"""ORM models. Importing this package registers every table on Base.metadata."""

from peso_payroll.models.audit import (
    AuditEntityType,
    PaymentAuditLog,
    PayrollApprovalHistory,
    PayrollCalculationLog,
)
from peso_payroll.models.base import Base
from peso_payroll.models.catalog import EmployeeSalaryComponent, SalaryComponent
from peso_payroll.models.employee import (
    Employee,
    EmployeeAllowance,
    EmployeeDeduction,
    EmployeePayrollInfo,
)
from peso_payroll.models.loans import EmployeeLoan, LoanDeduction
from peso_payroll.models.payments import (
    BankFileBatch,
    CashDistributionBatch,
    PaymentMethod,
    PayrollPayment,
    Payslip,
)
from peso_payroll.models.payroll import (
    EmployeePayrollCalculation,
    PayrollAdjustment,
    PayrollException,
    PayrollPeriod,
)

__all__ = [
    "AuditEntityType",
    "BankFileBatch",
    "Base",
    "CashDistributionBatch",
    "Employee",
    "EmployeeAllowance",
    "EmployeeDeduction",
    "EmployeeLoan",
    "EmployeePayrollCalculation",
    "EmployeePayrollInfo",
    "EmployeeSalaryComponent",
    "LoanDeduction",
    "PaymentAuditLog",
    "PaymentMethod",
    "PayrollAdjustment",
    "PayrollApprovalHistory",
    "PayrollCalculationLog",
    "PayrollException",
    "PayrollPayment",
    "PayrollPeriod",
    "Payslip",
    "SalaryComponent",
]
