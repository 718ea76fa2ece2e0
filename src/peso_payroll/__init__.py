"""Philippine payroll calculation, adjustment and disbursement ledger."""

__version__ = "1.0.0"
