"""Bank transfer file rendering (CSV and XLSX) and validation."""

from __future__ import annotations

import csv
import hashlib
import io
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from openpyxl import Workbook

from peso_payroll.errors import ValidationFailure
from peso_payroll.money import money, sum_money

DEFAULT_COLUMNS: tuple[str, ...] = (
    "account_number",
    "account_name",
    "amount",
    "reference",
    "employee_number",
)

COLUMN_TITLES: dict[str, str] = {
    "account_number": "Account Number",
    "account_name": "Account Name",
    "amount": "Amount",
    "reference": "Reference",
    "employee_number": "Employee Number",
    "bank_code": "Bank Code",
    "transfer_type": "Transfer Type",
    "payment_date": "Payment Date",
}


@dataclass(frozen=True)
class BankFileRow:
    account_number: str
    account_name: str
    amount: Decimal
    reference: str
    employee_number: str
    bank_code: str
    transfer_type: str
    payment_date: date

    def value(self, column: str) -> Any:
        if column not in COLUMN_TITLES:
            raise ValidationFailure(f"Unknown bank file column '{column}'", "file_template")
        value = getattr(self, column)
        if isinstance(value, Decimal):
            return f"{money(value):.2f}"
        if isinstance(value, date):
            return value.isoformat()
        return value


def template_columns(template: dict[str, Any] | None) -> tuple[str, ...]:
    if template and template.get("columns"):
        return tuple(template["columns"])
    return DEFAULT_COLUMNS


def render_csv(rows: list[BankFileRow], template: dict[str, Any] | None = None) -> bytes:
    columns = template_columns(template)
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    if (template or {}).get("header", True):
        writer.writerow([COLUMN_TITLES[c] for c in columns])
    for row in rows:
        writer.writerow([row.value(c) for c in columns])
    return output.getvalue().encode("utf-8")


def render_xlsx(
    rows: list[BankFileRow],
    template: dict[str, Any] | None = None,
    sheet_title: str = "Payroll",
) -> bytes:
    columns = template_columns(template)
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title[:31]
    if (template or {}).get("header", True):
        ws.append([COLUMN_TITLES[c] for c in columns])
    for row in rows:
        ws.append([row.value(c) for c in columns])
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def render(
    rows: list[BankFileRow],
    file_format: str,
    template: dict[str, Any] | None = None,
    sheet_title: str = "Payroll",
) -> bytes:
    if file_format == "csv":
        return render_csv(rows, template)
    if file_format == "xlsx":
        return render_xlsx(rows, template, sheet_title)
    raise ValidationFailure(f"Unsupported bank file format '{file_format}'", "file_format")


def file_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def validate_rows(
    rows: list[BankFileRow], expected_count: int, expected_total: Decimal
) -> list[str]:
    """Problems that must be fixed before the file can be submitted."""
    errors: list[str] = []
    if not rows:
        errors.append("Batch has no payments")
    for row in rows:
        if not row.account_number:
            errors.append(f"{row.reference}: missing account number")
        if not row.account_name:
            errors.append(f"{row.reference}: missing account name")
        if money(row.amount) <= 0:
            errors.append(f"{row.reference}: amount must be positive")
    if len(rows) != expected_count:
        errors.append(f"Row count {len(rows)} != batch employees {expected_count}")
    total = sum_money(r.amount for r in rows)
    if total != money(expected_total):
        errors.append(f"File total {total} != batch total {money(expected_total)}")
    return errors
