"""Validated contracts exchanged with collaborating subsystems.

Timekeeping and leave send summaries in; disbursement channels send
settlement confirmations back.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

OVERTIME_CATEGORIES = ("regular", "rest_day", "holiday", "double", "triple")


class AttendanceSummary(BaseModel):
    """Per employee-period attendance from timekeeping."""

    model_config = ConfigDict(frozen=True)

    employee_id: UUID
    present_days: Decimal = Field(default=Decimal("0"), ge=0)
    absent_days: Decimal = Field(default=Decimal("0"), ge=0)
    late_hours: Decimal = Field(default=Decimal("0"), ge=0)
    undertime_hours: Decimal = Field(default=Decimal("0"), ge=0)
    overtime_hours_by_category: dict[str, Decimal] = Field(default_factory=dict)
    night_differential_hours: Decimal = Field(default=Decimal("0"), ge=0)

    @field_validator("overtime_hours_by_category")
    @classmethod
    def check_overtime_categories(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        unknown = set(v) - set(OVERTIME_CATEGORIES)
        if unknown:
            raise ValueError(f"Unknown overtime categories: {sorted(unknown)}")
        for category, hours in v.items():
            if hours < 0:
                raise ValueError(f"Overtime hours for '{category}' cannot be negative")
        return v

    def overtime_hours(self, category: str) -> Decimal:
        return self.overtime_hours_by_category.get(category, Decimal("0"))


class LeaveSummary(BaseModel):
    """Per employee-period leave usage from the leave subsystem."""

    model_config = ConfigDict(frozen=True)

    employee_id: UUID
    paid_leave_days: Decimal = Field(default=Decimal("0"), ge=0)
    unpaid_leave_days: Decimal = Field(default=Decimal("0"), ge=0)


class SettlementConfirmation(BaseModel):
    """Result reported back by a bank, e-wallet or cash-handling workflow."""

    model_config = ConfigDict(frozen=True)

    payment_id: UUID
    status: Literal["paid", "failed", "unclaimed"]
    confirmation_code: str | None = None
    failure_reason: str | None = None
    provider_response: dict[str, Any] = Field(default_factory=dict)

    @field_validator("confirmation_code")
    @classmethod
    def strip_code(cls, v: str | None) -> str | None:
        return v.strip() if v else v
