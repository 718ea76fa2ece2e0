"""Salary component catalog and per-employee component assignments."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from peso_payroll.models.base import Base, JSONType, SoftDeleteMixin, TimestampMixin


class SalaryComponent(Base, TimestampMixin, SoftDeleteMixin):
    """Named pay or deduction component and how it is calculated."""

    __tablename__ = "salary_component"

    salary_component_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    component_type: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    calculation_method: Mapped[str] = mapped_column(String, nullable=False)

    default_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    percentage: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    reference_component_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    ot_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    # [{"min": "0", "max": "10000", "amount": "100"}, ...]
    lookup_table: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSONType, nullable=True
    )

    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_deminimis: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deminimis_limit_monthly: Mapped[Decimal | None] = mapped_column(nullable=True)
    deminimis_limit_annual: Mapped[Decimal | None] = mapped_column(nullable=True)
    affects_sss: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    affects_philhealth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    affects_pagibig: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    is_system_component: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("code", name="salary_component_code_unique"),
        CheckConstraint(
            "component_type IN ('earning', 'deduction', 'benefit', 'tax', "
            "'contribution', 'loan', 'allowance')",
            name="salary_component_type_check",
        ),
        CheckConstraint(
            "category IN ('regular', 'overtime', 'holiday', 'leave', 'allowance', "
            "'bonus', 'government', 'loan', 'adjustment', 'other')",
            name="salary_component_category_check",
        ),
        CheckConstraint(
            "calculation_method IN ('fixed_amount', 'percentage_of_basic', "
            "'percentage_of_component', 'ot_multiplier', 'lookup_table')",
            name="salary_component_method_check",
        ),
    )

    @property
    def is_earning(self) -> bool:
        return self.component_type in ("earning", "allowance", "benefit")


class EmployeeSalaryComponent(Base, TimestampMixin, SoftDeleteMixin):
    """Effective-dated assignment of a component to an employee."""

    __tablename__ = "employee_salary_component"

    employee_salary_component_id: Mapped[UUID] = mapped_column(
        primary_key=True, default=uuid4
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"), nullable=False
    )
    salary_component_id: Mapped[UUID] = mapped_column(
        ForeignKey("salary_component.salary_component_id", ondelete="RESTRICT"),
        nullable=False,
    )
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    percentage: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    units: Mapped[Decimal | None] = mapped_column(Numeric(9, 2), nullable=True)
    frequency: Mapped[str] = mapped_column(String, nullable=False, default="per_payroll")
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "frequency IN ('per_payroll', 'monthly')",
            name="employee_salary_component_frequency_check",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date >= effective_date",
            name="employee_salary_component_dates_check",
        ),
    )

    def is_active_between(self, start: date, end: date) -> bool:
        """Check if the assignment overlaps the window [start, end]."""
        if not self.is_active or self.deleted_at is not None:
            return False
        if self.effective_date > end:
            return False
        return self.end_date is None or self.end_date >= start
