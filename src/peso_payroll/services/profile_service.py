"""Employee roster rows and effective-dated financial profiles."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from peso_payroll.actors import Actor, Role
from peso_payroll.errors import StateConflict, ValidationFailure
from peso_payroll.models import (
    Employee,
    EmployeeAllowance,
    EmployeeDeduction,
    EmployeePayrollInfo,
)
from peso_payroll.money import money
from peso_payroll.services.base import ServiceBase

logger = logging.getLogger(__name__)

PROFILE_ROLES = frozenset({Role.PAYROLL_OFFICER, Role.HR_MANAGER, Role.OFFICE_ADMIN})

SALARY_FIELDS = ("salary_type", "basic_salary", "daily_rate", "hourly_rate")

# Fields carried from the ended profile into its successor
_CARRIED_FIELDS = (
    "tax_status",
    "sss_number",
    "philhealth_number",
    "pagibig_number",
    "tin_number",
    "pagibig_employee_rate",
    "is_sss_voluntary",
    "payment_method",
    "bank_code",
    "bank_name",
    "bank_account_token",
    "bank_account_last4",
    "bank_account_name",
    "ewallet_provider",
    "ewallet_account_token",
    "ewallet_account_last4",
)


class ProfileService(ServiceBase):
    async def add_employee(
        self,
        employee_number: str,
        first_name: str,
        last_name: str,
        hire_date: date,
        actor: Actor,
        **fields: object,
    ) -> Employee:
        actor.require(PROFILE_ROLES, "register employees")
        employee = Employee(
            employee_number=employee_number,
            first_name=first_name,
            last_name=last_name,
            hire_date=hire_date,
            **fields,
        )
        self.session.add(employee)
        await self.session.flush()
        return employee

    async def get_employee(self, employee_id: UUID) -> Employee:
        return await self._get(Employee, employee_id)

    async def create_profile(
        self,
        employee_id: UUID,
        salary_type: str,
        effective_date: date,
        actor: Actor,
        **fields: object,
    ) -> EmployeePayrollInfo:
        """Build a profile with derived rates; rejects overlap with an open profile."""
        actor.require(PROFILE_ROLES, "maintain payroll profiles")
        await self.get_employee(employee_id)
        current = await self.current_profile(employee_id)
        if current is not None and current.end_date is None:
            raise StateConflict(
                "Employee already has an open-ended profile; use update_salary to change it"
            )
        profile = EmployeePayrollInfo.build(
            employee_id, salary_type, effective_date, settings=self.settings, **fields
        )
        self.session.add(profile)
        await self.session.flush()
        return profile

    async def current_profile(
        self, employee_id: UUID, as_of: date | None = None
    ) -> EmployeePayrollInfo | None:
        """The profile in force on `as_of` (today by default)."""
        as_of = as_of or self.clock.today()
        result = await self.session.execute(
            select(EmployeePayrollInfo)
            .where(
                EmployeePayrollInfo.employee_id == employee_id,
                EmployeePayrollInfo.deleted_at.is_(None),
                EmployeePayrollInfo.effective_date <= as_of,
            )
            .order_by(EmployeePayrollInfo.effective_date.desc())
        )
        for profile in result.scalars().all():
            if profile.is_active_on(as_of):
                return profile
        return None

    async def history(self, employee_id: UUID) -> list[EmployeePayrollInfo]:
        result = await self.session.execute(
            select(EmployeePayrollInfo)
            .where(
                EmployeePayrollInfo.employee_id == employee_id,
                EmployeePayrollInfo.deleted_at.is_(None),
            )
            .order_by(EmployeePayrollInfo.effective_date)
        )
        return list(result.scalars().all())

    async def update_salary(
        self,
        employee_id: UUID,
        effective_date: date,
        actor: Actor,
        salary_type: str | None = None,
        basic_salary: Decimal | None = None,
        daily_rate: Decimal | None = None,
        hourly_rate: Decimal | None = None,
    ) -> EmployeePayrollInfo:
        """End the current profile the day before `effective_date` and start a new one.

        Rates not given are derived again from the ones that are, so a
        monthly raise recomputes daily and hourly rates. Returns the current
        profile unchanged when nothing differs.
        """
        actor.require(PROFILE_ROLES, "change salaries")
        current = await self.current_profile(employee_id, effective_date)
        if current is None:
            raise StateConflict(f"Employee {employee_id} has no profile on {effective_date}")
        if effective_date <= current.effective_date:
            raise ValidationFailure(
                "A salary change must take effect after the current profile's effective date",
                "effective_date",
            )

        salary_type = salary_type or current.salary_type
        requested = {
            "salary_type": salary_type,
            "basic_salary": money(basic_salary) if basic_salary is not None else None,
            "daily_rate": money(daily_rate) if daily_rate is not None else None,
            "hourly_rate": money(hourly_rate) if hourly_rate is not None else None,
        }
        if all(
            value is None or value == getattr(current, key) for key, value in requested.items()
        ):
            return current
        if salary_type == current.salary_type and not any(
            requested[k] is not None for k in SALARY_FIELDS[1:]
        ):
            raise ValidationFailure("A salary change needs a new rate", "basic_salary")

        carried = {field: getattr(current, field) for field in _CARRIED_FIELDS}
        replacement = EmployeePayrollInfo.build(
            employee_id,
            salary_type,
            effective_date,
            basic_salary=requested["basic_salary"],
            daily_rate=requested["daily_rate"],
            hourly_rate=requested["hourly_rate"],
            settings=self.settings,
            **carried,
        )
        current.end_date = effective_date - timedelta(days=1)
        self.session.add(replacement)
        await self.session.flush()
        logger.info(
            "Salary for employee %s changed effective %s: %s %s -> %s %s",
            employee_id,
            effective_date,
            current.salary_type,
            current.basic_salary,
            replacement.salary_type,
            replacement.basic_salary,
        )
        return replacement

    async def add_allowance(
        self,
        employee_id: UUID,
        allowance_type: str,
        amount: Decimal,
        effective_date: date,
        actor: Actor,
        **fields: object,
    ) -> EmployeeAllowance:
        actor.require(PROFILE_ROLES, "maintain allowances")
        if money(amount) <= 0:
            raise ValidationFailure("Allowance amount must be positive", "amount")
        allowance = EmployeeAllowance(
            employee_id=employee_id,
            allowance_type=allowance_type,
            amount=money(amount),
            effective_date=effective_date,
            **fields,
        )
        self.session.add(allowance)
        await self.session.flush()
        return allowance

    async def add_deduction(
        self,
        employee_id: UUID,
        deduction_type: str,
        amount: Decimal,
        effective_date: date,
        actor: Actor,
        frequency: str = "per_payroll",
        **fields: object,
    ) -> EmployeeDeduction:
        actor.require(PROFILE_ROLES, "maintain deductions")
        if money(amount) <= 0:
            raise ValidationFailure("Deduction amount must be positive", "amount")
        if frequency not in ("per_payroll", "monthly", "one_time"):
            raise ValidationFailure(f"Unknown deduction frequency '{frequency}'", "frequency")
        deduction = EmployeeDeduction(
            employee_id=employee_id,
            deduction_type=deduction_type,
            amount=money(amount),
            effective_date=effective_date,
            frequency=frequency,
            **fields,
        )
        self.session.add(deduction)
        await self.session.flush()
        return deduction
