"""Signed payslips for settled payments."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import extract, select

from peso_payroll.actors import Actor, Role
from peso_payroll.errors import StateConflict, ValidationFailure
from peso_payroll.events import PayslipGenerated
from peso_payroll.models import (
    Employee,
    EmployeePayrollCalculation,
    EmployeePayrollInfo,
    PayrollPayment,
    PayrollPeriod,
    Payslip,
)
from peso_payroll.money import money, money_str, sum_money
from peso_payroll.services.base import ServiceBase
from peso_payroll.services.state_machine import PaymentStatus, PayslipStatus

logger = logging.getLogger(__name__)

PAYSLIP_ROLES = frozenset({Role.PAYROLL_OFFICER, Role.HR_MANAGER, Role.OFFICE_ADMIN, Role.SYSTEM})

EARNING_LINES: tuple[tuple[str, str], ...] = (
    ("basic_pay", "Basic Pay"),
    ("total_overtime_pay", "Overtime and Night Differential"),
    ("total_allowances", "Allowances"),
    ("total_bonuses", "Bonuses"),
)

DEDUCTION_LINES: tuple[tuple[str, str], ...] = (
    ("sss_deduction", "SSS"),
    ("philhealth_deduction", "PhilHealth"),
    ("pagibig_deduction", "Pag-IBIG"),
    ("tax_deduction", "Withholding Tax"),
    ("loan_deduction", "Loans"),
    ("advance_deduction", "Advances"),
    ("attendance_deduction", "Tardiness and Absences"),
    ("leave_deduction", "Unpaid Leave"),
    ("other_deductions", "Other Deductions"),
)


def _canonical(value: Any) -> Any:
    if isinstance(value, Decimal):
        return money_str(value)
    return value


def payslip_signature(payslip: Payslip, key: str) -> str:
    """HMAC-SHA256 over the canonical JSON of the signed fields."""
    payload = {field: _canonical(getattr(payslip, field)) for field in Payslip.SIGNED_FIELDS}
    message = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hmac.new(key.encode(), message.encode(), hashlib.sha256).hexdigest()


class PayslipService(ServiceBase):
    async def generate(self, payment_id: UUID, actor: Actor) -> Payslip:
        """Build and sign the payslip of a paid payment.

        Year-to-date figures add this payment to every earlier paid payment
        of the employee in the same calendar year.
        """
        actor.require(PAYSLIP_ROLES, "generate payslips")
        await self.session.flush()
        payment = await self._get(PayrollPayment, payment_id)
        if payment.status != PaymentStatus.PAID:
            raise StateConflict(
                f"Payment {payment.payment_reference} is {payment.status}; "
                "payslips are issued for paid payments only"
            )
        existing = await self.session.execute(
            select(Payslip).where(Payslip.payment_id == payment_id, Payslip.deleted_at.is_(None))
        )
        if existing.scalar_one_or_none() is not None:
            raise StateConflict(f"Payment {payment.payment_reference} already has a payslip")

        period = await self._get(PayrollPeriod, payment.payroll_period_id)
        employee = await self._get(Employee, payment.employee_id)
        calc = (
            await self.session.get(EmployeePayrollCalculation, payment.calculation_id)
            if payment.calculation_id
            else None
        )
        profile = (
            await self.session.get(EmployeePayrollInfo, calc.employee_payroll_info_id)
            if calc is not None and calc.employee_payroll_info_id
            else None
        )

        earnings = self._earnings(payment, calc)
        deductions = {
            label: money_str(getattr(payment, field))
            for field, label in DEDUCTION_LINES
            if money(getattr(payment, field))
        }
        ytd = await self._year_to_date(payment)

        payslip = Payslip(
            employee_id=payment.employee_id,
            payroll_period_id=payment.payroll_period_id,
            payment_id=payment.payment_id,
            payslip_number=f"PS-{period.period_number}-{employee.employee_number}",
            period_start=payment.period_start,
            period_end=payment.period_end,
            payment_date=payment.payment_date,
            employee_number=employee.employee_number,
            employee_name=employee.full_name,
            department=employee.department,
            position=employee.position,
            sss_number=profile.sss_number if profile else None,
            philhealth_number=profile.philhealth_number if profile else None,
            pagibig_number=profile.pagibig_number if profile else None,
            tin=profile.tin_number if profile else None,
            earnings_data=earnings,
            total_earnings=sum_money(Decimal(v) for v in earnings.values()),
            deductions_data=deductions,
            total_deductions=money(payment.total_deductions),
            net_pay=money(payment.final_net_pay),
            attendance_summary=self._attendance(calc),
            leave_summary=self._leave(calc),
            generated_by=actor.user_id,
            **ytd,
        )
        payslip.signature_hash = payslip_signature(payslip, self.settings.payslip_signing_key)
        payslip.qr_code_data = json.dumps(
            {
                "payslip_number": payslip.payslip_number,
                "employee_number": payslip.employee_number,
                "net_pay": money_str(payslip.net_pay),
                "payment_date": payslip.payment_date.isoformat(),
                "signature_hash": payslip.signature_hash,
            },
            sort_keys=True,
        )
        payslip.move_to(PayslipStatus.GENERATED)
        self.session.add(payslip)
        self.audit.record(
            payslip,
            "generated",
            actor,
            new_values={
                "payslip_number": payslip.payslip_number,
                "net_pay": payslip.net_pay,
                "signature_hash": payslip.signature_hash,
            },
        )
        await self.session.flush()
        self._emit(
            PayslipGenerated,
            actor,
            payslip_id=payslip.payslip_id,
            payslip_number=payslip.payslip_number,
            employee_id=payslip.employee_id,
        )
        logger.info("Generated payslip %s", payslip.payslip_number)
        return payslip

    async def generate_for_period(self, payroll_period_id: UUID, actor: Actor) -> list[Payslip]:
        """Payslips for every paid payment of the period that has none yet."""
        await self.session.flush()
        result = await self.session.execute(
            select(PayrollPayment)
            .where(
                PayrollPayment.payroll_period_id == payroll_period_id,
                PayrollPayment.status == PaymentStatus.PAID.value,
                PayrollPayment.deleted_at.is_(None),
                PayrollPayment.payment_id.not_in(
                    select(Payslip.payment_id).where(Payslip.deleted_at.is_(None))
                ),
            )
            .order_by(PayrollPayment.payment_reference)
        )
        return [await self.generate(p.payment_id, actor) for p in result.scalars().all()]

    async def get_payslip(self, payslip_id: UUID) -> Payslip:
        return await self._get(Payslip, payslip_id)

    async def verify(self, payslip_id: UUID) -> bool:
        """Recompute the signature; False means the stored payslip was altered."""
        payslip = await self.get_payslip(payslip_id)
        if not payslip.signature_hash:
            return False
        expected = payslip_signature(payslip, self.settings.payslip_signing_key)
        valid = hmac.compare_digest(expected, payslip.signature_hash)
        if not valid:
            logger.critical("Payslip %s failed signature verification", payslip.payslip_number)
        return valid

    async def distribute(self, payslip_id: UUID, method: str, actor: Actor) -> Payslip:
        actor.require(PAYSLIP_ROLES, "distribute payslips")
        if method not in ("email", "portal", "print", "sms"):
            raise ValidationFailure(f"Unknown distribution method '{method}'", "method")
        payslip = await self.get_payslip(payslip_id)
        before = payslip.status
        payslip.move_to(PayslipStatus.DISTRIBUTED)
        payslip.distribution_method = method
        payslip.distributed_at = self.clock.now()
        self.audit.record_status_change(payslip, before, actor, distribution_method=method)
        return payslip

    async def acknowledge(self, payslip_id: UUID, actor: Actor) -> Payslip:
        """The employee confirms receipt."""
        payslip = await self.get_payslip(payslip_id)
        before = payslip.status
        payslip.move_to(PayslipStatus.ACKNOWLEDGED)
        payslip.acknowledged_at = self.clock.now()
        self.audit.record_status_change(payslip, before, actor)
        return payslip

    async def mark_viewed(self, payslip_id: UUID, actor: Actor) -> Payslip:
        payslip = await self.get_payslip(payslip_id)
        if payslip.mark_viewed(self.clock.now()):
            self.audit.record(payslip, "viewed", actor)
        return payslip

    # ----- Building blocks -----

    def _earnings(
        self, payment: PayrollPayment, calc: EmployeePayrollCalculation | None
    ) -> dict[str, str]:
        earnings: dict[str, str] = {}
        if calc is not None:
            for field, label in EARNING_LINES:
                if money(getattr(calc, field)):
                    earnings[label] = money_str(getattr(calc, field))
        else:
            earnings["Gross Pay"] = money_str(payment.gross_pay)
        if money(payment.adjustments_total):
            earnings["Adjustments"] = money_str(payment.adjustments_total)
        return earnings

    @staticmethod
    def _attendance(calc: EmployeePayrollCalculation | None) -> dict[str, str] | None:
        if calc is None:
            return None
        fields = (
            "present_days",
            "absent_days",
            "late_hours",
            "undertime_hours",
            "regular_ot_hours",
            "rest_day_ot_hours",
            "holiday_ot_hours",
            "night_differential_hours",
        )
        return {f: str(getattr(calc, f)) for f in fields}

    @staticmethod
    def _leave(calc: EmployeePayrollCalculation | None) -> dict[str, str] | None:
        if calc is None:
            return None
        return {
            "paid_leave_days": str(calc.paid_leave_days),
            "unpaid_leave_days": str(calc.unpaid_leave_days),
        }

    async def _year_to_date(self, payment: PayrollPayment) -> dict[str, Decimal]:
        result = await self.session.execute(
            select(PayrollPayment).where(
                PayrollPayment.employee_id == payment.employee_id,
                PayrollPayment.status == PaymentStatus.PAID.value,
                PayrollPayment.deleted_at.is_(None),
                extract("year", PayrollPayment.payment_date) == payment.payment_date.year,
                PayrollPayment.payment_date <= payment.payment_date,
            )
        )
        paid = list(result.scalars().all())
        return {
            "ytd_gross": sum_money(p.gross_pay for p in paid),
            "ytd_tax": sum_money(p.tax_deduction for p in paid),
            "ytd_sss": sum_money(p.sss_deduction for p in paid),
            "ytd_philhealth": sum_money(p.philhealth_deduction for p in paid),
            "ytd_pagibig": sum_money(p.pagibig_deduction for p in paid),
            "ytd_net": sum_money(p.final_net_pay for p in paid),
        }
