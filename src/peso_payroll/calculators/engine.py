"""Payroll calculation engine.

Pure computation: takes a fully loaded CalculationContext and returns a
CalculationResult. Loading inputs and persisting results belong to
CalculationService.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from peso_payroll.calculators.components import BASIC, DAILY_RATE, HOURLY_RATE, ComponentCalculator
from peso_payroll.calculators.contributions import ContributionCalculator
from peso_payroll.calculators.tax_calculator import WithholdingTaxCalculator
from peso_payroll.calculators.types import (
    CalculationContext,
    CalculationResult,
    ExceptionFlag,
    RuleSet,
    canonical_fingerprint,
)
from peso_payroll.config import Settings, get_settings
from peso_payroll.errors import ValidationFailure
from peso_payroll.models.payroll import EXCEPTION_SEVERITIES, EmployeePayrollCalculation
from peso_payroll.money import CENT, HUNDRED, ZERO, money, sum_money, to_decimal
from peso_payroll.schemas import AttendanceSummary, LeaveSummary

ALLOWANCE_FIELD_BY_TYPE = {
    "transportation": "transportation_allowance",
    "meal": "meal_allowance",
    "housing": "housing_allowance",
    "communication": "communication_allowance",
}

DEDUCTION_FIELD_BY_TYPE = {
    "cash_advance": "cash_advance_deduction",
    "salary_advance": "salary_advance_deduction",
    "uniform": "uniform_deduction",
    "tool": "tool_deduction",
}

LOAN_FIELD_BY_TYPE = {
    "sss_loan": "sss_loan_deduction",
    "pagibig_loan": "pagibig_loan_deduction",
}

BONUS_FIELD_BY_CODE = {
    "PERFORMANCE_BONUS": "performance_bonus",
    "ATTENDANCE_BONUS": "attendance_bonus",
    "PRODUCTIVITY_BONUS": "productivity_bonus",
}

CALC = EmployeePayrollCalculation


def default_rules(settings: Settings | None = None) -> RuleSet:
    settings = settings or get_settings()
    return RuleSet(engine_version=settings.engine_version)


def _flag(exception_type: str, title: str, description: str, **fields: Any) -> ExceptionFlag:
    return ExceptionFlag(
        exception_type=exception_type,
        severity=EXCEPTION_SEVERITIES[exception_type],
        title=title,
        description=description,
        **fields,
    )


class PayrollCalculationEngine:
    """Computes one employee's pay for one period.

    Calculation pipeline (stable order per employee):
    1) Resolve base pay from salary type, attendance and paid leave
    2) Overtime and night differential from hourly rate × multiplier
    3) Allowances and assigned components; split taxable / non-taxable
    4) Government contributions (missing ID → zero + exception)
    5) Withholding tax on annualized taxable income
    6) Loans, advances and other deductions
    7) Totals and exception detection
    """

    def __init__(self, rules: RuleSet | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.rules = rules or default_rules(self.settings)
        self.periods_per_month = self.settings.periods_per_month
        self.contributions = ContributionCalculator(
            self.rules.sss,
            self.rules.philhealth,
            self.rules.pagibig,
            periods_per_month=self.periods_per_month,
        )
        self.tax_calculator = WithholdingTaxCalculator(
            self.rules.tax_brackets,
            periods_per_year=self.settings.pay_periods_per_year,
            exempt_statuses=self.rules.tax_exempt_statuses,
        )
        self.component_calculator = ComponentCalculator()

    def calculate(self, ctx: CalculationContext) -> CalculationResult:
        flags: list[ExceptionFlag] = []
        amounts: dict[str, Decimal] = {}
        details: dict[str, Any] = {}
        rules_fingerprint = self.rules.fingerprint()

        profile = ctx.profile
        missing_rate = self._missing_rate(profile)
        if missing_rate is not None:
            flags.append(
                _flag(
                    "calculation_error",
                    "Missing pay rate",
                    missing_rate,
                    detection_rule="profile_has_rate",
                )
            )
            return CalculationResult(
                employee_id=ctx.employee_id,
                amounts={},
                inputs={},
                details={"error": missing_rate},
                flags=flags,
                errors=[missing_rate],
                inputs_fingerprint=canonical_fingerprint(self._inputs_data(ctx)),
                rules_fingerprint=rules_fingerprint,
            )

        attendance = ctx.attendance
        if attendance is None:
            flags.append(
                _flag(
                    "missing_timekeeping",
                    "No timekeeping summary",
                    "Attendance summary was not received for this period",
                    detection_rule="attendance_present",
                )
            )
            attendance = AttendanceSummary(employee_id=ctx.employee_id)
        leave = ctx.leave
        if leave is None:
            flags.append(
                _flag(
                    "missing_leave_data",
                    "No leave summary",
                    "Leave summary was not received for this period",
                    detection_rule="leave_present",
                )
            )
            leave = LeaveSummary(employee_id=ctx.employee_id)

        daily = to_decimal(profile.daily_rate)
        hourly = to_decimal(profile.hourly_rate)
        monthly_basic = to_decimal(profile.basic_salary)

        inputs = {
            "basic_monthly_salary": money(monthly_basic),
            "daily_rate": money(daily),
            "hourly_rate": money(hourly),
            "present_days": attendance.present_days,
            "absent_days": attendance.absent_days,
            "late_hours": attendance.late_hours,
            "undertime_hours": attendance.undertime_hours,
            "regular_ot_hours": attendance.overtime_hours("regular"),
            "rest_day_ot_hours": attendance.overtime_hours("rest_day"),
            "holiday_ot_hours": sum(
                (attendance.overtime_hours(c) for c in ("holiday", "double", "triple")),
                Decimal("0"),
            ),
            "night_differential_hours": attendance.night_differential_hours,
            "paid_leave_days": leave.paid_leave_days,
            "unpaid_leave_days": leave.unpaid_leave_days,
        }

        # 1) Base pay
        if profile.salary_type == "monthly":
            amounts["basic_pay"] = money(monthly_basic / self.periods_per_month)
            amounts["absence_deduction"] = money(daily * attendance.absent_days)
            amounts["leave_deduction_amount"] = money(daily * leave.unpaid_leave_days)
        else:
            amounts["basic_pay"] = money(
                daily * (attendance.present_days + leave.paid_leave_days)
            )
            amounts["absence_deduction"] = ZERO
            amounts["leave_deduction_amount"] = ZERO
        amounts["tardiness_deduction"] = money(
            (attendance.late_hours + attendance.undertime_hours) * hourly
        )

        # 2) Overtime
        mult = self.rules.ot_multipliers
        amounts["regular_ot_pay"] = money(
            hourly * mult["regular"] * attendance.overtime_hours("regular")
        )
        amounts["rest_day_ot_pay"] = money(
            hourly * mult["rest_day"] * attendance.overtime_hours("rest_day")
        )
        amounts["holiday_ot_pay"] = money(
            hourly
            * sum(
                (mult[c] * attendance.overtime_hours(c) for c in ("holiday", "double", "triple")),
                Decimal("0"),
            )
        )
        amounts["night_differential_pay"] = money(
            hourly * self.rules.night_differential_rate * attendance.night_differential_hours
        )

        # 3) Allowances and assigned components
        for name in CALC.ALLOWANCE_FIELDS + CALC.BONUS_FIELDS:
            amounts[name] = ZERO
        nontaxable = ZERO
        allowance_ids: list[str] = []
        for allowance in ctx.allowances:
            if not allowance.is_active_between(ctx.period_start, ctx.period_end):
                continue
            amount = allowance.amount_for_period(self.periods_per_month)
            target = ALLOWANCE_FIELD_BY_TYPE.get(allowance.allowance_type, "other_allowances")
            amounts[target] = money(amounts[target] + amount)
            nontaxable += self._nontaxable_portion(
                amount,
                is_taxable=allowance.is_taxable,
                is_deminimis=allowance.is_deminimis,
                monthly_limit=allowance.deminimis_limit_monthly
                or self.rules.deminimis_monthly.get(allowance.allowance_type),
            )
            allowance_ids.append(str(allowance.employee_allowance_id))

        component_deductions = ZERO
        component_rows: list[dict[str, str]] = []
        base_values = {
            BASIC: amounts["basic_pay"],
            HOURLY_RATE: hourly,
            DAILY_RATE: daily,
        }
        for component, assignment in ctx.components:
            if component.is_system_component or not component.is_active:
                continue
            if not assignment.is_active_between(ctx.period_start, ctx.period_end):
                continue
            value = self.component_calculator.evaluate(component, base_values, assignment)
            if assignment.frequency == "monthly":
                value = money(value / self.periods_per_month)
            base_values[component.code] = value
            component_rows.append({"code": component.code, "amount": str(value)})
            if not component.is_earning:
                component_deductions += value
                continue
            if component.category == "allowance":
                target = "other_allowances"
            elif component.category == "bonus":
                target = BONUS_FIELD_BY_CODE.get(component.code, "other_income")
            else:
                target = "other_income"
            amounts[target] = money(amounts[target] + value)
            nontaxable += self._nontaxable_portion(
                value,
                is_taxable=component.is_taxable,
                is_deminimis=component.is_deminimis,
                monthly_limit=component.deminimis_limit_monthly,
            )
        amounts["nontaxable_allowances"] = money(nontaxable)

        # 4) Government contributions
        missing_ids = profile.missing_government_ids
        sss = self.contributions.sss(monthly_basic)
        philhealth = self.contributions.philhealth(monthly_basic)
        pagibig = self.contributions.pagibig(monthly_basic, profile.pagibig_employee_rate)
        amounts["sss_contribution"] = ZERO if "sss" in missing_ids else sss.employee
        amounts["sss_employer_share"] = ZERO if "sss" in missing_ids else sss.employer
        amounts["philhealth_contribution"] = (
            ZERO if "philhealth" in missing_ids else philhealth.employee
        )
        amounts["philhealth_employer_share"] = (
            ZERO if "philhealth" in missing_ids else philhealth.employer
        )
        amounts["pagibig_contribution"] = ZERO if "pagibig" in missing_ids else pagibig.employee
        amounts["pagibig_employer_share"] = ZERO if "pagibig" in missing_ids else pagibig.employer
        if missing_ids:
            flags.append(
                _flag(
                    "missing_government_id",
                    "Missing government ID",
                    "Missing: " + ", ".join(k.upper() for k in missing_ids),
                    detection_rule="government_ids_present",
                    details={"missing": missing_ids},
                )
            )

        # 5) Withholding tax
        gross = sum_money(
            [amounts["basic_pay"]]
            + [amounts[f] for f in CALC.OVERTIME_FIELDS]
            + [amounts[f] for f in CALC.ALLOWANCE_FIELDS]
            + [amounts[f] for f in CALC.BONUS_FIELDS]
        )
        contributions = sum_money(
            [
                amounts["sss_contribution"],
                amounts["philhealth_contribution"],
                amounts["pagibig_contribution"],
            ]
        )
        taxable = money(
            gross
            - amounts["nontaxable_allowances"]
            - contributions
            - amounts["tardiness_deduction"]
            - amounts["absence_deduction"]
            - amounts["leave_deduction_amount"]
        )
        amounts["taxable_income"] = taxable if taxable > 0 else ZERO
        amounts["withholding_tax"] = self.tax_calculator.period_tax(
            amounts["taxable_income"], profile.tax_status
        )

        # 6) Loans, advances, other deductions
        for name in CALC.LOAN_FIELDS + CALC.ADVANCE_FIELDS + CALC.OTHER_DEDUCTION_FIELDS:
            amounts[name] = ZERO
        loan_rows: list[str] = []
        for installment in ctx.loan_installments:
            target = LOAN_FIELD_BY_TYPE.get(installment.loan_type, "company_loan_deduction")
            amounts[target] = money(amounts[target] + installment.amount)
            loan_rows.append(str(installment.loan_deduction_id))
        deduction_rows: list[str] = []
        for deduction in ctx.deductions:
            if not deduction.is_active_between(ctx.period_start, ctx.period_end):
                continue
            amount = deduction.amount_for_period(ctx.is_second_cutoff)
            if amount <= 0:
                continue
            target = DEDUCTION_FIELD_BY_TYPE.get(deduction.deduction_type, "miscellaneous_deductions")
            amounts[target] = money(amounts[target] + amount)
            deduction_rows.append(str(deduction.employee_deduction_id))
        amounts["miscellaneous_deductions"] = money(
            amounts["miscellaneous_deductions"] + component_deductions
        )

        # 7) Totals
        self._apply_totals(amounts)
        flags.extend(self._detect_exceptions(amounts, ctx.previous_final_net_pay))

        details.update(
            {
                "allowance_ids": allowance_ids,
                "deduction_ids": deduction_rows,
                "loan_deduction_ids": loan_rows,
                "components": component_rows,
                "sss_msc": str(sss.base),
                "taxable_allowances": str(
                    money(sum_money(amounts[f] for f in CALC.ALLOWANCE_FIELDS) - nontaxable)
                ),
            }
        )

        return CalculationResult(
            employee_id=ctx.employee_id,
            amounts=amounts,
            inputs=inputs,
            details=details,
            flags=flags,
            errors=[],
            inputs_fingerprint=canonical_fingerprint(self._inputs_data(ctx)),
            rules_fingerprint=rules_fingerprint,
        )

    def _missing_rate(self, profile) -> str | None:
        if profile is None:
            return "No active payroll profile for the period"
        if profile.salary_type == "monthly" and not profile.basic_salary:
            return "Monthly profile has no basic_salary"
        if not profile.daily_rate or to_decimal(profile.daily_rate) <= 0:
            return "Profile has no daily_rate"
        if not profile.hourly_rate or to_decimal(profile.hourly_rate) <= 0:
            return "Profile has no hourly_rate"
        return None

    def _nontaxable_portion(
        self,
        amount: Decimal,
        is_taxable: bool,
        is_deminimis: bool,
        monthly_limit: Decimal | None,
    ) -> Decimal:
        """Non-taxable part of one allowance; de minimis excess stays taxable."""
        if is_deminimis:
            if monthly_limit is None:
                return amount
            cap = money(to_decimal(monthly_limit) / self.periods_per_month)
            return min(amount, cap)
        if not is_taxable:
            return amount
        return ZERO

    def _apply_totals(self, amounts: dict[str, Decimal]) -> None:
        amounts["total_overtime_pay"] = sum_money(amounts[f] for f in CALC.OVERTIME_FIELDS)
        amounts["total_allowances"] = sum_money(amounts[f] for f in CALC.ALLOWANCE_FIELDS)
        amounts["total_bonuses"] = sum_money(amounts[f] for f in CALC.BONUS_FIELDS)
        amounts["gross_pay"] = sum_money(
            [
                amounts["basic_pay"],
                amounts["total_overtime_pay"],
                amounts["total_allowances"],
                amounts["total_bonuses"],
            ]
        )
        amounts["total_government_deductions"] = sum_money(
            amounts[f] for f in CALC.GOVERNMENT_FIELDS
        )
        amounts["total_loan_deductions"] = sum_money(amounts[f] for f in CALC.LOAN_FIELDS)
        amounts["total_deductions"] = sum_money(
            [
                amounts["total_government_deductions"],
                amounts["total_loan_deductions"],
            ]
            + [amounts[f] for f in CALC.ADVANCE_FIELDS]
            + [amounts[f] for f in CALC.ATTENDANCE_DEDUCTION_FIELDS]
            + [amounts["leave_deduction_amount"]]
            + [amounts[f] for f in CALC.OTHER_DEDUCTION_FIELDS]
        )
        amounts["net_pay"] = money(amounts["gross_pay"] - amounts["total_deductions"])

    def _detect_exceptions(
        self, amounts: dict[str, Decimal], previous_final_net_pay: Decimal | None
    ) -> list[ExceptionFlag]:
        s = self.settings
        flags: list[ExceptionFlag] = []
        gross = amounts["gross_pay"]
        net = amounts["net_pay"]
        deductions = amounts["total_deductions"]

        if net < 0:
            flags.append(
                _flag(
                    "negative_net_pay",
                    "Negative net pay",
                    f"Deductions {deductions} exceed gross pay {gross}",
                    current_value=net,
                    expected_value=ZERO,
                    detection_rule="net_pay >= 0",
                )
            )
        elif net < s.low_net_pay_threshold:
            flags.append(
                _flag(
                    "low_net_pay",
                    "Low net pay",
                    f"Net pay {net} is below {s.low_net_pay_threshold}",
                    current_value=net,
                    expected_value=s.low_net_pay_threshold,
                    detection_rule="net_pay >= low_net_pay_threshold",
                )
            )
        if net > s.high_net_pay_threshold:
            flags.append(
                _flag(
                    "high_net_pay",
                    "High net pay",
                    f"Net pay {net} is above {s.high_net_pay_threshold}",
                    current_value=net,
                    expected_value=s.high_net_pay_threshold,
                    detection_rule="net_pay <= high_net_pay_threshold",
                )
            )
        if gross > 0 and deductions * HUNDRED > gross * s.excessive_deduction_percent:
            flags.append(
                _flag(
                    "excessive_deduction",
                    "Excessive deductions",
                    f"Deductions are more than {s.excessive_deduction_percent}% of gross pay",
                    current_value=deductions,
                    expected_value=money(gross * s.excessive_deduction_percent / HUNDRED),
                    detection_rule="total_deductions <= excessive_deduction_percent of gross",
                )
            )
        if previous_final_net_pay:
            prev = to_decimal(previous_final_net_pay)
            variance = ((net - prev) / abs(prev) * HUNDRED).quantize(CENT)
            if abs(variance) > s.variance_threshold_percent:
                flags.append(
                    _flag(
                        "high_variance",
                        "Net pay variance",
                        f"Net pay moved {variance}% against the previous period",
                        current_value=net,
                        expected_value=money(prev),
                        variance_percent=variance,
                        detection_rule="abs(variance) <= variance_threshold_percent",
                    )
                )
        return flags

    def _inputs_data(self, ctx: CalculationContext) -> dict[str, Any]:
        """Everything that influences the result, in canonical form."""
        profile = ctx.profile
        return {
            "employee_id": str(ctx.employee_id),
            "period": [str(ctx.period_start), str(ctx.period_end), ctx.is_second_cutoff],
            "profile": None
            if profile is None
            else {
                "id": str(profile.employee_payroll_info_id),
                "salary_type": profile.salary_type,
                "basic_salary": str(profile.basic_salary),
                "daily_rate": str(profile.daily_rate),
                "hourly_rate": str(profile.hourly_rate),
                "tax_status": profile.tax_status,
                "pagibig_employee_rate": str(profile.pagibig_employee_rate),
                "missing_ids": profile.missing_government_ids,
            },
            "attendance": ctx.attendance.model_dump(mode="json") if ctx.attendance else None,
            "leave": ctx.leave.model_dump(mode="json") if ctx.leave else None,
            "allowances": sorted(
                (str(a.employee_allowance_id), str(a.amount), a.frequency)
                for a in ctx.allowances
            ),
            "deductions": sorted(
                (str(d.employee_deduction_id), str(d.amount), d.frequency, d.applied_count)
                for d in ctx.deductions
            ),
            "components": sorted(
                (c.code, str(a.amount), str(a.percentage), str(a.units))
                for c, a in ctx.components
            ),
            "loans": sorted(
                (str(i.loan_deduction_id), str(i.amount)) for i in ctx.loan_installments
            ),
            "previous_final_net_pay": str(ctx.previous_final_net_pay),
        }


def validate_result(result: CalculationResult) -> None:
    """Raise ValidationFailure when a successful result is missing a total."""
    if result.success:
        for key in ("gross_pay", "total_deductions", "net_pay"):
            if key not in result.amounts:
                raise ValidationFailure(f"Calculation result is missing {key}", key)
