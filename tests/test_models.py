"""Tests for model behavior that does not need a database."""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from peso_payroll.errors import InvalidTransitionError, StateConflict, ValidationFailure
from peso_payroll.models import (
    BankFileBatch,
    CashDistributionBatch,
    Employee,
    EmployeeLoan,
    EmployeePayrollCalculation,
    EmployeePayrollInfo,
    LoanDeduction,
    PaymentMethod,
    PayrollAdjustment,
    PayrollPayment,
    PayrollPeriod,
    Payslip,
)
from peso_payroll.models.employee import sss_bracket_for, validate_government_number
from peso_payroll.models.payments import (
    breakdown_total,
    denomination_breakdown,
    merge_breakdowns,
)
from peso_payroll.services.state_machine import BankBatchStatus, CashBatchStatus
from peso_payroll.vault import SensitiveAccount

NOW = datetime(2025, 1, 16, 2, 0, tzinfo=timezone.utc)


def _period(**fields) -> PayrollPeriod:
    values = dict(
        period_number="2025-01-B",
        period_name="January 16-31, 2025",
        period_start=date(2025, 1, 16),
        period_end=date(2025, 1, 31),
        payment_date=date(2025, 2, 5),
        period_month="2025-01",
        period_year=2025,
        timekeeping_cutoff_date=date(2025, 1, 31),
        leave_cutoff_date=date(2025, 1, 31),
        adjustment_deadline=date(2025, 2, 3),
    )
    values.update(fields)
    return PayrollPeriod(**values)


def _calculation(**fields) -> EmployeePayrollCalculation:
    return EmployeePayrollCalculation(
        payroll_period_id=uuid4(), employee_id=uuid4(), **fields
    )


class TestPayrollPeriod:
    """Test period helpers."""

    @pytest.mark.parametrize(
        "start,expected",
        [
            (date(2025, 1, 1), "2025-01-A"),
            (date(2025, 1, 15), "2025-01-A"),
            (date(2025, 1, 16), "2025-01-B"),
            (date(2025, 12, 16), "2025-12-B"),
        ],
    )
    def test_generate_period_number(self, start, expected):
        """Test YYYY-MM-A/B numbering."""
        assert PayrollPeriod.generate_period_number(start) == expected

    def test_second_cutoff(self):
        """Test that B periods are the second cutoff."""
        assert _period().is_second_cutoff is True
        assert _period(period_number="2025-01-A").is_second_cutoff is False

    def test_can_adjust_until_deadline(self):
        """Test adjustments close after the deadline or on lock."""
        period = _period()
        assert period.can_adjust(date(2025, 2, 3)) is True
        assert period.can_adjust(date(2025, 2, 4)) is False

        period.status = "locked"
        assert period.can_adjust(date(2025, 2, 1)) is False

    def test_progress_and_days_until_payment(self):
        """Test progress percentage and payment countdown."""
        period = _period()
        assert period.progress_percentage() == 0

        period.total_employees = 4
        period.employees_processed = 3
        assert period.progress_percentage() == 75
        assert period.days_until_payment(date(2025, 2, 1)) == 4

    def test_totals_snapshot(self):
        """Test the approval history snapshot is JSON-safe."""
        period = _period(total_gross_pay=Decimal("1000"), total_net_pay=Decimal("900.5"))
        snapshot = period.totals_snapshot()
        assert snapshot["total_gross_pay"] == "1000.00"
        assert snapshot["total_net_pay"] == "900.50"
        assert snapshot["exceptions_count"] == 0


class TestEmployeePayrollCalculation:
    """Test calculation totals and versioning."""

    def _itemized(self) -> EmployeePayrollCalculation:
        calc = _calculation(
            basic_pay=Decimal("12500.00"),
            regular_ot_pay=Decimal("710.25"),
            meal_allowance=Decimal("500.00"),
            sss_contribution=Decimal("625.00"),
            withholding_tax=Decimal("53.23"),
            uniform_deduction=Decimal("100.00"),
            adjustments_total=Decimal("200.00"),
        )
        calc.recompute_totals()
        return calc

    def test_recompute_totals(self):
        """Test every total is derived from itemized fields."""
        calc = self._itemized()

        assert calc.total_overtime_pay == Decimal("710.25")
        assert calc.gross_pay == Decimal("13710.25")
        assert calc.total_government_deductions == Decimal("678.23")
        assert calc.total_deductions == Decimal("778.23")
        assert calc.net_pay == Decimal("12932.02")
        assert calc.final_net_pay == Decimal("13132.02")
        assert calc.reconciliation_errors() == []

    def test_reconciliation_detects_drift(self):
        """Test a tampered total is reported."""
        calc = self._itemized()
        calc.gross_pay = Decimal("99999.00")

        errors = calc.reconciliation_errors()
        assert any(e.startswith("gross_pay") for e in errors)
        assert any(e.startswith("net_pay") for e in errors)

    def test_copy_as_next_version(self):
        """Test that a new version copies amounts and resets bookkeeping."""
        calc = self._itemized()
        calc.version = 2
        calc.calculation_status = "locked"
        calc.locked_at = NOW
        calc.exception_flags = ["low_net_pay"]

        copy = calc.copy_as_next_version()

        assert copy.version == 3
        assert copy.previous_version_id == calc.calculation_id
        assert copy.calculation_id != calc.calculation_id
        assert copy.calculation_status == "pending"
        assert copy.locked_at is None
        assert copy.gross_pay == calc.gross_pay
        assert copy.exception_flags == ["low_net_pay"]
        assert copy.exception_flags is not calc.exception_flags

    def test_lock_and_current_flags(self):
        """Test is_locked and is_current."""
        calc = _calculation()
        assert calc.is_locked is False
        assert calc.is_current is True

        calc.locked_at = NOW
        calc.superseded_at = NOW
        assert calc.is_locked is True
        assert calc.is_current is False

    def test_net_pay_variation(self):
        """Test percent change of final net pay."""
        previous = _calculation(final_net_pay=Decimal("10000"))
        current = _calculation(final_net_pay=Decimal("11000"))

        assert current.net_pay_variation(previous) == Decimal("10.00")
        assert current.net_pay_variation(None) is None
        assert current.net_pay_variation(_calculation()) is None


class TestPayrollAdjustment:
    """Test adjustment construction and sign."""

    @pytest.fixture
    def calc(self):
        return _calculation()

    def test_addition_and_deduction(self, calc):
        """Test additions are positive and deductions negative."""
        addition = PayrollAdjustment.build(calc, "addition", "Missed OT", amount=Decimal("500"))
        deduction = PayrollAdjustment.build(calc, "deduction", "Overpaid", amount=Decimal("250"))

        assert addition.signed_amount() == Decimal("500.00")
        assert deduction.signed_amount() == Decimal("-250.00")
        assert addition.calculation_id == calc.calculation_id
        assert addition.status == "pending"

    def test_override(self, calc):
        """Test that overrides store the absolute difference as amount."""
        up = PayrollAdjustment.build(
            calc, "override", "Rate fix",
            original_amount=Decimal("1000"), adjusted_amount=Decimal("1500"),
        )
        down = PayrollAdjustment.build(
            calc, "override", "Rate fix",
            original_amount=Decimal("1000"), adjusted_amount=Decimal("800"),
        )

        assert up.amount == Decimal("500.00")
        assert up.signed_amount() == Decimal("500.00")
        assert down.amount == Decimal("200.00")
        assert down.signed_amount() == Decimal("-200.00")

    @pytest.mark.parametrize(
        "adjustment_type,kwargs,field",
        [
            ("addition", {"reason": "  ", "amount": Decimal("1")}, "reason"),
            ("addition", {"reason": "x", "amount": Decimal("0")}, "amount"),
            ("deduction", {"reason": "x"}, "amount"),
            ("override", {"reason": "x", "original_amount": Decimal("1")}, "adjusted_amount"),
            ("bonus", {"reason": "x", "amount": Decimal("1")}, "adjustment_type"),
        ],
    )
    def test_invalid_adjustments(self, calc, adjustment_type, kwargs, field):
        """Test rejected adjustment inputs."""
        with pytest.raises(ValidationFailure) as exc_info:
            PayrollAdjustment.build(calc, adjustment_type, **kwargs)

        assert exc_info.value.field == field

    def test_needs_approval_threshold_is_inclusive(self, calc):
        """Test that an amount equal to the threshold needs approval."""
        threshold = Decimal("1000")
        at = PayrollAdjustment.build(calc, "deduction", "x", amount=Decimal("1000"))
        below = PayrollAdjustment.build(calc, "addition", "x", amount=Decimal("999.99"))

        assert at.needs_approval(threshold) is True
        assert below.needs_approval(threshold) is False

    def test_can_apply(self, calc):
        """Test that only approved, unapplied adjustments apply."""
        adjustment = PayrollAdjustment.build(calc, "addition", "x", amount=Decimal("10"))
        assert adjustment.can_apply() is False

        adjustment.status = "approved"
        assert adjustment.can_apply() is True

        adjustment.applied_at = NOW
        assert adjustment.can_apply() is False


class TestEmployeeProfile:
    """Test employee and profile rules."""

    def test_is_payable_in(self):
        """Test hire and separation dates against the period."""
        employee = Employee(
            employee_number="E-001",
            first_name="Jose",
            last_name="Rizal",
            hire_date=date(2025, 1, 20),
        )
        assert employee.full_name == "Jose Rizal"
        assert employee.is_payable_in(date(2025, 1, 16), date(2025, 1, 31)) is True
        assert employee.is_payable_in(date(2025, 1, 1), date(2025, 1, 15)) is False

        employee.separation_date = date(2025, 2, 10)
        assert employee.is_payable_in(date(2025, 2, 16), date(2025, 2, 28)) is False

    def test_hourly_profile_derives_rates(self, make_profile):
        """Test that an hourly rate derives the daily and monthly figures."""
        profile = make_profile(salary_type="hourly", basic_salary=None, hourly_rate=Decimal("150"))

        assert profile.daily_rate == Decimal("1200.00")
        assert profile.basic_salary == Decimal("26400.00")
        assert profile.sss_bracket == "E4"

    def test_rate_requirements(self, settings):
        """Test that each salary type needs its own rate."""
        with pytest.raises(ValidationFailure):
            EmployeePayrollInfo.build(uuid4(), "monthly", date(2025, 1, 1), settings=settings)
        with pytest.raises(ValidationFailure):
            EmployeePayrollInfo.build(uuid4(), "daily", date(2025, 1, 1), settings=settings)
        with pytest.raises(ValidationFailure):
            EmployeePayrollInfo.build(uuid4(), "weekly", date(2025, 1, 1), settings=settings)

    def test_malformed_government_number(self, make_profile):
        """Test that a bad SSS format is refused."""
        with pytest.raises(ValidationFailure) as exc_info:
            make_profile(sss_number="123456789")

        assert exc_info.value.field == "sss_number"

    @pytest.mark.parametrize(
        "kind,number,valid",
        [
            ("sss", "12-3456789-0", True),
            ("sss", "1234567890", False),
            ("philhealth", "123456789012", True),
            ("pagibig", "1234-5678-9012", True),
            ("tin", "123-456-789", False),
            ("tin", None, True),
        ],
    )
    def test_validate_government_number(self, kind, number, valid):
        """Test the official number formats."""
        assert validate_government_number(kind, number) is valid

    def test_unknown_government_number_kind(self):
        """Test an unknown number type."""
        with pytest.raises(ValueError):
            validate_government_number("gsis", "1")

    @pytest.mark.parametrize(
        "salary,bracket",
        [("4000", "E1"), ("4250", "E2"), ("25000", "E4"), ("100000", "E6")],
    )
    def test_sss_bracket(self, salary, bracket):
        """Test SSS bracket assignment."""
        assert sss_bracket_for(Decimal(salary)) == bracket

    def test_missing_government_ids_and_accounts(self, make_profile):
        """Test missing IDs and masked account accessors."""
        profile = make_profile(
            pagibig_number=None,
            tin_number=None,
            bank_account=SensitiveAccount("tok_123", "4321"),
        )

        assert profile.missing_government_ids == ["pagibig", "tin"]
        assert profile.bank_account.last4 == "4321"
        assert profile.ewallet_account is None

    def test_is_active_on(self, make_profile):
        """Test the effective window of a profile."""
        profile = make_profile(end_date=date(2024, 12, 31))
        assert profile.is_active_on(date(2024, 6, 1)) is True
        assert profile.is_active_on(date(2025, 1, 1)) is False


class TestEmployeeLoan:
    """Test loan amortization."""

    def _loan(self, principal="10000", installments=3, **fields) -> EmployeeLoan:
        return EmployeeLoan.build(
            employee_id=uuid4(),
            loan_number="LN-0001",
            loan_type="company_loan",
            principal_amount=Decimal(principal),
            number_of_installments=installments,
            loan_date=date(2025, 1, 2),
            first_deduction_date=date(2025, 1, 15),
            **fields,
        )

    def test_installments_round_down(self):
        """Test that the last installment absorbs the rounding remainder."""
        loan = self._loan()

        assert loan.installment_amount == Decimal("3333.33")
        assert loan.scheduled_amount(1) == Decimal("3333.33")
        assert loan.scheduled_amount(3) == Decimal("3333.34")
        assert loan.remaining_balance == Decimal("10000.00")

    def test_interest(self):
        """Test simple interest on the principal."""
        loan = self._loan(interest_rate=Decimal("5"))
        assert loan.interest_amount == Decimal("500.00")
        assert loan.total_loan_amount == Decimal("10500.00")
        assert loan.installment_amount == Decimal("3500.00")

    def test_record_deductions_until_complete(self):
        """Test balance bookkeeping and completion on the last installment."""
        loan = self._loan()

        assert loan.record_deduction(Decimal("3333.33"), date(2025, 1, 15)) is False
        assert loan.remaining_balance == Decimal("6666.67")
        assert loan.record_deduction(Decimal("3333.33"), date(2025, 1, 31)) is False
        assert loan.record_deduction(Decimal("3333.34"), date(2025, 2, 15)) is True

        assert loan.status == "completed"
        assert loan.remaining_balance == Decimal("0.00")
        assert loan.remaining_installments == 0

    def test_deduction_over_balance(self):
        """Test that a deduction cannot exceed the remaining balance."""
        loan = self._loan(principal="100", installments=1)
        with pytest.raises(ValidationFailure):
            loan.record_deduction(Decimal("100.01"), date(2025, 1, 15))

    def test_defaulted_loan_refuses_deductions(self):
        """Test a defaulted loan."""
        loan = self._loan()
        with pytest.raises(ValidationFailure):
            loan.mark_as_defaulted("  ", date(2025, 3, 1))

        loan.mark_as_defaulted("Separated without settlement", date(2025, 3, 1))
        with pytest.raises(StateConflict):
            loan.record_deduction(Decimal("100"), date(2025, 3, 15))

    @pytest.mark.parametrize(
        "fields",
        [
            {"loan_type": "car_loan"},
            {"number_of_installments": 0},
            {"principal_amount": Decimal("0")},
        ],
    )
    def test_invalid_loans(self, fields):
        """Test rejected loan inputs."""
        values = dict(
            employee_id=uuid4(),
            loan_number="LN-0002",
            loan_type="sss_loan",
            principal_amount=Decimal("1000"),
            number_of_installments=2,
            loan_date=date(2025, 1, 2),
            first_deduction_date=date(2025, 1, 15),
        )
        values.update(fields)
        with pytest.raises(ValidationFailure):
            EmployeeLoan.build(**values)


class TestLoanDeduction:
    """Test installment bookkeeping."""

    def _installment(self, **fields) -> LoanDeduction:
        return LoanDeduction(
            loan_id=uuid4(),
            employee_id=uuid4(),
            installment_number=1,
            due_date=date(2025, 1, 15),
            total_deduction=Decimal("500"),
            **fields,
        )

    def test_partial_then_full_payment(self):
        """Test partial payments accumulate until paid."""
        row = self._installment(penalty_amount=Decimal("50"))
        row.mark_as_deducted(uuid4(), date(2025, 1, 15))
        assert row.amount_deducted == Decimal("550.00")

        row.mark_as_partial_paid(Decimal("200"), date(2025, 1, 20))
        assert row.status == "partial_paid"
        assert row.get_outstanding_amount() == Decimal("350.00")

        row.mark_as_partial_paid(Decimal("400"), date(2025, 1, 25))
        assert row.status == "paid"
        assert row.amount_paid == Decimal("550.00")
        assert row.get_outstanding_amount() == Decimal("0.00")

    def test_overdue_and_waiver(self):
        """Test overdue detection and waiving with a reason."""
        row = self._installment()
        assert row.is_overdue(date(2025, 1, 16)) is True
        assert row.is_overdue(date(2025, 1, 15)) is False

        row.mark_as_overdue()
        with pytest.raises(ValidationFailure):
            row.waive("")
        row.waive("Hardship approval")
        assert row.status == "waived"
        assert row.reference == "WAIVED: Hardship approval"
        assert row.is_overdue(date(2025, 3, 1)) is False

    def test_paid_is_final(self):
        """Test that a paid installment cannot become overdue."""
        row = self._installment()
        row.mark_as_deducted(None, date(2025, 1, 15))
        row.mark_as_paid(Decimal("0"), date(2025, 1, 16), reference="OR-1")

        with pytest.raises(InvalidTransitionError):
            row.mark_as_overdue()


class TestDenominations:
    """Test cash denomination breakdown."""

    def test_greedy_breakdown(self):
        """Test bills and coins for an odd amount."""
        breakdown = denomination_breakdown(Decimal("1788.76"))

        assert breakdown == {
            "1000": 1,
            "500": 1,
            "200": 1,
            "50": 1,
            "20": 1,
            "10": 1,
            "5": 1,
            "1": 3,
            "0.25": 3,
            "0.01": 1,
        }
        assert breakdown_total(breakdown) == Decimal("1788.76")

    def test_negative_amount(self):
        """Test that negative cash cannot be broken down."""
        with pytest.raises(ValidationFailure):
            denomination_breakdown(Decimal("-1"))

    def test_merge(self):
        """Test merged counts keep denomination order."""
        merged = merge_breakdowns([{"100": 2, "1": 1}, {"1000": 1, "1": 4}])
        assert list(merged) == ["1000", "100", "1"]
        assert merged["1"] == 5


class TestPaymentMethod:
    """Test channel configuration helpers."""

    def _method(self, **fields) -> PaymentMethod:
        return PaymentMethod(method_type="bank", display_name="BDO", is_enabled=True, **fields)

    @pytest.mark.parametrize(
        "speed,transfer_type",
        [
            ("instant", "instapay"),
            ("same_day", "instapay"),
            ("next_day", "pesonet"),
            ("manual", "pesonet"),
        ],
    )
    def test_transfer_type(self, speed, transfer_type):
        """Test InstaPay versus PESONet routing."""
        assert self._method(settlement_speed=speed).transfer_type == transfer_type

    def test_supports_amount(self):
        """Test the min and max amount range."""
        method = self._method(min_amount=Decimal("100"), max_amount=Decimal("50000"))
        assert method.supports_amount(Decimal("100")) is True
        assert method.supports_amount(Decimal("99.99")) is False
        assert method.supports_amount(Decimal("50000.01")) is False

    def test_same_day_cutoff(self):
        """Test that same-day channels close after the cutoff."""
        method = self._method(settlement_speed="same_day", cutoff_time=time(14, 0))
        assert method.is_available_for_payment(datetime(2025, 1, 16, 10, 0)) is True
        assert method.is_available_for_payment(datetime(2025, 1, 16, 15, 0)) is False

        method.is_enabled = False
        assert method.is_available_for_payment(datetime(2025, 1, 16, 10, 0)) is False


class TestPayrollPayment:
    """Test payment status changes."""

    def _payment(self) -> PayrollPayment:
        return PayrollPayment(
            employee_id=uuid4(),
            payroll_period_id=uuid4(),
            payment_method_id=uuid4(),
            period_start=date(2025, 1, 1),
            period_end=date(2025, 1, 15),
            payment_date=date(2025, 1, 20),
            gross_pay=Decimal("15000.00"),
            sss_deduction=Decimal("500.00"),
            tax_deduction=Decimal("100.00"),
            total_deductions=Decimal("600.00"),
            net_pay=Decimal("14400.00"),
            final_net_pay=Decimal("14400.00"),
            payment_reference="PAY-0001",
        )

    def test_reconciles(self):
        """Test a consistent payment has no reconciliation errors."""
        payment = self._payment()
        assert payment.reconciliation_errors() == []
        assert payment.disbursed_amount == Decimal("14400.00")

    def test_paid_with_provider_attributes(self):
        """Test settlement merges provider attributes."""
        payment = self._payment()
        payment.mark_as_processing(NOW)
        payment.mark_as_paid(
            NOW,
            confirmation_code="CONF-1",
            provider_response={"status": "ok"},
            bank_transaction_id="BDO-991",
        )

        assert payment.status == "paid"
        assert payment.bank_transaction_id == "BDO-991"
        assert payment.provider_response == {"status": "ok"}

    def test_unknown_provider_attribute(self):
        """Test that unknown attributes are rejected."""
        payment = self._payment()
        payment.mark_as_processing(NOW)
        with pytest.raises(ValidationFailure):
            payment.mark_as_paid(NOW, foo="bar")

    def test_pending_cannot_be_paid(self):
        """Test that payments pass through processing."""
        with pytest.raises(InvalidTransitionError):
            self._payment().mark_as_paid(NOW)

    def test_retry_cap(self):
        """Test retries stop at the maximum."""
        payment = self._payment()
        payment.mark_as_processing(NOW)
        for attempt in range(1, 3):
            payment.mark_as_failed("Account closed", NOW)
            payment.start_retry(NOW + timedelta(hours=attempt), max_retries=2)
            assert payment.retry_count == attempt

        payment.mark_as_failed("Account closed", NOW)
        assert payment.can_retry(max_retries=2) is False
        with pytest.raises(StateConflict, match="reissue manually"):
            payment.start_retry(NOW, max_retries=2)


class TestBatches:
    """Test bank and cash batch guards."""

    def test_bank_batch_can_submit(self):
        """Test that submission needs validation and ready status."""
        batch = BankFileBatch(
            payroll_period_id=uuid4(),
            payment_method_id=uuid4(),
            batch_number="BANK-2025-01-A-BDO-01",
            batch_name="BDO",
            payment_date=date(2025, 1, 20),
            bank_code="BDO",
            bank_name="BDO Unibank",
        )
        assert batch.can_submit() is False

        batch.is_validated = True
        assert batch.can_submit() is False

        batch.move_to(BankBatchStatus.READY)
        assert batch.can_submit() is True

    def test_bank_batch_success_rate(self):
        """Test success rate as a percentage."""
        batch = BankFileBatch(total_employees=4, successful_count=3)
        assert batch.success_rate() == Decimal("75.00")
        assert BankFileBatch(total_employees=0).success_rate() == Decimal("0.00")

    def test_cash_batch_verification(self):
        """Test dual verification gates distribution."""
        batch = CashDistributionBatch(
            payroll_period_id=uuid4(),
            batch_number="CASH-2025-01-A-01",
            distribution_date=date(2025, 1, 20),
            unclaimed_deadline=date(2025, 1, 27),
        )
        batch.counted_by = uuid4()
        assert batch.is_verified is False

        batch.witnessed_by = uuid4()
        batch.move_to(CashBatchStatus.READY)
        assert batch.can_start_distribution() is True
        assert batch.is_unclaimed_deadline_passed(date(2025, 1, 27)) is False
        assert batch.is_unclaimed_deadline_passed(date(2025, 1, 28)) is True

    def test_cash_batch_reconcile_needs_redeposit(self):
        """Test that unclaimed cash must be redeposited before reconciling."""
        batch = CashDistributionBatch(status="partially_completed", envelopes_unclaimed=1)
        assert batch.can_reconcile() is False

        batch.redeposit_reference = "REDEP-CASH-2025-01-A-01-20250128"
        assert batch.can_reconcile() is True


class TestPayslip:
    """Test payslip view tracking."""

    def test_first_view_only(self):
        """Test that only the first view is recorded."""
        payslip = Payslip()
        assert payslip.mark_viewed(NOW) is True
        assert payslip.mark_viewed(NOW + timedelta(days=1)) is False
        assert payslip.viewed_at == NOW
