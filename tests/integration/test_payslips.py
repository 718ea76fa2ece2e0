"""Payslip issuance against a real database."""

import json
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal

import pytest

from peso_payroll.errors import InvalidTransitionError, StateConflict, ValidationFailure
from peso_payroll.events import PayslipGenerated

pytestmark = pytest.mark.asyncio


@pytest.fixture
def paid_in_cash(disbursements, run_payroll, officer, admin, second_admin, payment_methods):
    """Lock the period, then hand out every cash envelope."""

    async def _paid(period, *employees):
        await run_payroll(period, *employees)
        payments = await disbursements.generate_payments(period.payroll_period_id, officer)
        batch = await disbursements.create_cash_batch(period.payroll_period_id, officer)
        await disbursements.record_cash_count(batch.cash_distribution_batch_id, admin)
        await disbursements.witness_cash_count(batch.cash_distribution_batch_id, second_admin)
        await disbursements.start_distribution(batch.cash_distribution_batch_id, admin)
        for payment in payments:
            await disbursements.release_envelope(payment.payment_id, admin)
        return sorted(payments, key=lambda p: p.payment_reference)

    return _paid


class TestGeneration:
    """Test payslip contents and signatures."""

    async def test_payslip_contents(self, payslips, paid_in_cash, open_period, hire, officer, recorder):
        """Test the snapshot of pay, deductions and government numbers."""
        period = await open_period()
        (payment,) = await paid_in_cash(period, await hire("E-001"))

        payslip = await payslips.generate(payment.payment_id, officer)

        assert payslip.payslip_number == "PS-2025-01-A-E-001"
        assert payslip.status == "generated"
        assert payslip.employee_name == "Juan Dela Cruz E-001"
        assert payslip.department == "Operations"
        assert payslip.tin == "123-456-789-000"
        assert payslip.earnings_data == {"Basic Pay": "12500.00"}
        assert payslip.deductions_data == {
            "SSS": "625.00",
            "PhilHealth": "343.75",
            "Pag-IBIG": "50.00",
            "Withholding Tax": "53.23",
        }
        assert payslip.total_earnings == Decimal("12500.00")
        assert payslip.total_deductions == Decimal("1071.98")
        assert payslip.net_pay == Decimal("11428.02")
        assert set(payslip.leave_summary) == {"paid_leave_days", "unpaid_leave_days"}
        assert len(payslip.signature_hash) == 64
        qr = json.loads(payslip.qr_code_data)
        assert qr["net_pay"] == "11428.02"
        assert qr["signature_hash"] == payslip.signature_hash
        assert set(qr) == {"payslip_number", "signature_hash", "employee_number", "payment_date", "net_pay"}

        generated = recorder.of_type(PayslipGenerated)
        assert [e.payslip_number for e in generated] == ["PS-2025-01-A-E-001"]

    async def test_year_to_date(self, payslips, paid_in_cash, open_period, hire, officer):
        """Test that year-to-date totals include earlier paid periods."""
        alice = await hire("E-001")
        first = await open_period()
        await paid_in_cash(first, alice)
        second = await open_period(date(2025, 1, 16), date(2025, 1, 31), date(2025, 2, 5))
        (payment,) = await paid_in_cash(second, alice)

        payslip = await payslips.generate(payment.payment_id, officer)

        assert payslip.payslip_number == "PS-2025-01-B-E-001"
        assert payslip.ytd_gross == Decimal("25000.00")
        assert payslip.ytd_tax == Decimal("106.46")
        assert payslip.ytd_sss == Decimal("1250.00")
        assert payslip.ytd_net == Decimal("22856.04")

    async def test_only_paid_payments(self, payslips, disbursements, run_payroll, open_period, hire, officer, payment_methods):
        """Test that pending payments get no payslip."""
        period = await open_period()
        await run_payroll(period, await hire("E-001"))
        (payment,) = await disbursements.generate_payments(period.payroll_period_id, officer)

        with pytest.raises(StateConflict):
            await payslips.generate(payment.payment_id, officer)

    async def test_one_payslip_per_payment(self, payslips, paid_in_cash, open_period, hire, officer):
        """Test that a payment is never issued a second payslip."""
        period = await open_period()
        (payment,) = await paid_in_cash(period, await hire("E-001"))
        await payslips.generate(payment.payment_id, officer)

        with pytest.raises(StateConflict):
            await payslips.generate(payment.payment_id, officer)

    async def test_generate_for_period(self, payslips, paid_in_cash, open_period, hire, system_actor):
        """Test issuing every missing payslip of a period."""
        period = await open_period()
        first, _ = await paid_in_cash(period, await hire("E-001"), await hire("E-002"))
        await payslips.generate(first.payment_id, system_actor)

        issued = await payslips.generate_for_period(period.payroll_period_id, system_actor)

        assert [p.payslip_number for p in issued] == ["PS-2025-01-A-E-002"]
        assert await payslips.generate_for_period(period.payroll_period_id, system_actor) == []


class TestVerification:
    """Test tamper detection."""

    async def test_signature_detects_changes(self, payslips, paid_in_cash, open_period, hire, officer):
        """Test that any change to a signed field breaks verification."""
        period = await open_period()
        (payment,) = await paid_in_cash(period, await hire("E-001"))
        payslip = await payslips.generate(payment.payment_id, officer)

        assert await payslips.verify(payslip.payslip_id) is True

        payslip.net_pay = Decimal("21428.02")
        assert await payslips.verify(payslip.payslip_id) is False

    async def test_signing_key_matters(self, payslips, paid_in_cash, open_period, hire, officer, settings):
        """Test that a payslip does not verify under another key."""
        period = await open_period()
        (payment,) = await paid_in_cash(period, await hire("E-001"))
        payslip = await payslips.generate(payment.payment_id, officer)

        payslips.settings = replace(settings, payslip_signing_key="rotated-key")

        assert await payslips.verify(payslip.payslip_id) is False


class TestDistribution:
    """Test distribution, viewing and acknowledgement."""

    async def test_lifecycle(self, payslips, paid_in_cash, open_period, hire, officer, clock):
        """Test generated -> distributed -> acknowledged."""
        period = await open_period()
        (payment,) = await paid_in_cash(period, await hire("E-001"))
        payslip = await payslips.generate(payment.payment_id, officer)

        with pytest.raises(ValidationFailure):
            await payslips.distribute(payslip.payslip_id, "fax", officer)
        with pytest.raises(InvalidTransitionError):
            await payslips.acknowledge(payslip.payslip_id, officer)

        await payslips.distribute(payslip.payslip_id, "email", officer)
        assert payslip.status == "distributed"
        assert payslip.distribution_method == "email"
        assert payslip.distributed_at == clock.now()

        await payslips.acknowledge(payslip.payslip_id, officer)
        assert payslip.status == "acknowledged"
        with pytest.raises(InvalidTransitionError):
            await payslips.distribute(payslip.payslip_id, "portal", officer)

    async def test_first_view_recorded_once(self, payslips, paid_in_cash, open_period, hire, officer, clock):
        """Test that only the first view is stamped."""
        period = await open_period()
        (payment,) = await paid_in_cash(period, await hire("E-001"))
        payslip = await payslips.generate(payment.payment_id, officer)
        first_view = clock.now()

        await payslips.mark_viewed(payslip.payslip_id, officer)
        clock.advance(timedelta(hours=2))
        await payslips.mark_viewed(payslip.payslip_id, officer)

        assert payslip.is_viewed is True
        assert payslip.viewed_at == first_view
