"""Integration test fixtures with a real database.

Each test gets its own in-memory SQLite database with the full schema, and
services wired to the shared fixed clock and event recorder.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from peso_payroll.actors import Actor
from peso_payroll.models import Base, Employee, PaymentMethod, PayrollPeriod
from peso_payroll.schemas import AttendanceSummary, LeaveSummary
from peso_payroll.services.adjustment_service import AdjustmentService
from peso_payroll.services.audit_service import AuditService
from peso_payroll.services.calculation_service import CalculationService, StaticPayrollInputs
from peso_payroll.services.catalog_service import CatalogService
from peso_payroll.services.disbursement_service import DisbursementService
from peso_payroll.services.exception_service import ExceptionService
from peso_payroll.services.loan_service import LoanService
from peso_payroll.services.payslip_service import PayslipService
from peso_payroll.services.period_service import PeriodService
from peso_payroll.services.profile_service import ProfileService

PERIOD_START = date(2025, 1, 1)
PERIOD_END = date(2025, 1, 15)
PAYMENT_DATE = date(2025, 1, 20)


@pytest_asyncio.fixture
async def test_engine(settings):
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        settings.database_url,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Get database session for integration tests."""
    factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def wiring(db_session, clock, settings, emitter):
    return {"session": db_session, "clock": clock, "settings": settings, "emitter": emitter}


@pytest.fixture
def periods(wiring) -> PeriodService:
    return PeriodService(**wiring)


@pytest.fixture
def calculations(wiring) -> CalculationService:
    return CalculationService(**wiring)


@pytest.fixture
def profiles(wiring) -> ProfileService:
    return ProfileService(**wiring)


@pytest.fixture
def adjustments(wiring) -> AdjustmentService:
    return AdjustmentService(**wiring)


@pytest.fixture
def exceptions(wiring) -> ExceptionService:
    return ExceptionService(**wiring)


@pytest.fixture
def loans(wiring) -> LoanService:
    return LoanService(**wiring)


@pytest.fixture
def disbursements(wiring) -> DisbursementService:
    return DisbursementService(**wiring)


@pytest.fixture
def payslips(wiring) -> PayslipService:
    return PayslipService(**wiring)


@pytest.fixture
def catalog(wiring) -> CatalogService:
    return CatalogService(**wiring)


@pytest.fixture
def hire(profiles, officer, government_ids):
    """Register an employee with a monthly profile (₱25,000, paid in cash by default)."""

    async def _hire(
        employee_number: str,
        basic_salary: str | None = "25000",
        with_profile: bool = True,
        **profile_fields,
    ) -> Employee:
        employee = await profiles.add_employee(
            employee_number,
            first_name="Juan",
            last_name=f"Dela Cruz {employee_number}",
            hire_date=date(2024, 1, 1),
            actor=officer,
            department="Operations",
            position="Clerk",
        )
        if with_profile:
            values = dict(government_ids)
            values.update(profile_fields)
            await profiles.create_profile(
                employee.employee_id,
                "monthly",
                date(2024, 1, 1),
                officer,
                basic_salary=Decimal(basic_salary),
                **values,
            )
        return employee

    return _hire


@pytest.fixture
def open_period(periods, officer):
    async def _open(
        start: date = PERIOD_START, end: date = PERIOD_END, payment: date = PAYMENT_DATE
    ) -> PayrollPeriod:
        return await periods.create_period(start, end, payment, officer)

    return _open


@pytest.fixture
def full_inputs():
    """Full attendance and no leave for every employee given."""

    def _inputs(*employees: Employee, without_leave=(), **attendance) -> StaticPayrollInputs:
        skip = {e.employee_id for e in without_leave}
        return StaticPayrollInputs(
            attendance=[
                AttendanceSummary(
                    employee_id=e.employee_id, present_days=Decimal("11"), **attendance
                )
                for e in employees
            ],
            leave=[
                LeaveSummary(employee_id=e.employee_id)
                for e in employees
                if e.employee_id not in skip
            ],
        )

    return _inputs


@pytest.fixture
def approve_period(periods, officer, hr_manager, admin):
    """Walk a calculated period through review, approval and finalization."""

    async def _approve(payroll_period_id, lock: bool = True) -> PayrollPeriod:
        await periods.submit(payroll_period_id, officer)
        await periods.approve(payroll_period_id, hr_manager)
        period = await periods.finalize(payroll_period_id, admin)
        if lock:
            period = await periods.lock(payroll_period_id, admin)
        return period

    return _approve


@pytest.fixture
def run_payroll(calculations, full_inputs, approve_period, officer):
    """Calculate one period for the given employees and lock it."""

    async def _run(period: PayrollPeriod, *employees: Employee, lock: bool = True):
        await calculations.calculate_period(
            period.payroll_period_id, full_inputs(*employees), officer
        )
        return await approve_period(period.payroll_period_id, lock=lock)

    return _run


@pytest_asyncio.fixture
async def payment_methods(db_session, admin) -> dict[str, PaymentMethod]:
    """Cash, one bank and one e-wallet channel, all enabled."""
    methods = {
        "cash": PaymentMethod(
            method_type="cash",
            display_name="Cash",
            is_enabled=True,
            sort_order=1,
            configured_by=admin.user_id,
        ),
        "bank": PaymentMethod(
            method_type="bank",
            display_name="BDO Payroll",
            is_enabled=True,
            supports_bulk_payment=True,
            requires_employee_setup=True,
            settlement_speed="next_day",
            processing_days=1,
            bank_code="BDO",
            bank_name="BDO Unibank",
            file_format="csv",
            sort_order=2,
            configured_by=admin.user_id,
        ),
        "ewallet": PaymentMethod(
            method_type="ewallet",
            display_name="GCash",
            is_enabled=True,
            requires_employee_setup=True,
            settlement_speed="instant",
            provider_name="gcash",
            transaction_fee=Decimal("15.00"),
            max_amount=Decimal("100000"),
            sort_order=3,
            configured_by=admin.user_id,
        ),
    }
    db_session.add_all(methods.values())
    await db_session.flush()
    return methods


@pytest.fixture
def system_actor() -> Actor:
    return Actor.system()


@pytest.fixture
def audit_service(db_session, clock, settings) -> AuditService:
    return AuditService(db_session, clock=clock, settings=settings)
