"""Pytest fixtures for peso-payroll tests."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from peso_payroll.actors import Actor, Role
from peso_payroll.clock import FixedClock
from peso_payroll.config import Settings
from peso_payroll.events import EventEmitter, RecordingHandler
from peso_payroll.models import EmployeePayrollInfo
from peso_payroll.schemas import AttendanceSummary, LeaveSummary
from peso_payroll.vault import InMemoryAccountVault

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Valid government numbers
GOVERNMENT_IDS = {
    "sss_number": "12-3456789-0",
    "philhealth_number": "123456789012",
    "pagibig_number": "1234-5678-9012",
    "tin_number": "123-456-789-000",
}


@pytest.fixture
def government_ids() -> dict[str, str]:
    return dict(GOVERNMENT_IDS)


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url=TEST_DATABASE_URL, engine_version="test-1.0")


@pytest.fixture
def clock() -> FixedClock:
    """16 January 2025, 10:00 Manila time."""
    return FixedClock(datetime(2025, 1, 16, 2, 0, tzinfo=timezone.utc))


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def emitter(recorder: RecordingHandler) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(recorder)
    return emitter


@pytest.fixture
def vault() -> InMemoryAccountVault:
    return InMemoryAccountVault()


@pytest.fixture
def officer() -> Actor:
    return Actor(user_id=uuid4(), name="Paz Officer", role=Role.PAYROLL_OFFICER)


@pytest.fixture
def hr_manager() -> Actor:
    return Actor(user_id=uuid4(), name="Hernan Manager", role=Role.HR_MANAGER)


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id=uuid4(), name="Ada Admin", role=Role.OFFICE_ADMIN)


@pytest.fixture
def second_admin() -> Actor:
    return Actor(user_id=uuid4(), name="Bea Admin", role=Role.OFFICE_ADMIN)


@pytest.fixture
def superadmin() -> Actor:
    return Actor(user_id=uuid4(), name="Sol Superadmin", role=Role.SUPERADMIN)


@pytest.fixture
def make_profile(settings: Settings):
    """Build a profile with every government number on file (monthly 25,000 by default)."""

    def _make(
        employee_id=None,
        salary_type: str = "monthly",
        basic_salary: str | None = "25000",
        **fields,
    ) -> EmployeePayrollInfo:
        values = dict(GOVERNMENT_IDS)
        values.update(fields)
        values.setdefault("effective_date", date(2024, 1, 1))
        return EmployeePayrollInfo.build(
            employee_id=employee_id or uuid4(),
            salary_type=salary_type,
            basic_salary=Decimal(basic_salary) if basic_salary is not None else None,
            settings=settings,
            **values,
        )

    return _make


@pytest.fixture
def make_attendance():
    def _make(employee_id, present_days: str = "11", **fields) -> AttendanceSummary:
        return AttendanceSummary(
            employee_id=employee_id, present_days=Decimal(present_days), **fields
        )

    return _make


@pytest.fixture
def make_leave():
    def _make(employee_id, paid: str = "0", unpaid: str = "0") -> LeaveSummary:
        return LeaveSummary(
            employee_id=employee_id,
            paid_leave_days=Decimal(paid),
            unpaid_leave_days=Decimal(unpaid),
        )

    return _make
