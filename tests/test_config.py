"""Tests for settings, actors, money helpers, the account vault and the CLI parser."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from peso_payroll.actors import Actor, Role
from peso_payroll.cli import PayrollCli
from peso_payroll.clock import Clock, FixedClock, SystemClock
from peso_payroll.config import Settings
from peso_payroll.errors import (
    AuthorizationError,
    ConcurrentModificationError,
    EntityNotFoundError,
    RetryableTransportFailure,
    StateConflict,
)
from peso_payroll.money import money, money_str, percent_of, sum_money, to_decimal
from peso_payroll.vault import AccountVault, InMemoryAccountVault, SensitiveAccount

DB_URL = "sqlite+aiosqlite:///:memory:"


class TestSettings:
    """Test settings defaults and validation."""

    def test_defaults(self):
        """Test the semi-monthly defaults."""
        settings = Settings(database_url=DB_URL, engine_version="1.0.0")
        assert settings.periods_per_month == 2
        assert settings.adjustment_approval_threshold == Decimal("1000.00")
        assert settings.max_payment_retries == 3
        assert settings.unclaimed_deadline_days == 30
        assert settings.timezone == "Asia/Manila"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"pay_periods_per_year": 26},
            {"pay_periods_per_year": 0},
            {"working_days_per_month": 0},
            {"hours_per_day": -1},
            {"max_payment_retries": 0},
            {"adjustment_approval_threshold": Decimal("-1")},
            {"loan_default_grace_days": -1},
            {"audit_retention_years": 0},
        ],
    )
    def test_invalid_values(self, overrides):
        """Test that inconsistent settings are refused."""
        with pytest.raises(ValueError):
            Settings(database_url=DB_URL, engine_version="1.0.0", **overrides)

    def test_from_env(self, monkeypatch):
        """Test loading from environment variables."""
        monkeypatch.setenv("DATABASE_URL", DB_URL)
        monkeypatch.setenv("ENGINE_VERSION", "2.1.0")
        monkeypatch.setenv("PAY_PERIODS_PER_YEAR", "12")
        monkeypatch.setenv("ADJUSTMENT_APPROVAL_THRESHOLD", "2500")
        monkeypatch.setenv("DEBUG", "true")

        settings = Settings.from_env()

        assert settings.database_url == DB_URL
        assert settings.engine_version == "2.1.0"
        assert settings.periods_per_month == 1
        assert settings.adjustment_approval_threshold == Decimal("2500")
        assert settings.debug is True


class TestActors:
    """Test role gates on actors."""

    def test_require(self):
        """Test allowed, refused and superadmin roles."""
        officer = Actor(uuid4(), "Paz", Role.PAYROLL_OFFICER)
        officer.require({Role.PAYROLL_OFFICER}, "submit")

        with pytest.raises(AuthorizationError) as exc_info:
            officer.require({Role.OFFICE_ADMIN}, "lock periods")
        assert str(exc_info.value) == "Role 'payroll_officer' is not allowed to lock periods"

        Actor(uuid4(), "Sol", Role.SUPERADMIN).require({Role.OFFICE_ADMIN}, "lock periods")

    def test_system_actor(self):
        """Test the system actor has no user id."""
        system = Actor.system()
        assert system.user_id is None
        assert system.is_system is True
        assert system.actor_type == "system"
        assert Actor(uuid4(), "Paz", Role.PAYROLL_OFFICER).actor_type == "user"


class TestMoney:
    """Test centavo arithmetic."""

    def test_half_up_rounding(self):
        """Test rounding to centavos, half up."""
        assert money(Decimal("1.005")) == Decimal("1.01")
        assert money(Decimal("1.004")) == Decimal("1.00")
        assert money("2") == Decimal("2.00")

    def test_to_decimal(self):
        """Test coercion without float artifacts."""
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal(None) == Decimal("0")
        assert to_decimal(5) == Decimal("5")

    def test_helpers(self):
        """Test sum, percentage and serialization helpers."""
        assert sum_money(["0.10", Decimal("0.20"), 1]) == Decimal("1.30")
        assert percent_of(Decimal("25000"), Decimal("2.75")) == Decimal("687.50")
        assert money_str(Decimal("5")) == "5.00"


class TestVault:
    """Test tokenized account storage."""

    def test_protect_and_reveal(self):
        """Test that only the token and last four digits are kept."""
        vault = InMemoryAccountVault()
        account = SensitiveAccount.protect("0012-3456-7890", vault)

        assert account.last4 == "7890"
        assert account.token.startswith("tok_")
        assert str(account) == "****7890"
        assert "3456" not in repr(account)
        assert account.reveal(vault) == "0012-3456-7890"
        assert isinstance(vault, AccountVault)

    def test_unknown_token(self):
        """Test revealing an unknown token."""
        with pytest.raises(LookupError):
            InMemoryAccountVault().reveal("tok_missing")


class TestClock:
    """Test time sources."""

    def test_fixed_clock(self):
        """Test a frozen clock that can be advanced."""
        clock = FixedClock(datetime(2025, 1, 16, 2, 0))
        assert clock.now().tzinfo is timezone.utc
        assert isinstance(clock, Clock)

        clock.advance(timedelta(days=1))
        assert clock.today().day == 17

    def test_system_clock_uses_manila_time(self):
        """Test the default timezone offset."""
        assert SystemClock().now().utcoffset() == timedelta(hours=8)


class TestErrors:
    """Test error taxonomy."""

    def test_hierarchy(self):
        """Test catchable base classes."""
        assert isinstance(ConcurrentModificationError("Period", 1), StateConflict)
        assert isinstance(EntityNotFoundError("Period", 1), LookupError)

    def test_transport_failure(self):
        """Test provider name and response on transport failures."""
        failure = RetryableTransportFailure("gcash", "timeout")
        assert str(failure) == "gcash: timeout"
        assert failure.provider_response == {}


class TestCliParser:
    """Test command line parsing."""

    def test_no_command_prints_help(self, capsys):
        """Test that running without a command fails with help."""
        assert PayrollCli().run([]) == 1
        assert "period-summary" in capsys.readouterr().out

    def test_bank_file_arguments(self):
        """Test bank-file defaults to the payroll officer role."""
        batch_id = uuid4()
        args = PayrollCli().parser.parse_args(
            [
                "bank-file",
                str(batch_id),
                "--output",
                "out.csv",
                "--accounts",
                "accounts.json",
                "--name",
                "Paz",
            ]
        )
        assert args.batch_id == batch_id
        assert args.role == "payroll_officer"
        assert args.user_id is None

    def test_system_role_not_accepted(self):
        """Test that operators cannot assert the system role."""
        with pytest.raises(SystemExit):
            PayrollCli().parser.parse_args(
                [
                    "bank-file",
                    str(uuid4()),
                    "--output",
                    "out.csv",
                    "--accounts",
                    "a.json",
                    "--name",
                    "x",
                    "--role",
                    "system",
                ]
            )

    def test_flag_loan_defaults_date(self):
        """Test the --as-of date argument."""
        args = PayrollCli().parser.parse_args(["flag-loan-defaults", "--as-of", "2025-03-01"])
        assert args.as_of.isoformat() == "2025-03-01"
