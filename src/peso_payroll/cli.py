"""Operational command line for the payroll ledger.

Usage:
    python -m peso_payroll init-db
    python -m peso_payroll seed-components
    python -m peso_payroll period-summary <period_id> [--json]
    python -m peso_payroll bank-file <batch_id> --output FILE --accounts accounts.json --name NAME
    python -m peso_payroll verify-payslip <payslip_id>
    python -m peso_payroll flag-loan-defaults [--as-of YYYY-MM-DD]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, Callable
from uuid import UUID

from peso_payroll.actors import Actor, Role
from peso_payroll.database import create_schema, dispose, get_session, init_db
from peso_payroll.errors import PayrollError
from peso_payroll.models import BankFileBatch
from peso_payroll.services.catalog_service import CatalogService
from peso_payroll.services.disbursement_service import DisbursementService
from peso_payroll.services.loan_service import LoanService
from peso_payroll.services.payslip_service import PayslipService
from peso_payroll.services.period_service import PeriodService
from peso_payroll.vault import InMemoryAccountVault

logger = logging.getLogger(__name__)


def parse_uuid(s: str) -> UUID:
    return UUID(s)


def parse_date(s: str) -> date:
    return date.fromisoformat(s)


def _json_default(value: Any) -> str:
    return str(value)


class PayrollCli:
    """Payroll ledger command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="python -m peso_payroll",
            description="Payroll ledger operational tools",
        )
        parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create the database schema")
        subparsers.add_parser("seed-components", help="Insert the system salary components")

        summary = subparsers.add_parser("period-summary", help="Show a payroll period summary")
        summary.add_argument("period_id", type=parse_uuid)
        summary.add_argument("--json", action="store_true", help="Print JSON")

        bank = subparsers.add_parser("bank-file", help="Generate a bank batch transfer file")
        bank.add_argument("batch_id", type=parse_uuid)
        bank.add_argument("--output", type=Path, required=True, help="File to write")
        bank.add_argument(
            "--accounts",
            type=Path,
            required=True,
            help="JSON object mapping account tokens to account numbers",
        )
        bank.add_argument(
            "--role",
            choices=[r.value for r in Role if r is not Role.SYSTEM],
            default=Role.PAYROLL_OFFICER.value,
            help="Role of the operator generating the file",
        )
        bank.add_argument("--name", required=True, help="Operator name")
        bank.add_argument("--user-id", type=parse_uuid, default=None, help="Operator user id")

        verify = subparsers.add_parser("verify-payslip", help="Check a payslip signature")
        verify.add_argument("payslip_id", type=parse_uuid)

        defaults = subparsers.add_parser(
            "flag-loan-defaults", help="Mark overdue installments and default loans"
        )
        defaults.add_argument(
            "--as-of", type=parse_date, default=None, help="Evaluation date (default: today)"
        )
        return parser

    def run(self, args: list[str] | None = None) -> int:
        parsed = self.parser.parse_args(args)
        logging.basicConfig(
            level=logging.DEBUG if parsed.verbose else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[[argparse.Namespace], Any]] = {
            "init-db": self._cmd_init_db,
            "seed-components": self._cmd_seed_components,
            "period-summary": self._cmd_period_summary,
            "bank-file": self._cmd_bank_file,
            "verify-payslip": self._cmd_verify_payslip,
            "flag-loan-defaults": self._cmd_flag_loan_defaults,
        }
        try:
            return asyncio.run(self._run(handlers[parsed.command], parsed))
        except (PayrollError, OSError, ValueError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1

    async def _run(self, handler: Callable[[argparse.Namespace], Any], args) -> int:
        try:
            return await handler(args)
        finally:
            await dispose()

    async def _cmd_init_db(self, args: argparse.Namespace) -> int:
        engine, _ = init_db()
        await create_schema(engine)
        print("Schema created.")
        return 0

    async def _cmd_seed_components(self, args: argparse.Namespace) -> int:
        async with get_session() as session:
            added = await CatalogService(session).seed_components(Actor.system("cli"))
        print(f"Seeded {len(added)} component(s).")
        return 0

    async def _cmd_period_summary(self, args: argparse.Namespace) -> int:
        async with get_session() as session:
            summary = await PeriodService(session).summary(args.period_id)
        if args.json:
            print(json.dumps(summary, indent=2, default=_json_default))
            return 0
        print(f"Period {summary['period_number']} ({summary['status']})")
        print(f"  Employees:      {summary['total_employees']:>12}")
        print(f"  Gross pay:      {summary['total_gross_pay']:>12,.2f}")
        print(f"  Deductions:     {summary['total_deductions']:>12,.2f}")
        print(f"  Net pay:        {summary['total_net_pay']:>12,.2f}")
        print(f"  Adjustments:    {summary['total_adjustments']:>12,.2f}")
        print(f"  Open exceptions:{summary['open_exceptions']:>12}")
        return 0

    async def _cmd_bank_file(self, args: argparse.Namespace) -> int:
        accounts = json.loads(args.accounts.read_text())
        vault = InMemoryAccountVault(accounts)
        actor = Actor(user_id=args.user_id, name=args.name, role=Role(args.role))
        async with get_session() as session:
            service = DisbursementService(session)
            content = await service.generate_bank_file(
                args.batch_id, actor, vault
            )
            batch = await session.get(BankFileBatch, args.batch_id)
            errors = list(batch.validation_errors or [])
        args.output.write_bytes(content)
        print(f"Wrote {len(content)} bytes to {args.output}")
        if errors:
            for error in errors:
                print(f"  invalid: {error}", file=sys.stderr)
            return 1
        return 0

    async def _cmd_verify_payslip(self, args: argparse.Namespace) -> int:
        async with get_session() as session:
            valid = await PayslipService(session).verify(args.payslip_id)
        print("Signature OK" if valid else "Signature INVALID")
        return 0 if valid else 1

    async def _cmd_flag_loan_defaults(self, args: argparse.Namespace) -> int:
        async with get_session() as session:
            service = LoanService(session)
            as_of = args.as_of or service.clock.today()
            outcome = await service.flag_defaults(as_of, Actor.system("cli"))
        print(json.dumps(outcome, indent=2, default=_json_default))
        return 0


def main() -> int:
    """CLI entry point."""
    return PayrollCli().run()


if __name__ == "__main__":
    sys.exit(main())
