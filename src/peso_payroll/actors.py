"""Asserted actor identity for state transitions.

The ledger never authenticates. Callers pass the actor they have already
authenticated, and the ledger records it and checks the role gate.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from peso_payroll.errors import AuthorizationError


class Role(str, Enum):
    """Roles that may act on payroll records."""

    PAYROLL_OFFICER = "payroll_officer"
    HR_MANAGER = "hr_manager"
    OFFICE_ADMIN = "office_admin"
    SUPERADMIN = "superadmin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """A user (or the system) performing an action."""

    user_id: UUID | None
    name: str
    role: Role

    @classmethod
    def system(cls, name: str = "system") -> Actor:
        return cls(user_id=None, name=name, role=Role.SYSTEM)

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM

    @property
    def actor_type(self) -> str:
        """Audit actor type (system/user)."""
        return "system" if self.is_system else "user"

    def require(self, allowed: set[Role] | frozenset[Role], action: str) -> None:
        """Raise AuthorizationError unless the actor holds an allowed role.

        Superadmin passes every gate.
        """
        if self.role == Role.SUPERADMIN or self.role in allowed:
            return
        raise AuthorizationError(self.role.value, action)
