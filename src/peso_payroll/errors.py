"""Error taxonomy for payroll operations."""

from __future__ import annotations

from typing import Any


class PayrollError(Exception):
    """Base class for payroll ledger errors."""


class ValidationFailure(PayrollError):
    """Malformed or missing input."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class StateConflict(PayrollError):
    """Operation not allowed in the entity's current state."""


class InvalidTransitionError(StateConflict):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConcurrentModificationError(StateConflict):
    """Optimistic lock lost: another writer changed the row first."""

    def __init__(self, entity: str, entity_id: Any, detail: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        msg = f"{entity} {entity_id} was modified concurrently"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class AuthorizationError(PayrollError):
    """The asserted actor role may not perform the action."""

    def __init__(self, role: str, action: str):
        self.role = role
        self.action = action
        super().__init__(f"Role '{role}' is not allowed to {action}")


class RetryableTransportFailure(PayrollError):
    """Bank or e-wallet provider error; the payment may be retried."""

    def __init__(
        self,
        provider: str,
        message: str,
        provider_response: dict[str, Any] | None = None,
    ):
        self.provider = provider
        self.provider_response = provider_response or {}
        super().__init__(f"{provider}: {message}")


class IntegrityViolation(PayrollError):
    """An invariant is broken. Blocks approval until resolved."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.details = details or {}
        super().__init__(message)


class EntityNotFoundError(PayrollError, LookupError):
    """Referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
