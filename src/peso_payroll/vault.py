"""Tokenized storage of bank and e-wallet account numbers.

Rows keep an opaque token plus the last four digits. The clear value only
comes back through an explicit `reveal(vault)` call.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@runtime_checkable
class AccountVault(Protocol):
    """Tokenization service holding clear account numbers."""

    def tokenize(self, account_number: str) -> str:
        ...

    def reveal(self, token: str) -> str:
        ...


class InMemoryAccountVault:
    """Process-local vault for development and tests."""

    def __init__(self, values: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(values or {})

    def tokenize(self, account_number: str) -> str:
        token = f"tok_{secrets.token_hex(12)}"
        self._values[token] = account_number
        return token

    def reveal(self, token: str) -> str:
        try:
            return self._values[token]
        except KeyError:
            raise LookupError(f"Unknown account token {token!r}") from None


@dataclass(frozen=True)
class SensitiveAccount:
    """Account reference with masked display; never decrypts implicitly."""

    token: str
    last4: str

    @classmethod
    def protect(cls, account_number: str, vault: AccountVault) -> SensitiveAccount:
        digits = "".join(ch for ch in account_number if ch.isalnum())
        return cls(token=vault.tokenize(account_number), last4=digits[-4:])

    def masked(self) -> str:
        return f"****{self.last4}"

    def reveal(self, vault: AccountVault) -> str:
        return vault.reveal(self.token)

    def __str__(self) -> str:
        return self.masked()

    def __repr__(self) -> str:
        return f"SensitiveAccount({self.masked()})"
