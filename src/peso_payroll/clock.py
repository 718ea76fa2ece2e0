"""Injectable time sources."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Protocol, runtime_checkable
from zoneinfo import ZoneInfo


@runtime_checkable
class Clock(Protocol):
    """Source of the current time for business logic."""

    def now(self) -> datetime:
        """Current timezone-aware datetime."""
        ...

    def today(self) -> date:
        """Current calendar date in the payroll timezone."""
        ...


class SystemClock:
    """Wall clock in the configured payroll timezone."""

    def __init__(self, tz: str = "Asia/Manila") -> None:
        self._tz = ZoneInfo(tz)

    def now(self) -> datetime:
        return datetime.now(self._tz)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Clock frozen at a given instant; used in tests and replays."""

    def __init__(self, at: datetime) -> None:
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._at = at

    def now(self) -> datetime:
        return self._at

    def today(self) -> date:
        return self._at.date()

    def advance(self, delta: timedelta) -> None:
        """Move the clock forward."""
        self._at = self._at + delta

    def set(self, at: datetime) -> None:
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._at = at
