"""Time source abstraction."""

from datetime import datetime
from typing import Protocol

from posterminal.utils import now


class Clock(Protocol):
    """Supplies the current time as a timezone-aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system wall clock."""

    def now(self) -> datetime:
        return now()
