"""Time source abstraction."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""


class SystemClock:
    """Wall clock backed by ``datetime.now``."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
