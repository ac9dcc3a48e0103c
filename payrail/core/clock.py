from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Source of timestamps for ledger and payment rows.

    now() MUST return a timezone-aware UTC datetime.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Return the current UTC datetime."""


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Test clock with a controllable timestamp. Not thread-safe."""

    def __init__(self, fixed_time: datetime) -> None:
        self._validate_utc(fixed_time)
        self._fixed_time = fixed_time

    def now(self) -> datetime:
        return self._fixed_time

    def set_time(self, new_time: datetime) -> None:
        self._validate_utc(new_time)
        self._fixed_time = new_time

    def _validate_utc(self, dt: datetime) -> None:
        if dt.utcoffset() is None or dt.utcoffset().total_seconds() != 0:
            raise ValueError(f"datetime must be UTC, got tzinfo={dt.tzinfo}")
