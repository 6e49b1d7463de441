"""
Core Module - Ledger Clock.

============================================================
RESPONSIBILITY
============================================================
Provides a testable clock abstraction for the ledger.

- Maturity and penalty quotes are computed against an injected clock
- Block timestamps are converted to UTC datetimes in one place
- Enables deterministic tests around the 60-day maturity boundary

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only - no timezone conversions in business logic
- Injected, never read from module-level state
- Thread-safe

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
import threading
import time


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the ledger clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        pass

    def format_iso(self, dt: Optional[datetime] = None) -> str:
        """Format datetime as ISO 8601."""
        dt = dt or self.now()
        return dt.isoformat()


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """
    Production clock using actual system time.

    All times are in UTC.
    """

    def now(self) -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        return time.time()


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Allows time manipulation for deterministic tests.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = ensure_utc(initial_time or datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Get current (mocked) datetime."""
        with self._lock:
            return self._time

    def timestamp(self) -> float:
        """Get current (mocked) timestamp."""
        with self._lock:
            return self._time.timestamp()

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            self._time = ensure_utc(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


# ============================================================
# TIMESTAMP UTILITIES
# ============================================================

def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_block_timestamp(value: Union[int, float, str, datetime]) -> datetime:
    """
    Convert a block timestamp to a UTC datetime.

    Accepts Unix seconds (int, float or numeric string), ISO 8601
    strings and datetimes.

    Raises:
        ValueError: If the value cannot be interpreted
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid block timestamp: {value!r}")
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Negative block timestamp: {value}")
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"Invalid block timestamp: {value!r}")


def to_unix(dt: datetime) -> int:
    """Convert datetime to whole Unix seconds."""
    return int(ensure_utc(dt).timestamp())


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "from_block_timestamp",
    "to_unix",
]
