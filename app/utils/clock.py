"""
Injectable time sources.

Everything time-sensitive in the governance engine takes either a ``now``
value or one of these providers so tests can pin the clock.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]
MillisecondClock = Callable[[], float]


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(UTC)


def monotonic_ms() -> float:
    """Monotonic milliseconds, immune to wall-clock jumps."""
    return time.monotonic() * 1000.0
