"""Rolling day/hour send counters with lazy window rollover."""

import math
from datetime import datetime, timedelta
from typing import Any

from app.features.session_governance.coercion import parse_datetime, read_field, to_number
from app.features.session_governance.domain.models import (
    CounterScope,
    CountersWindow,
    CountersWindowResult,
)
from app.utils.clock import utc_now

DAY_WINDOW = timedelta(hours=24)
HOUR_WINDOW = timedelta(hours=1)

_WINDOWS: dict[str, timedelta] = {"day": DAY_WINDOW, "hour": HOUR_WINDOW}


def _roll(
    raw_count: Any, raw_start: Any, window: timedelta, now: datetime
) -> tuple[int, datetime, bool]:
    start = parse_datetime(raw_start)
    parsed_count = to_number(raw_count, 0)
    count = max(0, math.floor(parsed_count))

    if start is None or now - start >= window:
        return 0, now, True

    # A sanitized count (negative, fractional, NaN) still needs a write-back
    return count, start, count != parsed_count


def normalize_counters_window(
    counters_window: Any, now: datetime | None = None
) -> CountersWindowResult:
    """
    Reset the day and/or hour counter when its window has elapsed.

    Args:
        counters_window: CountersWindow, mapping (snake or camelCase keys) or None
        now: Reference time (defaults to current UTC time)

    Returns:
        CountersWindowResult: Normalized window and whether anything changed,
        so callers can skip a persistence write when nothing did
    """
    now = parse_datetime(now) or utc_now()

    day_count, day_start, day_changed = _roll(
        read_field(counters_window, "day_count"),
        read_field(counters_window, "day_start"),
        DAY_WINDOW,
        now,
    )
    hour_count, hour_start, hour_changed = _roll(
        read_field(counters_window, "hour_count"),
        read_field(counters_window, "hour_start"),
        HOUR_WINDOW,
        now,
    )

    return CountersWindowResult(
        value=CountersWindow(
            day_count=day_count,
            day_start=day_start,
            hour_count=hour_count,
            hour_start=hour_start,
        ),
        changed=day_changed or hour_changed,
    )


def get_window_retry_after_ms(
    counters_window: Any, scope: CounterScope, now: datetime | None = None
) -> int:
    """Milliseconds until the given window rolls over (0 if it has no start)."""
    now = parse_datetime(now) or utc_now()
    start = parse_datetime(read_field(counters_window, f"{scope}_start"))
    if start is None:
        return 0
    remaining = start + _WINDOWS[scope] - now
    return max(0, math.ceil(remaining.total_seconds() * 1000))
