"""
Send limits normalization.

Every limits value that reaches the policy or the limiter passes through
normalize_send_limits first, so the cross-field invariants hold everywhere:
hourly_max <= daily_max, daily_max == 0 implies hourly_max == 0, and
tokens_per_minute == 0 implies bucket_size == 0.
"""

import math
from typing import Any

from app.config import settings
from app.features.session_governance.coercion import read_field, to_number
from app.features.session_governance.domain.models import SendLimits

LIMIT_FIELDS = ("tokens_per_minute", "bucket_size", "daily_max", "hourly_max")


def default_send_limits() -> SendLimits:
    return SendLimits(**settings.get_default_send_limits())


def max_send_limits() -> SendLimits:
    return SendLimits(**settings.get_max_send_limits())


def zero_send_limits() -> SendLimits:
    return SendLimits(tokens_per_minute=0, bucket_size=0, daily_max=0, hourly_max=0)


def _clamp(value: float, low: int, high: int) -> int:
    return int(min(high, max(low, math.floor(value))))


def normalize_send_limits(limits: Any) -> SendLimits:
    """
    Clamp a possibly partial limits configuration into a valid SendLimits.

    Args:
        limits: SendLimits, mapping (snake or camelCase keys), object or None

    Returns:
        SendLimits: Sanitized limits; missing or non-finite fields take defaults
    """
    defaults = settings.get_default_send_limits()
    maxima = settings.get_max_send_limits()

    values = {
        field: _clamp(
            to_number(read_field(limits, field), defaults[field]),
            0,
            maxima[field],
        )
        for field in LIMIT_FIELDS
    }

    if values["daily_max"] == 0:
        values["hourly_max"] = 0
    elif values["hourly_max"] > values["daily_max"]:
        values["hourly_max"] = values["daily_max"]

    if values["tokens_per_minute"] == 0:
        values["bucket_size"] = 0
    elif values["bucket_size"] == 0:
        values["bucket_size"] = min(values["tokens_per_minute"], defaults["bucket_size"])

    return SendLimits(**values)


def has_zero_field(limits: SendLimits) -> bool:
    return 0 in limits.as_tuple()
