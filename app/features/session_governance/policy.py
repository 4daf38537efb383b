"""
Adaptive send limits policy.

Translates a session's health status into a new SendLimits configuration:
zero while blocked or cooling down, halve on risky, restore defaults after a
zeroing once the session is merely "warning", and grow 15% at most once per
day while healthy.
"""

import math
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from app.config import settings
from app.features.session_governance.coercion import parse_datetime
from app.features.session_governance.domain.models import (
    PolicyAdjustResult,
    SendLimits,
    SessionRecord,
)
from app.features.session_governance.limits import (
    default_send_limits,
    has_zero_field,
    normalize_send_limits,
    zero_send_limits,
)
from app.infrastructure.observability.logging import log_limit_change
from app.utils.clock import utc_now

REASON_BLOCKED = "blocked_policy"
REASON_COOLDOWN = "cooldown_policy"
REASON_RISKY = "risky_reduce"
REASON_RESTORE = "warning_restore_defaults"
REASON_INCREASE = "healthy_increase"

RISKY_RATE_FACTOR = 0.5
RISKY_BUCKET_FACTOR = 0.6
HEALTHY_GROWTH_FACTOR = 1.15


def _scale(
    seed: SendLimits, factors: tuple[float, float, float, float], rounding: Callable
) -> SendLimits:
    tokens_factor, bucket_factor, daily_factor, hourly_factor = factors
    return normalize_send_limits(
        {
            "tokens_per_minute": rounding(seed.tokens_per_minute * tokens_factor),
            "bucket_size": rounding(seed.bucket_size * bucket_factor),
            "daily_max": rounding(seed.daily_max * daily_factor),
            "hourly_max": rounding(seed.hourly_max * hourly_factor),
        }
    )


def _seed(current: SendLimits) -> SendLimits:
    return current if current.tokens_per_minute > 0 else default_send_limits()


def policy_adjust_limits(session: Any, *, now: datetime | None = None) -> PolicyAdjustResult:
    """
    Compute the send limits a session should run with given its health.

    Args:
        session: SessionRecord, mapping (snake or camelCase keys) or row object
        now: Evaluation time (defaults to current UTC time)

    Returns:
        PolicyAdjustResult: New limits; last_limit_update_at and
        limit_change_reason pass through untouched when nothing changed
    """
    now = parse_datetime(now) or utc_now()
    record = SessionRecord.coerce(session)

    health_status = record.health_status
    cooldown_active = record.cooldown_until is not None and record.cooldown_until > now

    current = normalize_send_limits(record.send_limits)
    target = current
    reason: str | None = None

    if health_status in ("blocked", "cooldown") or cooldown_active:
        target = zero_send_limits()
        reason = REASON_BLOCKED if health_status == "blocked" else REASON_COOLDOWN
    elif health_status == "risky":
        target = _scale(
            _seed(current),
            (RISKY_RATE_FACTOR, RISKY_BUCKET_FACTOR, RISKY_RATE_FACTOR, RISKY_RATE_FACTOR),
            math.floor,
        )
        reason = REASON_RISKY
    elif health_status in ("warning", "unknown"):
        if has_zero_field(current):
            target = default_send_limits()
            reason = REASON_RESTORE
    elif health_status == "healthy":
        last_update = record.last_limit_update_at
        window = timedelta(hours=settings.HEALTHY_LIMIT_UPDATE_HOURS)
        if last_update is None or now - last_update >= window:
            target = _scale(_seed(current), (HEALTHY_GROWTH_FACTOR,) * 4, math.ceil)
            reason = REASON_INCREASE

    changed = target.as_tuple() != current.as_tuple()
    if not changed:
        return PolicyAdjustResult(
            changed=False,
            send_limits=target,
            last_limit_update_at=record.last_limit_update_at,
            limit_change_reason=record.limit_change_reason,
        )

    log_limit_change(
        record.id,
        reason,
        previous=current.model_dump(),
        current=target.model_dump(),
        health_status=health_status,
    )
    return PolicyAdjustResult(
        changed=True,
        send_limits=target,
        last_limit_update_at=now,
        limit_change_reason=reason,
    )
