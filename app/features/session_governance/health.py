"""
Session health classifier.

Health is recomputed from raw lifecycle counters and recent delivery stats on
every call rather than stepped through a stored state machine. The only state
carried between calls is the strike/cooldown bookkeeping
(strike_count, last_strike_at, last_strike_reason, cooldown_until).

Cooldowns lapse lazily: an expired cooldown_until is cleared by the next
evaluation, not by a background sweep.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.config import settings
from app.features.session_governance.coercion import parse_datetime
from app.features.session_governance.domain.models import (
    HealthComputationResult,
    RecentStats,
    SessionHealthStatus,
    SessionRecord,
)
from app.infrastructure.observability.logging import get_logger
from app.utils.clock import utc_now

logger = get_logger(__name__)

STRIKE_REASON_AUTH_FAILURE = "auth_failure_pattern"
STRIKE_REASON_RESET_TIMEOUT = "reset_auth_timeout"

RESET_STUCK_STATUSES = ("initializing", "reconnecting", "auth_failed")
TRANSITIONAL_STATUSES = ("reconnecting", "initializing", "authenticated")
DISCONNECTED_STATUSES = ("disconnected", "auth_failed")

# Thresholds on recent stats / lifecycle counters
AUTH_FAILURE_COUNT_THRESHOLD = 2
DISCONNECT_BURST_THRESHOLD = 3
RECONNECT_RISK_THRESHOLD = 5
FAILED_SENT_MIN = 20
FAILED_RATIO_THRESHOLD = 0.35
FAILED_ABSOLUTE_THRESHOLD = 15
READ_DELIVERED_MIN = 15
READ_RATIO_THRESHOLD = 0.2

# (status, score, reason) per classification branch
HEALTH_BLOCKED = ("blocked", 0, "Blocked by repeated strike pattern")
HEALTH_COOLDOWN = ("cooldown", 20, "Temporary 24h cooldown active")
HEALTH_HEALTHY = ("healthy", 90, "Connected with stable metrics")
HEALTH_RISKY = ("risky", 35, "High failure/disconnect trend detected")
HEALTH_OBSERVE = ("warning", 60, "Session requires manual observation")
HEALTH_NOT_CONNECTED = ("warning", 50, "Session is not connected")
HEALTH_UNKNOWN = ("unknown", 0, "No health signals available")


@dataclass(slots=True)
class HealthSignals:
    """Boolean risk patterns derived from a session and its recent stats."""

    recent_auth_failure: bool
    recent_disconnect: bool
    recent_reset: bool
    auth_failure_pattern: bool
    reset_stuck_pattern: bool
    disconnect_burst: bool
    delivery_failures_high: bool
    read_ratio_low: bool
    failed_ratio: float
    read_ratio: float


def _within(timestamp: datetime | None, now: datetime, window: timedelta) -> bool:
    return timestamp is not None and now - timestamp <= window


def detect_signals(session: SessionRecord, stats: RecentStats, now: datetime) -> HealthSignals:
    """Evaluate every risk pattern for a session at ``now``."""
    status = session.status

    recent_auth_failure = _within(
        session.last_auth_failure_at,
        now,
        timedelta(hours=settings.HEALTH_RECENT_AUTH_FAILURE_HOURS),
    )
    recent_disconnect = _within(
        session.last_disconnect_at,
        now,
        timedelta(hours=settings.HEALTH_RECENT_DISCONNECT_HOURS),
    )
    recent_reset = _within(
        session.last_reset_auth_at,
        now,
        timedelta(minutes=settings.HEALTH_RESET_STUCK_MINUTES),
    )

    failed_ratio = stats.failed_24h / stats.sent_24h if stats.sent_24h > 0 else 0.0
    read_ratio = stats.read_24h / stats.delivered_24h if stats.delivered_24h > 0 else 0.0

    return HealthSignals(
        recent_auth_failure=recent_auth_failure,
        recent_disconnect=recent_disconnect,
        recent_reset=recent_reset,
        auth_failure_pattern=recent_auth_failure
        and (
            session.auth_failure_count >= AUTH_FAILURE_COUNT_THRESHOLD or status == "auth_failed"
        ),
        reset_stuck_pattern=recent_reset
        and session.reset_auth_count >= 1
        and status in RESET_STUCK_STATUSES,
        disconnect_burst=recent_disconnect
        and session.disconnect_count >= DISCONNECT_BURST_THRESHOLD,
        delivery_failures_high=(
            stats.sent_24h >= FAILED_SENT_MIN and failed_ratio >= FAILED_RATIO_THRESHOLD
        )
        or stats.failed_24h >= FAILED_ABSOLUTE_THRESHOLD,
        read_ratio_low=stats.delivered_24h >= READ_DELIVERED_MIN
        and read_ratio < READ_RATIO_THRESHOLD,
        failed_ratio=failed_ratio,
        read_ratio=read_ratio,
    )


def _classify(
    session: SessionRecord,
    signals: HealthSignals,
    strike_count: int,
    cooldown_active: bool,
) -> tuple[SessionHealthStatus, int, str]:
    status = session.status

    if strike_count >= settings.STRIKE_BLOCK_THRESHOLD:
        return HEALTH_BLOCKED
    if cooldown_active:
        return HEALTH_COOLDOWN
    if (
        status == "connected"
        and not signals.delivery_failures_high
        and not signals.read_ratio_low
        and not signals.disconnect_burst
        and not signals.auth_failure_pattern
    ):
        return HEALTH_HEALTHY
    if (
        signals.delivery_failures_high
        or signals.disconnect_burst
        or signals.auth_failure_pattern
        or session.reconnect_count >= RECONNECT_RISK_THRESHOLD
    ):
        return HEALTH_RISKY
    if status in TRANSITIONAL_STATUSES or signals.read_ratio_low:
        return HEALTH_OBSERVE
    if status in DISCONNECTED_STATUSES:
        return HEALTH_NOT_CONNECTED
    return HEALTH_UNKNOWN


def compute_session_health(
    session: Any,
    recent_stats: Any,
    *,
    now: datetime | None = None,
    force_cooldown: bool = False,
    strike_reason: str | None = None,
) -> HealthComputationResult:
    """
    Derive a session's health status and update its strike/cooldown bookkeeping.

    Args:
        session: SessionRecord, mapping (snake or camelCase keys) or row object
        recent_stats: RecentStats or mapping of 24h sent/delivered/read/failed
        now: Evaluation time (defaults to current UTC time)
        force_cooldown: Trigger a strike + cooldown regardless of patterns
        strike_reason: Reason recorded for a triggered strike

    Returns:
        HealthComputationResult: Fields to persist back onto the session
    """
    now = parse_datetime(now) or utc_now()
    record = SessionRecord.coerce(session)
    stats = (
        recent_stats
        if isinstance(recent_stats, RecentStats)
        else RecentStats.model_validate(recent_stats or {})
    )

    signals = detect_signals(record, stats, now)

    strike_count = record.strike_count
    last_strike_at = record.last_strike_at
    last_strike_reason = record.last_strike_reason
    cooldown_until = record.cooldown_until

    triggered = bool(
        force_cooldown or signals.auth_failure_pattern or signals.reset_stuck_pattern
    )
    if triggered:
        default_reason = (
            STRIKE_REASON_RESET_TIMEOUT
            if signals.reset_stuck_pattern
            else STRIKE_REASON_AUTH_FAILURE
        )
        reason = strike_reason or default_reason
        dedup_window = timedelta(minutes=settings.HEALTH_STRIKE_DEDUP_MINUTES)
        duplicated = last_strike_reason == reason and _within(last_strike_at, now, dedup_window)
        if not duplicated:
            strike_count += 1
            last_strike_reason = reason

        next_cooldown = now + timedelta(hours=settings.HEALTH_COOLDOWN_HOURS)
        if cooldown_until is None or cooldown_until < next_cooldown:
            cooldown_until = next_cooldown
        last_strike_at = now

        logger.warning(
            "Session strike recorded" if not duplicated else "Session strike deduplicated",
            session_id=record.id,
            strike_reason=reason,
            strike_count=strike_count,
            cooldown_until=cooldown_until.isoformat(),
        )
    elif cooldown_until is not None and cooldown_until <= now:
        cooldown_until = None

    cooldown_active = cooldown_until is not None and cooldown_until > now
    health_status, health_score, health_reason = _classify(
        record, signals, strike_count, cooldown_active
    )

    if health_status != record.health_status:
        logger.info(
            "Session health changed",
            session_id=record.id,
            previous_status=record.health_status,
            health_status=health_status,
            health_score=health_score,
            failed_ratio=round(signals.failed_ratio, 3),
            read_ratio=round(signals.read_ratio, 3),
        )

    return HealthComputationResult(
        health_status=health_status,
        health_score=health_score,
        health_reason=health_reason,
        health_updated_at=now,
        cooldown_until=cooldown_until,
        strike_count=strike_count,
        last_strike_at=last_strike_at,
        last_strike_reason=last_strike_reason,
    )
