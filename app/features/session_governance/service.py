"""
Session governance service - wires classifier, policy, counters and limiter.

Scheduler side (periodic or on lifecycle events):
    evaluation = governance.evaluate_session(session, recent_stats)
    storage.update_session(session_id, evaluation.persisted_fields())

Send side (before every outbound message):
    decision = governance.check_send(session)
    if not decision.allowed:
        defer(decision.retry_after_ms)
    else:
        send(...)
        counters = governance.record_send(decision.counters_window)
"""

from datetime import datetime
from typing import Any

from app.features.session_governance.coercion import to_count, to_number
from app.features.session_governance.counters import (
    get_window_retry_after_ms,
    normalize_counters_window,
)
from app.features.session_governance.domain.models import (
    CountersWindow,
    GovernanceEvaluation,
    SendDecision,
    SendLimits,
    SessionRecord,
)
from app.features.session_governance.health import compute_session_health
from app.features.session_governance.limits import normalize_send_limits
from app.features.session_governance.policy import policy_adjust_limits
from app.features.session_governance.rate_limiter import SessionTokenBucketLimiter
from app.infrastructure.observability.logging import get_logger
from app.utils.clock import Clock, utc_now

logger = get_logger(__name__)


class SessionGovernanceService:
    """
    Admission-control loop for outbound sessions.

    Owns one limiter instance; callers that shard sessions across processes
    construct one service per shard.
    """

    def __init__(
        self,
        limiter: SessionTokenBucketLimiter | None = None,
        clock: Clock | None = None,
    ):
        self.limiter = limiter or SessionTokenBucketLimiter()
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    def evaluate_session(
        self,
        session: Any,
        recent_stats: Any,
        *,
        force_cooldown: bool = False,
        strike_reason: str | None = None,
    ) -> GovernanceEvaluation:
        """
        Reclassify a session's health, adjust its limits and sync the limiter.

        Args:
            session: SessionRecord, mapping or row object
            recent_stats: 24h sent/delivered/read/failed counts
            force_cooldown: Force a strike + cooldown (e.g. provider ban notice)
            strike_reason: Reason recorded for a forced strike

        Returns:
            GovernanceEvaluation: Health and limits results to persist
        """
        now = self.now()
        record = SessionRecord.coerce(session)

        health = compute_session_health(
            record,
            recent_stats,
            now=now,
            force_cooldown=force_cooldown,
            strike_reason=strike_reason,
        )
        updated = record.model_copy(
            update={
                "health_status": health.health_status,
                "health_score": health.health_score,
                "health_reason": health.health_reason,
                "health_updated_at": health.health_updated_at,
                "cooldown_until": health.cooldown_until,
                "strike_count": health.strike_count,
                "last_strike_at": health.last_strike_at,
                "last_strike_reason": health.last_strike_reason,
            }
        )
        limits = policy_adjust_limits(updated, now=now)

        limiter_configured = False
        in_sync = bool(record.id) and self._limiter_in_sync(record.id, limits.send_limits)
        if record.id and (limits.changed or not in_sync):
            self.limiter.configure_session(record.id, limits.send_limits)
            limiter_configured = True

        return GovernanceEvaluation(
            session_id=record.id,
            health=health,
            limits=limits,
            limiter_configured=limiter_configured,
        )

    def _limiter_in_sync(self, session_id: str, send_limits: SendLimits) -> bool:
        """Whether the limiter bucket already runs the given rate and burst size."""
        state = self.limiter.get_bucket_state(session_id)
        if state is None:
            return False
        return (state.tokens_per_minute, state.bucket_size) == (
            send_limits.tokens_per_minute,
            send_limits.bucket_size,
        )

    def check_send(self, session: Any, tokens: Any = 1) -> SendDecision:
        """
        Decide whether a session may send now.

        Daily/hourly caps are checked against the rolled-over counters first and
        never consume tokens; only then is the token bucket asked.

        Args:
            session: SessionRecord, mapping or row object
            tokens: Messages about to be sent

        Returns:
            SendDecision: allowed flag, retry hint, denial reason and the
            normalized counters window the caller should persist if changed
        """
        now = self.now()
        record = SessionRecord.coerce(session)
        counters = normalize_counters_window(record.counters_window, now)
        window = counters.value
        limits = normalize_send_limits(record.send_limits)
        tokens = max(0.0, to_number(tokens, 1))

        cap_checks = (
            ("daily_cap", "day", window.day_count, limits.daily_max),
            ("hourly_cap", "hour", window.hour_count, limits.hourly_max),
        )
        for reason, scope, count, cap in cap_checks:
            if count + tokens > cap:
                retry_after_ms = get_window_retry_after_ms(window, scope, now)
                logger.debug(
                    "Send denied by window cap",
                    session_id=record.id,
                    reason=reason,
                    count=count,
                    cap=cap,
                    retry_after_ms=retry_after_ms,
                )
                return SendDecision(
                    allowed=False,
                    retry_after_ms=retry_after_ms,
                    reason=reason,
                    counters_window=window,
                    counters_changed=counters.changed,
                )

        result = self.limiter.try_consume(record.id or "", tokens)
        return SendDecision(
            allowed=result.allowed,
            retry_after_ms=result.retry_after_ms,
            reason=None if result.allowed else "rate_limited",
            counters_window=window,
            counters_changed=counters.changed,
        )

    def record_send(self, counters_window: Any, count: Any = 1) -> CountersWindow:
        """Roll the counters window over if needed and add ``count`` sends."""
        window = normalize_counters_window(counters_window, self.now()).value
        increment = to_count(count)
        return window.model_copy(
            update={
                "day_count": window.day_count + increment,
                "hour_count": window.hour_count + increment,
            }
        )

    def forget_session(self, session_id: str) -> None:
        """Drop runtime limiter state for a deleted session."""
        self.limiter.reset_session(session_id)
        logger.info("Session limiter state discarded", session_id=session_id)
