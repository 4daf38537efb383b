"""
Session Token Bucket Limiter - in-memory per-session send admission.

This module gates every individual outbound send for a session:
- Continuous refill at tokens_per_minute, bursts up to bucket_size
- Deny-by-default for sessions that were never configured
- Advisory retry_after_ms so the sender can schedule the next attempt

Design:
- Token level is a float; configured rate and size stay integers
- Reconfiguration refills at the old rate before installing the new one
- One lock per session; different sessions never contend
- State is process-local and is lost on restart (limits are re-pushed
  from the persisted session record by the governance service)

Usage:
    from app.features.session_governance.rate_limiter import SessionTokenBucketLimiter

    limiter = SessionTokenBucketLimiter()
    limiter.configure_session("session-123", {"tokens_per_minute": 6, "bucket_size": 10})

    result = limiter.try_consume("session-123")
    if not result.allowed:
        defer_send(result.retry_after_ms)
"""

import math
import threading
from dataclasses import dataclass, replace
from typing import Any

from app.config import settings
from app.features.session_governance.coercion import read_field, to_number
from app.features.session_governance.domain.models import TokenConsumeResult
from app.infrastructure.observability.logging import get_logger
from app.utils.clock import MillisecondClock, monotonic_ms

logger = get_logger(__name__)

MS_PER_MINUTE = 60_000


@dataclass(slots=True)
class BucketState:
    tokens: float
    last_refill_at: float
    tokens_per_minute: int
    bucket_size: int


class SessionTokenBucketLimiter:
    """
    Token bucket rate limiter keyed by session identifier.

    Example:
        With tokens_per_minute=60 and bucket_size=10 a session can send 10
        messages immediately, then one per second as tokens regenerate.

    Thread Safety:
        configure_session/try_consume/reset_session for the same session id
        are serialized on that session's lock. A lock exists only while the
        session has a bucket; reset_session and clear retire it.
    """

    def __init__(
        self,
        now_provider: MillisecondClock | None = None,
        min_retry_after_ms: int | None = None,
        fallback_retry_after_ms: int | None = None,
    ):
        """
        Initialize limiter.

        Args:
            now_provider: Returns the current time in milliseconds
            min_retry_after_ms: Floor for computed retry hints
            fallback_retry_after_ms: Retry hint for unconfigured/zeroed sessions
        """
        self._now_provider = now_provider or monotonic_ms
        self.min_retry_after_ms = (
            min_retry_after_ms
            if min_retry_after_ms is not None
            else settings.LIMITER_MIN_RETRY_AFTER_MS
        )
        self.fallback_retry_after_ms = (
            fallback_retry_after_ms
            if fallback_retry_after_ms is not None
            else settings.LIMITER_FALLBACK_RETRY_AFTER_MS
        )
        self._buckets: dict[str, BucketState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _now(self) -> float:
        return self._now_provider()

    def _lock_for(self, session_id: str, create: bool = False) -> "threading.Lock | None":
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None and create:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def _is_current(self, session_id: str, lock: threading.Lock) -> bool:
        # A reset between lookup and acquire retires the lock
        with self._registry_lock:
            return self._locks.get(session_id) is lock

    @staticmethod
    def _normalize_config(config: Any) -> tuple[int, int]:
        tokens_per_minute = to_number(read_field(config, "tokens_per_minute"), 0)
        bucket_size = to_number(read_field(config, "bucket_size"), 0)
        return max(0, math.floor(tokens_per_minute)), max(0, math.floor(bucket_size))

    @staticmethod
    def _refill(state: BucketState, now: float) -> None:
        if now <= state.last_refill_at:
            return

        if state.tokens_per_minute <= 0 or state.bucket_size <= 0:
            state.tokens = 0.0
            state.last_refill_at = now
            return

        elapsed_ms = now - state.last_refill_at
        refill = elapsed_ms * state.tokens_per_minute / MS_PER_MINUTE
        state.tokens = min(float(state.bucket_size), state.tokens + refill)
        state.last_refill_at = now

    def configure_session(self, session_id: str, config: Any) -> None:
        """
        Install or update the rate for a session.

        Args:
            session_id: Session identifier (empty ids are ignored)
            config: SendLimits, mapping or object with tokens_per_minute/bucket_size
        """
        if not session_id:
            return

        tokens_per_minute, bucket_size = self._normalize_config(config)

        while True:
            lock = self._lock_for(session_id, create=True)
            with lock:
                if not self._is_current(session_id, lock):
                    continue
                previous_rate = self._apply_config(session_id, tokens_per_minute, bucket_size)
                break

        if previous_rate is None:
            logger.info(
                "Session bucket created",
                session_id=session_id,
                tokens_per_minute=tokens_per_minute,
                bucket_size=bucket_size,
            )
        elif previous_rate != tokens_per_minute:
            logger.info(
                "Session bucket reconfigured",
                session_id=session_id,
                previous_tokens_per_minute=previous_rate,
                tokens_per_minute=tokens_per_minute,
                bucket_size=bucket_size,
            )

    def _apply_config(
        self, session_id: str, tokens_per_minute: int, bucket_size: int
    ) -> int | None:
        """Install the config under the session lock; returns the previous rate."""
        now = self._now()
        existing = self._buckets.get(session_id)

        if existing is None:
            self._buckets[session_id] = BucketState(
                tokens=float(bucket_size),
                last_refill_at=now,
                tokens_per_minute=tokens_per_minute,
                bucket_size=bucket_size,
            )
            return None

        # Settle tokens earned at the old rate first
        self._refill(existing, now)
        previous_rate = existing.tokens_per_minute
        existing.tokens_per_minute = tokens_per_minute
        existing.bucket_size = bucket_size
        existing.tokens = min(existing.tokens, float(bucket_size))
        existing.last_refill_at = now
        return previous_rate

    def try_consume(self, session_id: str, tokens: Any = 1) -> TokenConsumeResult:
        """
        Attempt to take tokens for a send.

        Args:
            session_id: Session identifier
            tokens: Tokens required (usually 1 per message)

        Returns:
            TokenConsumeResult: allowed flag and retry_after_ms (0 when allowed)
        """
        if not session_id:
            return self._deny(self.fallback_retry_after_ms)

        tokens_needed = max(0.0, to_number(tokens, 1))
        if tokens_needed <= 0:
            return TokenConsumeResult(allowed=True, retry_after_ms=0)

        lock = self._lock_for(session_id)
        if lock is None:
            logger.debug("Send denied for unconfigured session", session_id=session_id)
            return self._deny(self.fallback_retry_after_ms)

        with lock:
            state = self._buckets.get(session_id)
            if state is None or not self._is_current(session_id, lock):
                logger.debug("Send denied for unconfigured session", session_id=session_id)
                return self._deny(self.fallback_retry_after_ms)

            self._refill(state, self._now())

            if state.tokens_per_minute <= 0 or state.bucket_size <= 0:
                return self._deny(self.fallback_retry_after_ms)

            if state.tokens >= tokens_needed:
                state.tokens -= tokens_needed
                return TokenConsumeResult(allowed=True, retry_after_ms=0)

            missing_tokens = tokens_needed - state.tokens
            retry_after_ms = max(
                self.min_retry_after_ms,
                math.ceil(missing_tokens * MS_PER_MINUTE / state.tokens_per_minute),
            )

        logger.debug(
            "Send denied by token bucket",
            session_id=session_id,
            tokens_needed=tokens_needed,
            retry_after_ms=retry_after_ms,
        )
        return self._deny(retry_after_ms)

    def reset_session(self, session_id: str) -> None:
        """Discard a session's bucket and lock (e.g. the session was deleted)."""
        lock = self._lock_for(session_id)
        if lock is None:
            return

        # Session lock before registry lock; nothing takes them the other way round
        with lock:
            with self._registry_lock:
                if self._locks.get(session_id) is lock:
                    del self._locks[session_id]
                    self._buckets.pop(session_id, None)

    def clear(self) -> None:
        """Discard all bucket state, waiting out any in-flight call per session."""
        with self._registry_lock:
            session_ids = list(self._locks)
        for session_id in session_ids:
            self.reset_session(session_id)

    def is_configured(self, session_id: str) -> bool:
        return session_id in self._buckets

    def tracked_session_count(self) -> int:
        """Number of sessions holding a bucket and lock."""
        with self._registry_lock:
            return len(self._locks)

    def get_bucket_state(self, session_id: str) -> BucketState | None:
        """Snapshot of a session's bucket, or None if unconfigured."""
        lock = self._lock_for(session_id)
        if lock is None:
            return None

        with lock:
            state = self._buckets.get(session_id)
            return replace(state) if state is not None else None

    def _deny(self, retry_after_ms: int) -> TokenConsumeResult:
        return TokenConsumeResult(allowed=False, retry_after_ms=int(retry_after_ms))
