"""
Tests for the per-session token bucket limiter.
"""

import threading

import pytest

from app.features.session_governance.domain.models import SendLimits
from app.features.session_governance.rate_limiter import SessionTokenBucketLimiter


def test_consumes_burst_then_refills(limiter, ms_clock):
    # ~1 token per second
    limiter.configure_session("s1", {"tokens_per_minute": 60, "bucket_size": 10})

    for _ in range(10):
        assert limiter.try_consume("s1").allowed is True

    blocked = limiter.try_consume("s1")
    assert blocked.allowed is False
    assert blocked.retry_after_ms > 0

    ms_clock.advance(2000)
    assert limiter.try_consume("s1").allowed is True
    assert limiter.try_consume("s1").allowed is True
    assert limiter.try_consume("s1").allowed is False


def test_unconfigured_session_is_denied(limiter):
    result = limiter.try_consume("missing")

    assert result.allowed is False
    assert result.retry_after_ms == 60_000


def test_empty_session_id_is_denied(limiter):
    limiter.configure_session("", {"tokens_per_minute": 60, "bucket_size": 10})

    assert limiter.try_consume("").allowed is False
    assert limiter.is_configured("") is False


def test_retry_after_reflects_missing_tokens(limiter):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 1})
    assert limiter.try_consume("s1").allowed is True

    result = limiter.try_consume("s1")

    # One missing token at 6/min -> 10 seconds
    assert result.allowed is False
    assert result.retry_after_ms == 10_000


def test_retry_after_has_floor(limiter, ms_clock):
    limiter.configure_session("s1", {"tokens_per_minute": 30, "bucket_size": 1})
    limiter.try_consume("s1")

    # 1990ms of a 2000ms refill already elapsed
    ms_clock.advance(1990)
    result = limiter.try_consume("s1")

    assert result.allowed is False
    assert result.retry_after_ms == 250


def test_zero_rate_denies_with_fallback(limiter):
    limiter.configure_session(
        "s1", SendLimits(tokens_per_minute=0, bucket_size=0, daily_max=0, hourly_max=0)
    )

    result = limiter.try_consume("s1")

    assert result.allowed is False
    assert result.retry_after_ms == 60_000


def test_non_positive_request_is_free(limiter):
    assert limiter.try_consume("never-configured", 0).allowed is True
    assert limiter.try_consume("never-configured", -5).retry_after_ms == 0


def test_reconfigure_refills_at_old_rate_and_caps(limiter, ms_clock):
    limiter.configure_session("s1", {"tokens_per_minute": 60, "bucket_size": 10})
    for _ in range(10):
        limiter.try_consume("s1")

    ms_clock.advance(3000)
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 2})

    state = limiter.get_bucket_state("s1")
    assert state.tokens == pytest.approx(2.0)
    assert state.tokens_per_minute == 6
    assert state.bucket_size == 2
    assert state.last_refill_at == 3000


def test_reconfigure_does_not_grant_free_tokens(limiter, ms_clock):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 10})
    for _ in range(10):
        limiter.try_consume("s1")

    ms_clock.advance(5000)
    limiter.configure_session("s1", {"tokens_per_minute": 30, "bucket_size": 60})

    # 5s at the old 6/min rate earned half a token
    assert limiter.get_bucket_state("s1").tokens == pytest.approx(0.5)
    assert limiter.try_consume("s1").allowed is False


def test_fractional_refill_avoids_starvation(limiter, ms_clock):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 1})
    limiter.try_consume("s1")

    for _ in range(9):
        ms_clock.advance(1000)
        assert limiter.try_consume("s1").allowed is False

    ms_clock.advance(1500)
    assert limiter.try_consume("s1").allowed is True


def test_clock_going_backwards_does_not_refill(limiter, ms_clock):
    ms_clock.advance(10_000)
    limiter.configure_session("s1", {"tokens_per_minute": 60, "bucket_size": 1})
    limiter.try_consume("s1")

    ms_clock.advance(-5000)

    assert limiter.try_consume("s1").allowed is False


def test_reset_and_clear(limiter):
    limiter.configure_session("s1", {"tokens_per_minute": 60, "bucket_size": 10})
    limiter.configure_session("s2", {"tokens_per_minute": 60, "bucket_size": 10})

    limiter.reset_session("s1")
    assert limiter.try_consume("s1").allowed is False
    assert limiter.try_consume("s2").allowed is True

    limiter.clear()
    assert limiter.is_configured("s2") is False
    assert limiter.get_bucket_state("s2") is None


def test_instances_are_isolated(ms_clock):
    first = SessionTokenBucketLimiter(now_provider=ms_clock)
    second = SessionTokenBucketLimiter(now_provider=ms_clock)

    first.configure_session("s1", {"tokens_per_minute": 60, "bucket_size": 1})

    assert first.try_consume("s1").allowed is True
    assert second.try_consume("s1").allowed is False


def test_concurrent_consumers_never_overdraw(limiter):
    limiter.configure_session("s1", {"tokens_per_minute": 1, "bucket_size": 50})
    allowed = []

    def worker():
        for _ in range(20):
            if limiter.try_consume("s1").allowed:
                allowed.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(allowed) == 50


def test_unknown_sessions_leave_no_registry_entries(limiter):
    for index in range(100):
        limiter.try_consume(f"ghost-{index}")
        limiter.get_bucket_state(f"ghost-{index}")
        limiter.reset_session(f"deleted-{index}")

    assert limiter.tracked_session_count() == 0


def test_reset_session_retires_lock(limiter):
    limiter.configure_session("s1", {"tokens_per_minute": 60, "bucket_size": 10})
    limiter.configure_session("s2", {"tokens_per_minute": 60, "bucket_size": 10})
    assert limiter.tracked_session_count() == 2

    limiter.reset_session("s1")

    assert limiter.tracked_session_count() == 1
    assert limiter.is_configured("s1") is False

    limiter.clear()
    assert limiter.tracked_session_count() == 0


def test_reconfigure_after_reset_starts_full(limiter):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 2})
    limiter.try_consume("s1", 2)
    limiter.reset_session("s1")

    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 2})

    assert limiter.get_bucket_state("s1").tokens == pytest.approx(2.0)
    assert limiter.tracked_session_count() == 1


def test_concurrent_reset_and_consume_stay_consistent(limiter):
    def churn():
        for _ in range(200):
            limiter.configure_session("s1", {"tokens_per_minute": 60, "bucket_size": 5})
            limiter.try_consume("s1")
            limiter.reset_session("s1")

    threads = [threading.Thread(target=churn) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert limiter.tracked_session_count() == 0
    assert limiter.is_configured("s1") is False
