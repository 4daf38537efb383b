"""
Tests for the governance service wiring (classifier -> policy -> limiter).
"""

from datetime import timedelta

import pytest

from app.features.session_governance.service import SessionGovernanceService


@pytest.fixture
def service(limiter, now):
    return SessionGovernanceService(limiter=limiter, clock=lambda: now)


def test_evaluate_healthy_session_configures_limiter(service, limiter, quiet_stats):
    session = {"id": "s1", "status": "connected"}

    evaluation = service.evaluate_session(session, quiet_stats)

    assert evaluation.health.health_status == "healthy"
    assert evaluation.limits.limit_change_reason == "healthy_increase"
    assert evaluation.limiter_configured is True
    state = limiter.get_bucket_state("s1")
    assert state.tokens_per_minute == evaluation.limits.send_limits.tokens_per_minute
    assert state.bucket_size == evaluation.limits.send_limits.bucket_size


def test_evaluate_cooldown_zeroes_limiter(service, limiter, now, quiet_stats):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 10})
    session = {
        "id": "s1",
        "status": "auth_failed",
        "authFailureCount": 2,
        "lastAuthFailureAt": now - timedelta(minutes=1),
        "sendLimits": {"tokensPerMinute": 6, "bucketSize": 10, "dailyMax": 200, "hourlyMax": 60},
    }

    evaluation = service.evaluate_session(session, quiet_stats)

    assert evaluation.health.health_status == "cooldown"
    assert evaluation.limits.send_limits.as_tuple() == (0, 0, 0, 0)
    assert evaluation.limits.limit_change_reason == "cooldown_policy"
    assert limiter.try_consume("s1").allowed is False


def test_unchanged_limits_skip_reconfiguration(service, limiter, now, quiet_stats):
    session = {
        "id": "s1",
        "status": "reconnecting",
        "sendLimits": {"tokensPerMinute": 6, "bucketSize": 10, "dailyMax": 200, "hourlyMax": 60},
    }

    first = service.evaluate_session(session, quiet_stats)
    limiter.try_consume("s1")
    second = service.evaluate_session(session, quiet_stats)

    assert first.limiter_configured is True
    assert second.limits.changed is False
    assert second.limiter_configured is False
    assert limiter.get_bucket_state("s1").tokens == pytest.approx(9.0)


def test_persisted_fields(service, quiet_stats):
    evaluation = service.evaluate_session({"id": "s1", "status": "connected"}, quiet_stats)

    fields = evaluation.persisted_fields()

    assert fields["healthStatus"] == "healthy"
    assert fields["sendLimits"] == {
        "tokensPerMinute": 7,
        "bucketSize": 12,
        "dailyMax": 230,
        "hourlyMax": 69,
    }
    assert fields["limitChangeReason"] == "healthy_increase"
    assert "strikeCount" in fields


def test_check_send_allows_and_records(service, limiter, now):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 10})
    session = {"id": "s1", "countersWindow": None}

    decision = service.check_send(session)

    assert decision.allowed is True
    assert decision.reason is None
    assert decision.counters_changed is True

    counters = service.record_send(decision.counters_window)
    assert counters.day_count == 1
    assert counters.hour_count == 1
    assert counters.day_start == now


def test_check_send_enforces_hourly_cap_without_consuming(service, limiter, now):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 10})
    session = {
        "id": "s1",
        "sendLimits": {"tokensPerMinute": 6, "bucketSize": 10, "dailyMax": 200, "hourlyMax": 60},
        "countersWindow": {
            "dayCount": 80,
            "dayStart": now - timedelta(hours=2),
            "hourCount": 60,
            "hourStart": now - timedelta(minutes=20),
        },
    }

    decision = service.check_send(session)

    assert decision.allowed is False
    assert decision.reason == "hourly_cap"
    assert decision.retry_after_ms == 40 * 60 * 1000
    assert limiter.get_bucket_state("s1").tokens == pytest.approx(10.0)


def test_check_send_enforces_daily_cap(service, limiter, now):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 10})
    session = {
        "id": "s1",
        "sendLimits": {"tokensPerMinute": 6, "bucketSize": 10, "dailyMax": 200, "hourlyMax": 60},
        "countersWindow": {
            "dayCount": 200,
            "dayStart": now - timedelta(hours=20),
            "hourCount": 0,
            "hourStart": now - timedelta(minutes=20),
        },
    }

    decision = service.check_send(session)

    assert decision.reason == "daily_cap"
    assert decision.retry_after_ms == 4 * 60 * 60 * 1000


def test_check_send_rolls_window_before_cap(service, limiter, now):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 10})
    session = {
        "id": "s1",
        "countersWindow": {
            "dayCount": 200,
            "dayStart": now - timedelta(hours=25),
            "hourCount": 60,
            "hourStart": now - timedelta(hours=2),
        },
    }

    decision = service.check_send(session)

    assert decision.allowed is True
    assert decision.counters_changed is True
    assert decision.counters_window.day_count == 0


def test_check_send_rate_limited(service, limiter):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 1})
    session = {"id": "s1"}

    assert service.check_send(session).allowed is True
    decision = service.check_send(session)

    assert decision.allowed is False
    assert decision.reason == "rate_limited"
    assert decision.retry_after_ms == 10_000


def test_check_send_unconfigured_session(service):
    decision = service.check_send({"id": "ghost"})

    assert decision.allowed is False
    assert decision.retry_after_ms == 60_000


def test_forget_session(service, limiter, quiet_stats):
    service.evaluate_session({"id": "s1", "status": "connected"}, quiet_stats)

    service.forget_session("s1")

    assert limiter.is_configured("s1") is False


def test_evaluate_resyncs_limiter_after_manual_override(service, limiter, now, quiet_stats):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 10})
    session = {
        "id": "s1",
        "status": "connected",
        "lastLimitUpdateAt": now - timedelta(hours=1),
        "limitChangeReason": "manual_override",
        "sendLimits": {"tokensPerMinute": 20, "bucketSize": 30, "dailyMax": 200, "hourlyMax": 60},
    }

    evaluation = service.evaluate_session(session, quiet_stats)

    assert evaluation.limits.changed is False
    assert evaluation.limits.send_limits.as_tuple() == (20, 30, 200, 60)
    assert evaluation.limiter_configured is True
    state = limiter.get_bucket_state("s1")
    assert (state.tokens_per_minute, state.bucket_size) == (20, 30)


def test_record_send_tolerates_unusable_count(service, now):
    counters = service.record_send(None, float("nan"))

    assert counters.day_count == 0
    assert counters.hour_count == 0
    assert counters.day_start == now

    assert service.record_send(None, "3").day_count == 3


def test_check_send_tolerates_unusable_tokens(service, limiter):
    limiter.configure_session("s1", {"tokens_per_minute": 6, "bucket_size": 1})

    decision = service.check_send({"id": "s1"}, tokens="lots")

    assert decision.allowed is True
    assert limiter.get_bucket_state("s1").tokens == pytest.approx(0.0)
