from datetime import UTC, datetime

import pytest

from app.features.session_governance.rate_limiter import SessionTokenBucketLimiter


class FakeClock:
    """Controllable millisecond clock for the token bucket limiter."""

    def __init__(self, start_ms: float = 0.0):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 2, 12, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def ms_clock():
    return FakeClock()


@pytest.fixture
def limiter(ms_clock):
    return SessionTokenBucketLimiter(now_provider=ms_clock)


@pytest.fixture
def quiet_stats():
    return {"sent24h": 0, "delivered24h": 0, "read24h": 0, "failed24h": 0}
