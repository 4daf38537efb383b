"""
Session throughput governance.

This package keeps outbound sessions under the channel provider's
anti-abuse radar:
- Token bucket limiter (real-time per-send admission)
- Health classifier (behavioral signals -> health status + strikes)
- Adaptive limits policy (health status -> send limits)
- Windowed day/hour counters (absolute caps)
"""

from app.features.session_governance.counters import (
    DAY_WINDOW,
    HOUR_WINDOW,
    get_window_retry_after_ms,
    normalize_counters_window,
)
from app.features.session_governance.health import compute_session_health
from app.features.session_governance.limits import (
    default_send_limits,
    max_send_limits,
    normalize_send_limits,
)
from app.features.session_governance.policy import policy_adjust_limits
from app.features.session_governance.rate_limiter import SessionTokenBucketLimiter
from app.features.session_governance.service import SessionGovernanceService

__all__ = [
    "DAY_WINDOW",
    "HOUR_WINDOW",
    "SessionGovernanceService",
    "SessionTokenBucketLimiter",
    "compute_session_health",
    "default_send_limits",
    "get_window_retry_after_ms",
    "max_send_limits",
    "normalize_counters_window",
    "normalize_send_limits",
    "policy_adjust_limits",
]
