"""Domain models for session throughput governance."""

from app.features.session_governance.domain.models import (
    CounterScope,
    CountersWindow,
    CountersWindowResult,
    GovernanceEvaluation,
    HealthComputationResult,
    PolicyAdjustResult,
    RecentStats,
    SendDecision,
    SendLimits,
    SessionHealthStatus,
    SessionRecord,
    TokenConsumeResult,
)

__all__ = [
    "CounterScope",
    "CountersWindow",
    "CountersWindowResult",
    "GovernanceEvaluation",
    "HealthComputationResult",
    "PolicyAdjustResult",
    "RecentStats",
    "SendDecision",
    "SendLimits",
    "SessionHealthStatus",
    "SessionRecord",
    "TokenConsumeResult",
]
