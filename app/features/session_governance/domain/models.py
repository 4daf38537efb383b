"""
Domain models for session throughput governance.

SessionRecord mirrors the persisted session row. It is deliberately lenient:
lifecycle managers write these fields from many places, and the governance
engine must keep producing a usable answer even when a counter is NaN or a
timestamp failed to parse. Output models round-trip through camelCase
aliases so callers can persist ``model_dump(by_alias=True)`` directly.
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.features.session_governance.coercion import (
    normalize_status,
    parse_datetime,
    to_count,
)

SessionHealthStatus = Literal["unknown", "healthy", "warning", "risky", "cooldown", "blocked"]
CounterScope = Literal["day", "hour"]


class GovernanceModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SendLimits(GovernanceModel):
    """Four-field send configuration. Values here are already normalized."""

    tokens_per_minute: int = Field(ge=0)
    bucket_size: int = Field(ge=0)
    daily_max: int = Field(ge=0)
    hourly_max: int = Field(ge=0)

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.tokens_per_minute, self.bucket_size, self.daily_max, self.hourly_max)


class CountersWindow(GovernanceModel):
    """Rolling day/hour send counters."""

    day_count: int = 0
    day_start: datetime | None = None
    hour_count: int = 0
    hour_start: datetime | None = None


class RecentStats(GovernanceModel):
    """24h delivery statistics computed by the stats aggregator."""

    sent_24h: int = Field(default=0, alias="sent24h")
    delivered_24h: int = Field(default=0, alias="delivered24h")
    read_24h: int = Field(default=0, alias="read24h")
    failed_24h: int = Field(default=0, alias="failed24h")

    @field_validator("sent_24h", "delivered_24h", "read_24h", "failed_24h", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        return to_count(value)


class SessionRecord(GovernanceModel):
    """The subset of a session row the governance engine reads."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", from_attributes=True
    )

    id: str | None = None
    status: str = "unknown"

    # Lifecycle counters (read-only here)
    auth_failure_count: int = 0
    disconnect_count: int = 0
    reconnect_count: int = 0
    reset_auth_count: int = 0
    last_auth_failure_at: datetime | None = None
    last_disconnect_at: datetime | None = None
    last_reset_auth_at: datetime | None = None

    # Health fields (written by the classifier)
    health_status: str = "unknown"
    health_score: int = 0
    health_reason: str | None = None
    health_updated_at: datetime | None = None

    # Strike/cooldown bookkeeping (carried across classifier calls)
    strike_count: int = 0
    last_strike_at: datetime | None = None
    last_strike_reason: str | None = None
    cooldown_until: datetime | None = None

    # Limits (written by the policy); raw until normalized
    send_limits: dict[str, Any] | None = None
    last_limit_update_at: datetime | None = None
    limit_change_reason: str | None = None

    counters_window: dict[str, Any] | None = None

    @classmethod
    def coerce(cls, value: Any) -> "SessionRecord":
        """Accept a SessionRecord, a mapping (snake or camelCase keys) or a row object."""
        if isinstance(value, cls):
            return value
        return cls.model_validate(value or {})

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("status", "health_status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> str:
        return normalize_status(value)

    @field_validator(
        "auth_failure_count",
        "disconnect_count",
        "reconnect_count",
        "reset_auth_count",
        "health_score",
        "strike_count",
        mode="before",
    )
    @classmethod
    def _coerce_counter(cls, value: Any) -> int:
        return to_count(value)

    @field_validator(
        "last_auth_failure_at",
        "last_disconnect_at",
        "last_reset_auth_at",
        "health_updated_at",
        "last_strike_at",
        "cooldown_until",
        "last_limit_update_at",
        mode="before",
    )
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> datetime | None:
        return parse_datetime(value)

    @field_validator("health_reason", "last_strike_reason", "limit_change_reason", mode="before")
    @classmethod
    def _coerce_reason(cls, value: Any) -> str | None:
        return str(value) if value else None

    @field_validator("send_limits", "counters_window", mode="before")
    @classmethod
    def _coerce_mapping(cls, value: Any) -> dict[str, Any] | None:
        if isinstance(value, BaseModel):
            return value.model_dump()
        if isinstance(value, Mapping):
            return dict(value)
        return None


class HealthComputationResult(GovernanceModel):
    health_status: SessionHealthStatus
    health_score: int
    health_reason: str
    health_updated_at: datetime
    cooldown_until: datetime | None
    strike_count: int
    last_strike_at: datetime | None
    last_strike_reason: str | None


class PolicyAdjustResult(GovernanceModel):
    changed: bool
    send_limits: SendLimits
    last_limit_update_at: datetime | None
    limit_change_reason: str | None


class CountersWindowResult(GovernanceModel):
    value: CountersWindow
    changed: bool


class TokenConsumeResult(GovernanceModel):
    allowed: bool
    retry_after_ms: int


class SendDecision(GovernanceModel):
    """Outcome of a pre-send admission check (caps + token bucket)."""

    allowed: bool
    retry_after_ms: int
    reason: Literal["daily_cap", "hourly_cap", "rate_limited"] | None = None
    counters_window: CountersWindow
    counters_changed: bool = False


class GovernanceEvaluation(GovernanceModel):
    """Classifier + policy output for one scheduler tick."""

    session_id: str | None
    health: HealthComputationResult
    limits: PolicyAdjustResult
    limiter_configured: bool = False

    def persisted_fields(self) -> dict[str, Any]:
        """Fields the caller writes back onto the session row, camelCase keyed."""
        fields = self.health.model_dump(by_alias=True)
        fields.update(
            {
                "sendLimits": self.limits.send_limits.model_dump(by_alias=True),
                "lastLimitUpdateAt": self.limits.last_limit_update_at,
                "limitChangeReason": self.limits.limit_change_reason,
            }
        )
        return fields
