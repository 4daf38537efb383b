from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # =================================================================
    # SEND LIMITS - defaults for new sessions and absolute ceilings
    # =================================================================
    DEFAULT_TOKENS_PER_MINUTE: int = 6
    DEFAULT_BUCKET_SIZE: int = 10
    DEFAULT_DAILY_MAX: int = 200
    DEFAULT_HOURLY_MAX: int = 60

    MAX_TOKENS_PER_MINUTE: int = 30
    MAX_BUCKET_SIZE: int = 60
    MAX_DAILY_MAX: int = 1200
    MAX_HOURLY_MAX: int = 300

    # =================================================================
    # HEALTH POLICY WINDOWS
    # =================================================================
    HEALTH_COOLDOWN_HOURS: float = 24.0
    HEALTH_RECENT_AUTH_FAILURE_HOURS: float = 6.0
    HEALTH_RECENT_DISCONNECT_HOURS: float = 24.0
    HEALTH_RESET_STUCK_MINUTES: float = 20.0
    HEALTH_STRIKE_DEDUP_MINUTES: float = 60.0
    HEALTHY_LIMIT_UPDATE_HOURS: float = 24.0
    STRIKE_BLOCK_THRESHOLD: int = 5

    # =================================================================
    # TOKEN BUCKET LIMITER
    # =================================================================
    LIMITER_MIN_RETRY_AFTER_MS: int = 250
    LIMITER_FALLBACK_RETRY_AFTER_MS: int = 60_000

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_default_send_limits(self) -> dict:
        """Limits assigned to a session that has never been tuned."""
        return {
            "tokens_per_minute": self.DEFAULT_TOKENS_PER_MINUTE,
            "bucket_size": self.DEFAULT_BUCKET_SIZE,
            "daily_max": self.DEFAULT_DAILY_MAX,
            "hourly_max": self.DEFAULT_HOURLY_MAX,
        }

    def get_max_send_limits(self) -> dict:
        """
        Get the absolute ceilings for send limits.
        The healthy-increase policy can never grow a session past these.
        """
        return {
            "tokens_per_minute": self.MAX_TOKENS_PER_MINUTE,
            "bucket_size": self.MAX_BUCKET_SIZE,
            "daily_max": self.MAX_DAILY_MAX,
            "hourly_max": self.MAX_HOURLY_MAX,
        }


settings = Settings()

# =================================================================
# QUICK CONFIGURATION REFERENCE
# =================================================================
"""
Override any value via environment or .env.local, e.g.:

CONSERVATIVE (new numbers, fresh accounts):
    DEFAULT_TOKENS_PER_MINUTE=3
    DEFAULT_DAILY_MAX=100

WARMED UP (long-lived, well-behaved numbers):
    MAX_TOKENS_PER_MINUTE=45
    MAX_DAILY_MAX=2000

"""
