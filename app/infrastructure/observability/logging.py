"""
Structured logging setup for the session governance engine.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_session_context,
            # JSON formatting for production
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def _add_session_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Normalize the session identifier key so log queries can rely on one name."""
    if "session" in event_dict and "session_id" not in event_dict:
        event_dict["session_id"] = event_dict.pop("session")
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


# Convenience functions for common log patterns
def log_limit_change(
    session_id: str | None,
    reason: str | None,
    previous: dict,
    current: dict,
    health_status: str | None = None,
):
    """Log send limit adjustments with consistent fields."""
    logger = get_logger("governance")

    log_data = {
        "session_id": session_id,
        "reason": reason,
        "previous_limits": previous,
        "new_limits": current,
        "event_type": "send_limits_changed",
    }

    if health_status:
        log_data["health_status"] = health_status

    if current.get("tokens_per_minute", 0) == 0:
        logger.warning("Send limits zeroed", **log_data)
    else:
        logger.info("Send limits adjusted", **log_data)
