"""
Lenient value coercion for session records.

Session fields arrive from storage rows, JSON payloads and lifecycle events,
so anything may be missing, a string, NaN or negative. These helpers never
raise; they substitute the value the engine treats as "absent".
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic.alias_generators import to_camel


def to_number(value: Any, fallback: float) -> float:
    """Parse ``value`` as a finite float, or return ``fallback``."""
    if value is None:
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError, OverflowError):
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return parsed


def to_count(value: Any) -> int:
    """Non-negative integer count; anything unusable becomes 0."""
    return max(0, math.floor(to_number(value, 0)))


def parse_datetime(value: Any) -> datetime | None:
    """Aware UTC datetime from a datetime or ISO string. Naive values are UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def normalize_status(value: Any) -> str:
    return str(value if value is not None else "unknown").strip().lower()


def read_field(source: Any, name: str) -> Any:
    """
    Read ``name`` (snake_case) from a model, mapping or plain object.

    Mappings are also checked for the camelCase key used by persisted rows.
    """
    if source is None:
        return None
    if isinstance(source, Mapping):
        if name in source:
            return source[name]
        return source.get(to_camel(name))
    return getattr(source, name, None)
