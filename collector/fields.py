"""
Small normalizers shared by the converters.

Raw records are proto-plus messages (or plain objects in tests): enums carry
a ``.name``, timestamps are datetimes, durations are timedeltas, and unset
string fields are empty strings.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any


def value_or_none(value: Any) -> Any:
    """Map the empty defaults of unset proto fields ("" / 0-length) to None."""
    if value is None or value == "":
        return None
    return value


def enum_name(value: Any) -> str | None:
    if value is None:
        return None
    name = getattr(value, "name", None)
    if name is not None:
        return name
    return str(value) or None


def timestamp(value: Any) -> str | None:
    """ISO-8601 string for a datetime, or the value itself if already a string."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def duration_seconds(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, str) and value.endswith("s"):
        return float(value[:-1])
    return float(value)


def string_map(value: Any) -> dict[str, str]:
    return {str(k): str(v) for k, v in dict(value or {}).items()}


def flatten_prefixed(prefix: str, mapping: dict[str, Any]) -> dict[str, Any]:
    """``{"env": "prod"}`` -> ``{"<prefix>.env": "prod"}`` for flat entity properties."""
    return {f"{prefix}.{k}": v for k, v in mapping.items()}
