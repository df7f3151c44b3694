"""Shared utility functions used across Stagegate modules."""
from __future__ import annotations

import json
import math
import uuid
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Input sanitation
# ---------------------------------------------------------------------------


def sanitize_string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def sanitize_optional_string(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    return None


def sanitize_number(value: Any) -> float | int | None:
    """Return a finite number or ``None``.

    Numeric strings are parsed (``"42"`` -> ``42.0``); booleans, ``NaN`` and
    infinities are rejected.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def sanitize_distribution(value: Any) -> dict[str, float]:
    """Keep only non-empty period keys that map to finite numbers."""
    if not isinstance(value, dict):
        return {}
    result: dict[str, float] = {}
    for raw_key, raw_value in value.items():
        key = str(raw_key).strip()
        if not key:
            continue
        number = sanitize_number(raw_value)
        if number is not None:
            result[key] = float(number)
    return result


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def strict_int(value: Any) -> int | None:
    """Return *value* if it is a real ``int`` (bools excluded), else ``None``."""
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value
