"""Shared utility functions used across Prytaneum modules."""
from __future__ import annotations

import json
from datetime import UTC, date, datetime
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


def today() -> date:
    """Current calendar date in UTC (day granularity for action dates)."""
    return datetime.now(UTC).date()


def as_date(value: date | datetime | str | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def days_since(value: date | datetime | str | None, now: date | None = None) -> int | None:
    """Whole days elapsed since *value*, or None when there is no date."""
    ref = as_date(value)
    if ref is None:
        return None
    return ((now or today()) - ref).days


def to_iso(value: Any) -> Any:
    """ISO-format dates/datetimes for JSON output; other values pass through."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value
