"""Utility helpers for the MediaHub service."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Mapping


YEAR_RE = re.compile(r"(19|20|21)\d{2}")


def build_cache_key(operation: str, params: Mapping[str, Any] | None = None) -> str:
    """Return a deterministic cache key for an operation and its arguments."""

    if not params:
        return operation
    parts = [
        f"{key}={_format_param(value)}"
        for key, value in sorted(params.items())
        if value is not None
    ]
    return f"{operation}?{'&'.join(parts)}" if parts else operation


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_format_param(part) for part in value)
    return str(value)


def parse_year(value: Any) -> int | None:
    """Extract a plausible four-digit year from dates, strings or integers."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 1800 <= value <= 2100 else None
    if isinstance(value, (date, datetime)):
        return value.year
    if not value:
        return None
    match = YEAR_RE.search(str(value))
    if not match:
        return None
    return int(match.group(0))


def parse_date(value: Any) -> date | None:
    """Parse ``YYYY-MM-DD`` strings, returning ``None`` for blanks or garbage."""

    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def build_image_url(path: str | None, base_url: str, size: str = "w500") -> str | None:
    if not path:
        return None
    if path.startswith("http"):
        return path
    return f"{base_url.rstrip('/')}/{size}{path}"


def is_valid_stream_url(url: str | None) -> bool:
    """Return whether a directory-supplied stream URL is usable."""

    if not url:
        return False
    cleaned = url.strip()
    return bool(cleaned) and "null" not in cleaned
