"""
Utility functions for the automation engine.

Includes:
- UTC datetime helpers
- JSON-safe serialization
- ``--var k=v`` parsing
- Duration formatting
"""

import json
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from core.exceptions import ValidationError


def utc_now() -> datetime:
    """Return the current UTC time as a **naive** datetime.

    SQLite stores timestamps without an offset, so every comparison
    against stored values is done in naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def safe_serialize(obj: Any, depth: int = 0) -> Any:
    """Recursively ensure all values are JSON-serializable."""
    if depth > 20:
        return str(obj)
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, dict):
        return {str(k): safe_serialize(v, depth + 1) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [safe_serialize(v, depth + 1) for v in obj]
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


def truncate_output(value: Any, max_chars: int) -> Any:
    """Serialize ``value`` safely; oversized payloads are replaced by a truncated string."""
    safe = safe_serialize(value)
    encoded = json.dumps(safe, ensure_ascii=False)
    if len(encoded) <= max_chars:
        return safe
    return encoded[:max_chars] + "...[truncated]"


def parse_var_overrides(pairs: Optional[Iterable[str]]) -> dict[str, str]:
    """Parse ``key=value`` tokens into a dict, splitting on the first ``=``."""
    overrides: dict[str, str] = {}
    bad = []
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            bad.append(f"'{pair}' is not in key=value form")
            continue
        overrides[key.strip()] = value
    if bad:
        raise ValidationError("Invalid --var override", bad)
    return overrides


def format_duration(ms: Optional[int]) -> str:
    """Format milliseconds as ``850ms``, ``2.4s`` or ``3m 12s``."""
    if ms is None:
        return "-"
    if ms < 1000:
        return f"{ms}ms"
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"
