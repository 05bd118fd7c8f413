"""Interval grammar for scheduled tasks.

Accepted forms (case-insensitive)::

    every 30 seconds | every 5 minutes | every 2 hours | every 3 days
    every minute | every hour | every day
    every day at 09:00

Fixed intervals repeat relative to the moment they are computed from.
``every day at HH:MM`` is a wall-clock rule and is normalized to a cron
expression evaluated with croniter.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from croniter import croniter

from core.exceptions import IntervalError

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400}

_FIXED = re.compile(r"^every\s+(?:(\d+)\s+)?(second|minute|hour|day)s?$", re.IGNORECASE)
_DAILY = re.compile(r"^every\s+day\s+at\s+(\d{1,2}):(\d{2})$", re.IGNORECASE)


@dataclass(frozen=True)
class IntervalRule:
    """Normalized repeating rule."""
    kind: str  # "fixed" or "daily"
    seconds: int = 0
    hour: int = 0
    minute: int = 0

    @property
    def cron_expression(self) -> Optional[str]:
        if self.kind != "daily":
            return None
        return f"{self.minute} {self.hour} * * *"

    def describe(self) -> str:
        if self.kind == "daily":
            return f"every day at {self.hour:02d}:{self.minute:02d}"
        for unit in ("day", "hour", "minute", "second"):
            size = _UNIT_SECONDS[unit]
            if self.seconds % size == 0:
                count = self.seconds // size
                return f"every {unit}" if count == 1 else f"every {count} {unit}s"
        return f"every {self.seconds} seconds"


def parse_interval(spec: str) -> IntervalRule:
    """Parse a human-readable interval.

    Raises:
        IntervalError: ``spec`` is not in the grammar
    """
    if not isinstance(spec, str) or not spec.strip():
        raise IntervalError(str(spec), "empty")
    text = " ".join(spec.split())

    daily = _DAILY.match(text)
    if daily:
        hour, minute = int(daily.group(1)), int(daily.group(2))
        if hour > 23 or minute > 59:
            raise IntervalError(spec, "time of day out of range")
        return IntervalRule(kind="daily", hour=hour, minute=minute)

    fixed = _FIXED.match(text)
    if fixed:
        count = int(fixed.group(1)) if fixed.group(1) is not None else 1
        if count <= 0:
            raise IntervalError(spec, "count must be positive")
        return IntervalRule(kind="fixed", seconds=count * _UNIT_SECONDS[fixed.group(2).lower()])

    raise IntervalError(spec)


def compute_next_run(spec: Union[str, IntervalRule], from_: datetime) -> datetime:
    """Next occurrence strictly after ``from_``.

    Works in whatever frame ``from_`` is expressed in (naive wall-clock
    or timezone-aware) and returns a value in the same frame.
    """
    rule = spec if isinstance(spec, IntervalRule) else parse_interval(spec)
    if rule.kind == "fixed":
        return from_ + timedelta(seconds=rule.seconds)
    return croniter(rule.cron_expression, from_).get_next(datetime)


def next_run_utc(spec: Union[str, IntervalRule], now_utc: datetime) -> datetime:
    """Next run as naive UTC, evaluating daily rules on the local wall clock."""
    rule = spec if isinstance(spec, IntervalRule) else parse_interval(spec)
    if rule.kind == "fixed":
        return compute_next_run(rule, now_utc)
    local_now = now_utc.replace(tzinfo=timezone.utc).astimezone()
    next_local = compute_next_run(rule, local_now)
    return next_local.astimezone(timezone.utc).replace(tzinfo=None)
