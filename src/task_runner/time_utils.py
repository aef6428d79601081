"""
Duration parsing and timezone-aware time resolution.

All instants handled by the runner are timezone-aware UTC datetimes; strings
produced here are ISO 8601 with an explicit offset.
"""

import re
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from task_runner.errors import DurationFormatError, InvalidDateFormatError, InvalidTimezoneError

DURATION_PATTERN = re.compile(r"^(\d+)\s*(ms|s|m|h|d)$", re.IGNORECASE)

UNIT_MULTIPLIERS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
}


class ResolvedTime(NamedTuple):
    utc_timestamp: str
    timezone: str


def utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_iso(value: datetime) -> str:
    """Render a datetime as ISO 8601 in UTC. Naive values are read as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt_timezone.utc)
    return value.astimezone(dt_timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO 8601 string into an aware UTC datetime.

    A trailing 'Z' is accepted, and input without an offset is read as UTC.

    Raises:
        ValueError: If the string is not ISO 8601.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed.astimezone(dt_timezone.utc)


def parse_duration(duration: str) -> int:
    """
    Parse a duration string and return the equivalent milliseconds.

    Examples:
        parse_duration("5m")   # 300000
        parse_duration("1h")   # 3600000
        parse_duration("30 s") # 30000

    Raises:
        DurationFormatError: If the string is not '<n>' followed by ms, s, m, h or d.
    """
    if not isinstance(duration, str):
        raise DurationFormatError(duration)
    match = DURATION_PATTERN.match(duration.strip())
    if not match:
        raise DurationFormatError(duration)

    value = int(match.group(1))
    unit = match.group(2).lower()
    return value * UNIT_MULTIPLIERS[unit]


def add_duration(instant: datetime, duration: str) -> datetime:
    return instant + timedelta(milliseconds=parse_duration(duration))


def convert_after_to_at(after: str) -> str:
    """Turn a relative duration into the absolute ISO timestamp it points at from now."""
    return to_iso(add_duration(utcnow(), after))


def is_time_to_run(timestamp: str) -> bool:
    """True if the timestamp is now or already in the past."""
    return parse_iso(timestamp) <= utcnow()


def validate_timezone(name: str) -> bool:
    if not name or not isinstance(name, str):
        return False
    try:
        ZoneInfo(name)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def resolve_absolute_time(raw: str, timezone: Optional[str] = None) -> ResolvedTime:
    """
    Resolve an absolute timestamp for a one-shot task.

    Input without an explicit offset or 'Z' marker is treated as UTC, never as
    the host's local zone. The timezone is validated and carried alongside the
    result; it defaults to 'UTC'.

    Raises:
        InvalidTimezoneError: If a timezone is given and is not a valid IANA zone.
        InvalidDateFormatError: If the timestamp cannot be parsed.
    """
    if timezone and not validate_timezone(timezone):
        raise InvalidTimezoneError(timezone)

    if not isinstance(raw, str) or not raw.strip():
        raise InvalidDateFormatError(raw)
    try:
        parsed = parse_iso(raw)
    except ValueError:
        raise InvalidDateFormatError(raw)

    return ResolvedTime(utc_timestamp=to_iso(parsed), timezone=timezone or "UTC")
