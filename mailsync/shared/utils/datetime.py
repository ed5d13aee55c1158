"""
UTC datetime helpers used across the sync engine.

Every timestamp the engine stores or compares is timezone-aware UTC.
Provider payloads arrive as RFC 3339 strings (Graph, Google), epoch
milliseconds (Gmail internalDate) or HTTP-dates (Retry-After); the
parsers below normalize all of them.
"""

import re
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

Clock = Callable[[], datetime]

_FRACTION_RE = re.compile(r"\.(\d+)")


def utc_now() -> datetime:
    """
    Return the current UTC datetime with timezone info.

    Services accept a Clock (any zero-arg callable returning an aware
    datetime) and default to this function.

    Returns:
        Timezone-aware datetime in UTC
    """
    return datetime.now(UTC)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """
    Ensure a datetime is UTC-aware.

    Naive values are assumed to be UTC (database drivers that drop tzinfo);
    aware values are converted.

    Args:
        dt: A datetime that may be naive or aware

    Returns:
        UTC-aware datetime or None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def from_timestamp_utc(timestamp: float) -> datetime:
    """Create a UTC-aware datetime from a Unix timestamp in seconds."""
    return datetime.fromtimestamp(timestamp, tz=UTC)


def from_timestamp_ms_utc(timestamp_ms: int) -> datetime:
    """Create a UTC-aware datetime from a Unix timestamp in milliseconds."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)


def _trim_fraction(match: re.Match[str]) -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


def parse_iso_datetime(value: str | None) -> datetime | None:
    """
    Parse an RFC 3339 / ISO 8601 string into an aware UTC datetime.

    Accepts a trailing "Z", fractional seconds of any precision (Graph
    sends seven digits) and date-only values (all-day events).

    Args:
        value: String from a provider payload, or None

    Returns:
        UTC-aware datetime, or None when value is empty or unparseable
    """
    if not value:
        return None
    text = _FRACTION_RE.sub(_trim_fraction, value.strip().replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def parse_http_date(value: str | None) -> datetime | None:
    """
    Parse an RFC 7231 HTTP-date (e.g. a Retry-After header) into UTC.

    Returns:
        UTC-aware datetime, or None when value is not an HTTP-date
    """
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return ensure_utc(parsed)
