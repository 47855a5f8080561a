"""
Datetime helpers shared by the scheduling engine.

All instants are persisted as naive UTC datetimes. Anything coming from the
outside world (AI output, provider payloads, API input) is normalised through
these helpers before it is compared or stored.
"""

from datetime import datetime, timezone
from typing import Optional

import pytz
from dateutil import parser as dateutil_parser

from ..config import DEFAULT_TIMEZONE


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_timezone(name: Optional[str]):
    """Resolve a timezone name, falling back to the default zone"""
    try:
        return pytz.timezone(name or DEFAULT_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(DEFAULT_TIMEZONE)


def to_utc_naive(value: datetime, tz_name: Optional[str] = None) -> datetime:
    """
    Normalise a datetime to naive UTC.
    Naive input is interpreted in tz_name when given, otherwise as UTC.
    """
    if value.tzinfo is None:
        if tz_name is None:
            return value
        value = get_timezone(tz_name).localize(value)
    return value.astimezone(pytz.utc).replace(tzinfo=None)


def parse_instant(value: str, tz_name: Optional[str] = None) -> datetime:
    """
    Parse an ISO 8601 string to naive UTC.
    Bare timestamps without an offset are read in tz_name (the user's zone),
    never silently as UTC. Raises ValueError on malformed input.
    """
    if not value or not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")
    parsed = dateutil_parser.isoparse(value.strip())
    return to_utc_naive(parsed, tz_name or DEFAULT_TIMEZONE)


def to_iso(value: datetime) -> str:
    """Serialise a naive UTC datetime as an ISO string with a Z suffix"""
    return to_utc_naive(value).replace(microsecond=0).isoformat() + "Z"


def to_local(value: datetime, tz_name: Optional[str]) -> datetime:
    """Convert a naive UTC datetime to an aware datetime in tz_name"""
    return pytz.utc.localize(to_utc_naive(value)).astimezone(get_timezone(tz_name))


def local_to_utc(value: datetime, tz_name: Optional[str]) -> datetime:
    """Interpret a naive wall-clock time in tz_name and return naive UTC"""
    return to_utc_naive(get_timezone(tz_name).localize(value))


def format_for_display(value: datetime, tz_name: Optional[str]) -> str:
    """Human readable time, e.g. 'Tuesday, October 20 at 2:00 PM EDT'"""
    local = to_local(value, tz_name)
    hour = local.strftime("%I").lstrip("0")
    return f"{local.strftime('%A, %B')} {local.day} at {hour}:{local.strftime('%M %p %Z')}"
