from __future__ import annotations

import re
from collections.abc import Iterator
from datetime import UTC, date, datetime, time, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from . import config

_TWELVE_HOUR = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(AM|PM)$")
_TWENTY_FOUR_HOUR = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_PARENTHESIZED = re.compile(r"\s*\([^)]*\)")


@lru_cache(maxsize=8)
def business_tz(name: str | None = None) -> ZoneInfo:
    return ZoneInfo(name or config.BUSINESS_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def local_date(dt: datetime, tz: ZoneInfo | None = None) -> date:
    return ensure_utc(dt).astimezone(tz or business_tz()).date()


def local_instant(day: date, at: time, tz: ZoneInfo | None = None) -> datetime:
    """Return the UTC instant of a business-local wall-clock time on ``day``."""
    local = datetime.combine(day, at.replace(tzinfo=None), tzinfo=tz or business_tz())
    return local.astimezone(UTC)


def local_window(
    day: date, start: time, end: time, tz: ZoneInfo | None = None
) -> tuple[datetime, datetime]:
    # end <= start wraps past midnight into the next calendar day
    opens = local_instant(day, start, tz)
    closes = local_instant(day, end, tz)
    if closes <= opens:
        closes = local_instant(day + timedelta(days=1), end, tz)
    return opens, closes


def daterange(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def parse_time_of_day(value: object) -> time:
    """Accept ``time`` objects, ``HH:MM[:SS]`` and 12-hour forms like ``3 PM``."""
    if isinstance(value, time):
        return value.replace(tzinfo=None, microsecond=0)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported time value: {value!r}")

    cleaned = _PARENTHESIZED.sub("", value).strip().upper()
    match = _TWELVE_HOUR.match(cleaned)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12:
            raise ValueError(f"Invalid 12-hour time: {value!r}")
        if match.group(3) == "AM":
            hour = 0 if hour == 12 else hour
        elif hour != 12:
            hour += 12
        return time(hour, minute)

    match = _TWENTY_FOUR_HOUR.match(cleaned)
    if match:
        return time(int(match.group(1)), int(match.group(2)), int(match.group(3) or 0))

    raise ValueError(f"Invalid time of day: {value!r}")


def format_time_of_day(value: time) -> str:
    return value.strftime("%H:%M:%S")
