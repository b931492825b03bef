"""Shared epoch-millisecond and calendar helpers."""
from __future__ import annotations

import re
import time
from datetime import date, datetime, timedelta, timezone

DAY_MS = 24 * 60 * 60 * 1000
MINUTE_MS = 60 * 1000

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_WEEK_RE = re.compile(r"^(\d{4})-W(\d{2})$")


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def ms_to_iso(value: int | None) -> str:
    if not value:
        return ""
    return ms_to_datetime(value).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def datetime_to_ms(value: datetime) -> int:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_date(value: str) -> date | None:
    """Parse a strict ``YYYY-MM-DD`` token; anything else yields None."""
    token = (value or "").strip()
    if not _DATE_ONLY_RE.match(token):
        return None
    try:
        return date.fromisoformat(token)
    except ValueError:
        return None


def day_bounds(day: date) -> tuple[int, int]:
    """Return ``[start, end)`` epoch-ms bounds of a UTC calendar day."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    start_ms = datetime_to_ms(start)
    return start_ms, start_ms + DAY_MS


def parse_iso_week(value: str) -> date | None:
    """Return the Monday of an ISO week token such as ``2026-W07``."""
    match = _ISO_WEEK_RE.match((value or "").strip())
    if not match:
        return None
    year, week = int(match.group(1)), int(match.group(2))
    if week < 1 or week > 53:
        return None
    # ISO week 1 is the week containing January 4th.
    jan4 = date(year, 1, 4)
    monday = jan4 - timedelta(days=jan4.isoweekday() - 1) + timedelta(weeks=week - 1)
    if monday.isocalendar()[1] != week:
        return None
    return monday


def parse_range_param(value: str | None, *, end_of_day: bool = False) -> int | None:
    """Convert an optional ``YYYY-MM-DD`` or ISO datetime query param to epoch ms."""
    token = (value or "").strip()
    if not token:
        return None
    parsed_day = parse_date(token)
    if parsed_day:
        start, end = day_bounds(parsed_day)
        return end - 1 if end_of_day else start
    try:
        return datetime_to_ms(datetime.fromisoformat(token.replace("Z", "+00:00")))
    except ValueError:
        return None
