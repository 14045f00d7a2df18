from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        return dt

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_business_date(value) -> Optional[date]:
    """
    Accept a date, a datetime or a "YYYY-MM-DD..." string.

    Longer strings are truncated to their date part, matching how the POS
    feed and the admin screens send dates.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()[:10]
    if not s:
        return None
    return date.fromisoformat(s)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def business_day_bounds(start: date, end: date, offset_hours: int = 0) -> tuple[datetime, datetime]:
    """
    UTC-naive [lower, upper) window covering local business dates start..end.

    Business dates are local (UTC + offset_hours); stored datetimes are UTC.
    """
    lower = datetime.combine(start, time.min) - timedelta(hours=offset_hours)
    upper = datetime.combine(end + timedelta(days=1), time.min) - timedelta(hours=offset_hours)
    return lower, upper


def local_to_utc(value: datetime, offset_hours: int = 0) -> datetime:
    """Convert a naive local business datetime to UTC-naive."""
    return value - timedelta(hours=offset_hours)
