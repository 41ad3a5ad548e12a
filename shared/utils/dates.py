"""
shared/utils/dates.py
Timezone helpers. All instants are handled as aware UTC datetimes.
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to aware UTC. Naive values (as returned by SQLite) are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_date(value: datetime, tz_name: str) -> date:
    """Calendar date of an instant in the given IANA timezone."""
    return as_utc(value).astimezone(ZoneInfo(tz_name)).date()


def overlaps(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    return as_utc(start1) < as_utc(end2) and as_utc(start2) < as_utc(end1)
