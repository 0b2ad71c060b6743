"""UTC helpers

SQLite drops tzinfo on round-trip, so values read back may be naive; they are
always stored as UTC.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_ago(days: int) -> datetime:
    return utcnow() - timedelta(days=days)


def parse_datetime(value) -> Optional[datetime]:
    """Parse provider date strings ('2024-01-31 12:00', ISO 8601, 'Z' suffix)"""
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
