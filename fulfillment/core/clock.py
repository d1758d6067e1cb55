"""Time helpers shared by the services."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round-trip; stored values are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def business_day(tz_name: str, now: datetime | None = None) -> date:
    """Calendar day in the operator's time zone."""
    return (now or utcnow()).astimezone(ZoneInfo(tz_name)).date()
