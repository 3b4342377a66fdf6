"""Time helpers shared by dispatch, pricing and quota code"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_local(value: datetime, tz_name: str) -> datetime:
    return ensure_utc(value).astimezone(ZoneInfo(tz_name))


def month_bucket(value: datetime, tz_name: str) -> str:
    """Calendar month key ("YYYY-MM") in the service's local timezone"""
    return to_local(value, tz_name).strftime("%Y-%m")


def local_date(value: datetime, tz_name: str) -> date:
    return to_local(value, tz_name).date()
