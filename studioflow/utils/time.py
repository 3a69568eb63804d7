"""Time Utilities - UTC timestamps and tenant-local calendar math"""
from datetime import date, datetime, time, timezone, tzinfo
from typing import Optional
from dateutil import parser as date_parser
from dateutil import tz as date_tz


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def get_timezone(name: Optional[str]) -> tzinfo:
    """Resolve an IANA timezone name, falling back to UTC for unknown names"""
    if not name:
        return timezone.utc
    resolved = date_tz.gettz(name)
    return resolved if resolved is not None else timezone.utc


def local_date(dt: datetime, tz_name: Optional[str]) -> date:
    """Calendar date of an instant as seen in the given timezone"""
    return ensure_utc(dt).astimezone(get_timezone(tz_name)).date()


def at_local_time(day: date, hour: int, minute: int, tz_name: Optional[str]) -> datetime:
    """
    Build the UTC instant for a wall-clock time on a tenant-local day

    Args:
        day: Local calendar date
        hour: Local hour (0-23)
        minute: Local minute (0-59)
        tz_name: IANA timezone of the tenant

    Returns:
        Aware datetime in UTC
    """
    local = datetime.combine(day, time(hour, minute), tzinfo=get_timezone(tz_name))
    return local.astimezone(timezone.utc)


def months_between(start: datetime, end: datetime) -> float:
    """Approximate elapsed months (30-day months)"""
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / (30 * 24 * 3600)
