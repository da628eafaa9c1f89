"""
DateTime utility functions for the application.

All timestamps stored in the database are naive UTC. Business dates (expiry,
invoice due dates, reminder send times) are interpreted in the configured
business timezone.
"""
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def utcnow():
    """Current time as a naive UTC datetime, matching the stored column values."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_business_timezone(name=None):
    """
    Get the business timezone object.

    Args:
        name: IANA timezone name. Defaults to the BUSINESS_TIMEZONE app config.

    Returns:
        ZoneInfo: timezone object
    """
    if name is None:
        from flask import current_app
        name = current_app.config.get("BUSINESS_TIMEZONE", "UTC")
    return ZoneInfo(name)


def business_today(now, tz):
    """The calendar date in the business timezone for a naive-UTC `now`."""
    return now.replace(tzinfo=timezone.utc).astimezone(tz).date()


def business_time_to_utc(day: date, at: time, tz):
    """Convert a wall-clock time on `day` in `tz` to a naive UTC datetime."""
    local = datetime.combine(day, at).replace(tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def format_datetime_utc(dt):
    """
    Format a datetime object as an ISO-8601 UTC string.

    Args:
        dt: datetime object, or None

    Returns:
        str: e.g. "2025-10-15T14:30:45Z", or None if dt is None
    """
    if not dt:
        return None

    # If dt is naive (no timezone), assume it's UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
