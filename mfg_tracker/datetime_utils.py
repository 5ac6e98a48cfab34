"""
DateTime utility functions for the application.

Timestamps are stored as naive UTC datetimes.
"""
from datetime import date, datetime, time, timedelta, timezone


def utcnow():
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_datetime_iso(dt):
    """
    Format a stored datetime as an ISO-8601 UTC string ("2025-10-15T14:30:45Z").

    Args:
        dt: datetime object or None

    Returns:
        str or None
    """
    if not dt:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"


def parse_datetime(value):
    """
    Parse an ISO date or datetime string into a naive UTC datetime.

    Returns None for empty input. Raises ValueError for malformed input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def utc_day_bounds(moment):
    """Return (start, end) of the UTC calendar day containing moment."""
    start = datetime.combine(moment.date(), time.min)
    return start, start + timedelta(days=1)


def filename_timestamp(moment=None):
    """ISO timestamp safe for use inside a filename (':' and '.' replaced)."""
    moment = moment or utcnow()
    return format_datetime_iso(moment).replace(":", "-").replace(".", "-")
