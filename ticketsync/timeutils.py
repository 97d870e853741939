"""
UTC timestamp helpers shared by the store, scheduler and schemas.

ServiceNow reports timestamps as ``YYYY-MM-DD HH:MM:SS`` in UTC. SQLite
drops tzinfo on read, so every datetime coming out of storage is passed
through :func:`as_utc` before it is compared.
"""

from datetime import datetime, timezone
from typing import Optional

SERVICENOW_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_servicenow_datetime(value) -> Optional[datetime]:
    """
    Parse a ServiceNow timestamp.

    Accepts the Table API format as well as ISO 8601 strings and datetime
    objects. Returns None for empty values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)

    text = str(value).strip()
    try:
        return datetime.strptime(text, SERVICENOW_DATETIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))


def format_servicenow_datetime(value: datetime) -> str:
    """Format a datetime the way ServiceNow encoded queries expect."""
    return as_utc(value).strftime(SERVICENOW_DATETIME_FORMAT)
