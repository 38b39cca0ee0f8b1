"""
Clock Utilities
Timezone-aware UTC helpers shared by models and services
"""
from datetime import datetime
from typing import Optional, Union

import pytz


def utcnow() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the database into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize an instant for the database (UTC, ISO-8601)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()
