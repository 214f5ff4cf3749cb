"""
Helper Functions
================

Common utility functions used across the application.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return datetime_to_ms(utc_now())


def ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if value is None:
        return None
    return EPOCH + timedelta(milliseconds=value)


def datetime_to_ms(dt: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to epoch milliseconds (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def is_uuid(value: Optional[str]) -> bool:
    """Check whether *value* parses as a UUID."""
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True
