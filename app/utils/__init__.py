"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import datetime_to_ms, is_uuid, ms_to_datetime, now_ms, utc_now

__all__ = ["datetime_to_ms", "is_uuid", "ms_to_datetime", "now_ms", "utc_now"]
