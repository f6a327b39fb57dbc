"""
Time source.

Timestamps are stored as naive UTC, matching the database columns.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
