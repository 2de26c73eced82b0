"""Naive UTC timestamps.

Every DateTime column stores naive UTC, so all timestamps come from here
rather than ``datetime.utcnow()`` (deprecated since 3.12).
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
