"""
Utility functions for the field outbox.

Includes id generation, UTC time helpers and ISO-8601 formatting.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, Union


def generate_id() -> str:
    """Generate a UUID string for event identification."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(dt: Union[str, datetime]) -> datetime:
    """Parse datetime from string or return datetime object (always tz-aware UTC)."""
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_optional_datetime(dt: Optional[Union[str, datetime]]) -> Optional[datetime]:
    if dt is None or dt == "":
        return None
    return parse_datetime(dt)


def isoformat_utc(dt: datetime) -> str:
    """Format as ISO-8601 with a trailing Z, the form the sync endpoint expects.

    Microseconds are always emitted so stored values sort lexicographically.
    """
    return parse_datetime(dt).isoformat(timespec="microseconds").replace("+00:00", "Z")
