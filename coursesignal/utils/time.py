"""UTC time helpers.

WHAT:
    Produces and normalizes the naive-UTC datetimes stored in every table.
WHY:
    Attribution compares touch and purchase instants directly, so every value
    entering the database must already be UTC with tzinfo stripped.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Current instant as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[Union[datetime, str]]) -> Optional[datetime]:
    """Normalize an aware/naive datetime or ISO-8601 string to naive UTC.

    Naive inputs are assumed to already be UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
