"""Timestamp helpers.

All tracking timestamps are stored as naive UTC datetimes. Inbound ISO
strings carry arbitrary offsets (Shopify sends shop-local offsets), so they
are normalized here before they reach the event store or the matchers.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC now, matching the storage convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into naive UTC.

    Returns None for empty or unparseable input instead of raising.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    # fromisoformat() on older interpreters rejects a trailing "Z"
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return to_naive_utc(parsed)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_naive_utc(value).isoformat() + "Z"
