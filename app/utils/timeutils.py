"""UTC time helpers shared by the sync services."""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a datetime to aware UTC.

    SQLite hands back naive datetimes for DateTime(timezone=True) columns;
    everything we store is UTC, so naive values are tagged rather than shifted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_rfc3339(value: str) -> datetime:
    """Parse a Drive timestamp such as 2024-01-01T00:00:00.000Z."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return as_utc(parsed)


def modified_after(candidate: str, reference: str | None) -> bool:
    """Whether Drive timestamp candidate is strictly later than reference.

    Equal instants are not "after", whatever their string formatting.
    """
    if not reference:
        return True
    return parse_rfc3339(candidate) > parse_rfc3339(reference)
