"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, datetime

__all__ = [
    "ensure_utc",
    "max_datetime",
    "parse_datetime",
    "serialize_datetime",
    "utc_now",
]


def utc_now() -> datetime:
    """Return the current instant as a timezone-aware UTC datetime."""
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` in UTC, treating naive values as already UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to an ISO 8601 UTC string."""
    normalised = ensure_utc(value)
    return normalised.isoformat() if normalised is not None else None


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string into a UTC ``datetime`` instance."""
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def max_datetime(*values: datetime | None) -> datetime | None:
    """Return the latest of ``values`` ignoring ``None`` entries."""
    present = [value for value in values if value is not None]
    return max(present) if present else None
