"""UTC timestamp helpers shared by the storage and dispatcher layers.

SQLite has no native datetime type, so timestamps are stored as fixed-width
ISO-8601 strings.  The fixed width matters: ``run_at <= ?`` comparisons in
the claim query are plain string comparisons.
"""

from __future__ import annotations

from datetime import UTC, datetime

__all__ = ["utcnow", "to_db", "from_db"]

_DB_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_db(value: datetime) -> str:
    """Render *value* as a sortable UTC string.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_DB_FORMAT)


def from_db(value: str | None) -> datetime | None:
    """Parse a string written by :func:`to_db`; ``None`` passes through."""
    if value is None:
        return None
    return datetime.strptime(value, _DB_FORMAT).replace(tzinfo=UTC)
