"""UTC time helpers.

SQLite hands back naive datetimes; everything stored is UTC, so reads are
normalised with ``as_utc`` before comparing against ``utcnow()``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def after_ms(start: datetime, milliseconds: int) -> datetime:
    return start + timedelta(milliseconds=milliseconds)
