"""Shared datetime and parsing helpers.

SQLite returns naive datetimes even for ``DateTime(timezone=True)``
columns; every comparison goes through ``as_utc`` so naive values read
back from the store compare correctly against aware ``utcnow()`` values.
"""

from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime (naive input is assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_between(start: datetime | None, end: datetime | None) -> float | None:
    """Elapsed hours between two datetimes, rounded to 2 decimals."""
    if start is None or end is None:
        return None
    delta = as_utc(end) - as_utc(start)
    return round(delta.total_seconds() / 3600, 2)


def parse_datetime(value) -> datetime | None:
    """Parse a date or datetime response value into an aware UTC datetime.

    Accepts ``date``/``datetime`` objects and ISO strings
    (``YYYY-MM-DD``, ``YYYY-MM-DDTHH:MM[:SS][+TZ]``, trailing ``Z``).
    A bare date means midnight UTC. Returns None for empty/invalid input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.combine(date.fromisoformat(text), time.min, tzinfo=timezone.utc)
    except (ValueError, TypeError):
        return None


def isoformat(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None
