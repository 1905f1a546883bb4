from __future__ import annotations

from datetime import date, datetime, timezone

# Fixed-width UTC format so stored timestamps compare correctly as strings in SQL.
# The year is formatted separately: strftime("%Y") is not zero-padded below 1000 on every platform.
ISO_FORMAT = "-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    value = ensure_utc(value)
    return f"{value.year:04d}" + value.strftime(ISO_FORMAT)


def parse_datetime(value: datetime | date | str | None) -> datetime | None:
    """Parse a stored or user supplied timestamp into an aware UTC datetime.

    Accepts datetimes, dates (midnight UTC) and ISO 8601 strings with or
    without a trailing ``Z``. Raises ``ValueError`` for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Empty date value")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported date value: {value!r}")
