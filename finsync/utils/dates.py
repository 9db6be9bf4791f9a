"""
Date/time helpers shared by the pipeline stages
"""
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalize a datetime read back from the store.

    SQLite returns naive values for TIMESTAMP(timezone=True) columns, PostgreSQL returns aware ones.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value) -> date | None:
    """
    Lenient date parsing for upstream payloads.

    Example:
        >>> parse_date("2023-01-15")
        date(2023, 1, 15)
        >>> parse_date("2023-01-15T10:20:30+05:30")
        date(2023, 1, 15)
        >>> parse_date("") is None
        True
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in ("%d-%m-%Y", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_timestamp(value) -> datetime | None:
    """Parse an upstream ISO timestamp; naive values are treated as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        day = parse_date(value)
        if day is None:
            return None
        parsed = datetime(day.year, day.month, day.day)
    return as_utc(parsed)
