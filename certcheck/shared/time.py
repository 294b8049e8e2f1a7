from datetime import date, datetime, timezone


def now_utc() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def fmt_day(value: date | None) -> str:
    """Format a calendar day as 'Sat, 1 Jun 2024'."""
    if not value:
        return ""
    return f"{value:%a}, {value.day} {value:%b %Y}"


def fmt_date_range(start: date | None, end: date | None) -> str:
    if not start:
        return ""
    if not end or end == start:
        return f"{start.day} {start:%B %Y}"
    if (start.year, start.month) == (end.year, end.month):
        return f"{start.day}–{end.day} {end:%B %Y}"
    return f"{start.day} {start:%B %Y} – {end.day} {end:%B %Y}"


def coerce_date(value) -> date | None:
    """Accept a date, a datetime or an ISO string; anything else is None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None
