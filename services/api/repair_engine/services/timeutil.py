"""UTC helpers shared by services."""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (some drivers return naive UTC values)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def month_key(dt: datetime) -> str:
    """YYYY-MM of a timestamp (UTC)."""
    return as_utc(dt).strftime("%Y-%m")


def parse_month(month: str) -> tuple[datetime, datetime]:
    """Return [start, end) of a YYYY-MM month in UTC.

    Raises:
        ValueError: if month is not YYYY-MM.
    """
    try:
        year_s, mon_s = month.split("-")
        year, mon = int(year_s), int(mon_s)
    except ValueError as e:
        raise ValueError(f"Invalid month {month!r}, expected YYYY-MM") from e
    if len(year_s) != 4 or not 1 <= mon <= 12:
        raise ValueError(f"Invalid month {month!r}, expected YYYY-MM")
    start = datetime(year, mon, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) if mon == 12 else datetime(year, mon + 1, 1, tzinfo=timezone.utc)
    return start, end


def add_months(dt: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month length."""
    total = dt.month - 1 + months
    year = dt.year + total // 12
    mon = total % 12 + 1
    # Last day of the target month.
    nxt = datetime(year + (1 if mon == 12 else 0), 1 if mon == 12 else mon + 1, 1, tzinfo=dt.tzinfo)
    last_day = (nxt - timedelta(days=1)).day
    return dt.replace(year=year, month=mon, day=min(dt.day, last_day))
