import re
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ConfigurationError


MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
MAX_YEAR_DISTANCE = 100


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def parse_month(value: str, *, today: Optional[date] = None) -> date:
    """Return the first day of a ``YYYY-MM`` month string.

    Raises ConfigurationError for malformed strings and for years more than
    a century away from ``today``.
    """
    today = today or local_today()
    clean = (value or "").strip()
    if not MONTH_PATTERN.match(clean):
        raise ConfigurationError(f"Invalid month '{value}', expected YYYY-MM")
    year, month = int(clean[:4]), int(clean[5:7])
    if abs(year - today.year) > MAX_YEAR_DISTANCE:
        raise ConfigurationError(
            f"Month '{value}' is more than {MAX_YEAR_DISTANCE} years from today"
        )
    return date(year, month, 1)


def validate_months(values: list[str], *, today: Optional[date] = None) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        seen[month_key(parse_month(value, today=today))] = None
    return list(seen)


def month_start(value: date) -> date:
    return value.replace(day=1)


def month_end(value: date) -> date:
    first = value.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def iter_months(start: date, end: date) -> list[str]:
    """Month keys from ``start``'s month through ``end``'s month inclusive."""
    months: list[str] = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        months.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            year += 1
            month = 1
    return months
