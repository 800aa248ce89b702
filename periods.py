import re
from datetime import date, datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from config import get_settings

_MONTH_KEY_RE = re.compile(r"^\d{4}-\d{2}$")


def is_valid_month_key(value: object) -> bool:
    if not isinstance(value, str) or not _MONTH_KEY_RE.match(value):
        return False
    return 1 <= int(value[5:7]) <= 12


def parse_month_key(value: str) -> tuple[int, int]:
    if not is_valid_month_key(value):
        raise ValueError(f"Invalid month key: {value!r}")
    return int(value[:4]), int(value[5:7])


def format_month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_key_for(day: date) -> str:
    return format_month_key(day.year, day.month)


def current_month_key(today: Optional[date] = None) -> str:
    if today is None:
        tz = ZoneInfo(get_settings().timezone)
        today = datetime.now(tz).date()
    return month_key_for(today)


def add_months(month_key: str, months: int) -> str:
    year, month = parse_month_key(month_key)
    total_months = month - 1 + months
    return format_month_key(year + total_months // 12, total_months % 12 + 1)


def months_between(start_key: str, end_key: str) -> int:
    """Signed number of months from ``start_key`` to ``end_key``."""
    start_year, start_month = parse_month_key(start_key)
    end_year, end_month = parse_month_key(end_key)
    return (end_year - start_year) * 12 + (end_month - start_month)


def month_range(start_key: str, count: int) -> list[str]:
    return [add_months(start_key, offset) for offset in range(count)]


def later_keys(keys: Iterable[str], month_key: str) -> list[str]:
    return sorted(key for key in keys if key > month_key)
