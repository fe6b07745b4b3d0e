"""Tiny time helpers for day bounds and ETA labels."""

from datetime import date, datetime, time, timedelta
from typing import Tuple, Union


def parse_day(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])  # 'YYYY-MM-DD' or full ISO


def day_bounds(day: Union[str, date]) -> Tuple[datetime, datetime]:
    d = parse_day(day)
    start = datetime.combine(d, time.min)  # midnight
    return start, start + timedelta(days=1)  # [start, end)


def hhmm(dt: datetime) -> str:
    return dt.strftime("%H:%M")


def strip_tz(dt: datetime) -> datetime:
    # Stored datetimes are naive wall-clock values
    if dt.tzinfo is None:
        return dt
    return dt.astimezone().replace(tzinfo=None)
