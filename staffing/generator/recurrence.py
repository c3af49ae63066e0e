from __future__ import annotations

import datetime
from typing import Iterable, Iterator, List

WEEKDAY_TOKENS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def weekday_index(value: datetime.date) -> int:
    """Return the weekday of ``value`` with 0 = Sunday, matching stored templates."""
    return (value.weekday() + 1) % 7


class RecurrenceExpander:
    """Restartable iterable over the dates in a window that fall on the given weekdays."""

    def __init__(self, days_of_week: Iterable[int], start: datetime.date, end: datetime.date) -> None:
        self.days_of_week = frozenset(int(day) for day in (days_of_week or []))
        self.start = _as_date(start)
        self.end = _as_date(end)

    def __iter__(self) -> Iterator[datetime.date]:
        if not self.days_of_week or self.start > self.end:
            return
        current = self.start
        step = datetime.timedelta(days=1)
        while current <= self.end:
            if weekday_index(current) in self.days_of_week:
                yield current
            current += step

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __repr__(self) -> str:
        days = ",".join(WEEKDAY_TOKENS[day] for day in sorted(self.days_of_week) if 0 <= day <= 6)
        return f"RecurrenceExpander([{days}], {self.start.isoformat()}..{self.end.isoformat()})"


def _as_date(value: datetime.date) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    raise TypeError("Recurrence bounds must be date or datetime instances.")


def expand_dates(days_of_week: Iterable[int], start: datetime.date, end: datetime.date) -> List[datetime.date]:
    return list(RecurrenceExpander(days_of_week, start, end))


def shift_hours(start: datetime.time, end: datetime.time) -> float:
    """Length of a shift in hours; an end at or before the start wraps past midnight."""
    start_minutes = start.hour * 60 + start.minute
    end_minutes = end.hour * 60 + end.minute
    if end_minutes <= start_minutes:
        end_minutes += 24 * 60
    return round((end_minutes - start_minutes) / 60.0, 2)
