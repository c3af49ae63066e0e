from __future__ import annotations

import datetime

import pytest

from staffing.generator.recurrence import RecurrenceExpander, expand_dates, shift_hours, weekday_index

WEEKDAYS = [1, 2, 3, 4, 5]  # Mon..Fri with 0 = Sunday


def test_weekday_index_uses_sunday_zero() -> None:
    assert weekday_index(datetime.date(2025, 2, 2)) == 0  # Sunday
    assert weekday_index(datetime.date(2025, 2, 3)) == 1  # Monday
    assert weekday_index(datetime.date(2025, 2, 1)) == 6  # Saturday


def test_expands_weekdays_in_inclusive_window() -> None:
    dates = expand_dates(WEEKDAYS, datetime.date(2025, 2, 1), datetime.date(2025, 2, 7))
    assert dates == [datetime.date(2025, 2, day) for day in range(3, 8)]


def test_weekend_window_is_empty_for_weekday_pattern() -> None:
    assert expand_dates(WEEKDAYS, datetime.date(2025, 2, 1), datetime.date(2025, 2, 2)) == []


def test_reversed_window_and_empty_pattern_yield_nothing() -> None:
    assert expand_dates(WEEKDAYS, datetime.date(2025, 2, 7), datetime.date(2025, 2, 1)) == []
    assert expand_dates([], datetime.date(2025, 2, 1), datetime.date(2025, 2, 28)) == []


def test_expander_is_restartable_and_deterministic() -> None:
    expander = RecurrenceExpander([0, 6], datetime.date(2025, 2, 1), datetime.date(2025, 2, 16))
    first = list(expander)
    second = list(expander)
    assert first == second
    assert len(expander) == 6
    assert all(weekday_index(day) in {0, 6} for day in first)


def test_single_day_window() -> None:
    monday = datetime.date(2025, 2, 3)
    assert expand_dates(WEEKDAYS, monday, monday) == [monday]


def test_accepts_datetimes_and_rejects_other_bounds() -> None:
    start = datetime.datetime(2025, 2, 3, 12, 0)
    assert expand_dates([1], start, start) == [datetime.date(2025, 2, 3)]
    with pytest.raises(TypeError):
        RecurrenceExpander([1], "2025-02-03", datetime.date(2025, 2, 3))


@pytest.mark.parametrize(
    "start,end,expected",
    [
        (datetime.time(7, 0), datetime.time(15, 0), 8.0),
        (datetime.time(19, 0), datetime.time(7, 0), 12.0),
        (datetime.time(23, 30), datetime.time(0, 15), 0.75),
    ],
)
def test_shift_hours_wraps_overnight(start, end, expected) -> None:
    assert shift_hours(start, end) == expected
