from __future__ import annotations

from datetime import datetime, timezone

import pytest

from beacon.services.jobs.schedule import CronSchedule


def test_step_expression_expands_to_minute_set() -> None:
    schedule = CronSchedule.parse("*/10 * * * *")

    assert schedule.minute == frozenset({0, 10, 20, 30, 40, 50})
    assert schedule.hour is None
    assert schedule.arq_kwargs() == {"second": 0, "microsecond": 0, "minute": {0, 10, 20, 30, 40, 50}}


def test_lists_and_ranges() -> None:
    schedule = CronSchedule.parse("0,30 9-11 1 1-3 *")

    assert schedule.minute == frozenset({0, 30})
    assert schedule.hour == frozenset({9, 10, 11})
    assert schedule.day == frozenset({1})
    assert schedule.month == frozenset({1, 2, 3})


def test_weekdays_convert_to_monday_first() -> None:
    # Cron 1-5 is Monday..Friday; 0 and 7 are both Sunday.
    assert CronSchedule.parse("0 9 * * 1-5").weekday == frozenset({0, 1, 2, 3, 4})
    assert CronSchedule.parse("0 9 * * 0,7").weekday == frozenset({6})


@pytest.mark.parametrize("expression", ["* * * *", "61 * * * *", "*/0 * * * *", "5-1 * * * *", "a * * * *"])
def test_invalid_expressions_are_rejected(expression: str) -> None:
    with pytest.raises(ValueError):
        CronSchedule.parse(expression)


def test_next_after_is_strictly_later() -> None:
    schedule = CronSchedule.parse("*/5 * * * *")
    moment = datetime(2025, 6, 2, 10, 3, 20, tzinfo=timezone.utc)

    first = schedule.next_after(moment)
    second = schedule.next_after(first)

    assert first == datetime(2025, 6, 2, 10, 5, tzinfo=timezone.utc)
    assert second == datetime(2025, 6, 2, 10, 10, tzinfo=timezone.utc)


def test_daily_schedule_rolls_to_next_day() -> None:
    schedule = CronSchedule.parse("0 9 * * *")

    assert schedule.next_after(datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)) == datetime(
        2025, 6, 3, 9, 0, tzinfo=timezone.utc
    )
