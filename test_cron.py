"""
Tests for cron expression validation and next trigger computation.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from cronmanager.cron import (
    CronExpressionTrigger,
    humanize,
    is_valid,
    next_trigger,
    parse_cron,
    upcoming_triggers,
)
from cronmanager.errors import InvalidScheduleError

UTC = timezone.utc


def test_daily_midnight_from_mid_morning_in_sao_paulo():
    tz = ZoneInfo("America/Sao_Paulo")
    result = next_trigger("0 0 * * *", datetime(2025, 1, 1, 10, 0), "America/Sao_Paulo")
    assert result == datetime(2025, 1, 2, 0, 0, tzinfo=tz)
    assert result.utcoffset() == timedelta(hours=-3)


def test_next_trigger_is_deterministic():
    now = datetime(2025, 3, 10, 8, 17, 42, tzinfo=UTC)
    assert next_trigger("*/15 * * * *", now) == next_trigger("*/15 * * * *", now)


def test_next_trigger_is_strictly_after_now():
    # now sits exactly on a matching minute
    now = datetime(2025, 3, 10, 8, 15, tzinfo=UTC)
    assert next_trigger("*/15 * * * *", now) == datetime(2025, 3, 10, 8, 30, tzinfo=UTC)
    assert next_trigger("* * * * *", now) == datetime(2025, 3, 10, 8, 16, tzinfo=UTC)


def test_next_trigger_satisfies_all_fields():
    now = datetime(2025, 3, 10, 8, 17, tzinfo=UTC)
    cron = parse_cron("5,35 9-17 * 3-5 mon-fri")
    moment = now
    for _ in range(20):
        moment = next_trigger(cron, moment)
        assert cron.matches(moment)
        assert moment > now


def test_day_of_month_and_weekday_are_intersected():
    # Friday the 13th, not "every 13th or every Friday"
    now = datetime(2025, 1, 1, tzinfo=UTC)
    result = next_trigger("0 0 13 * 5", now)
    assert result == datetime(2025, 6, 13, 0, 0, tzinfo=UTC)
    assert result.weekday() == 4


def test_weekday_seven_means_sunday():
    now = datetime(2025, 1, 1, tzinfo=UTC)  # a Wednesday
    assert next_trigger("30 6 * * 7", now) == next_trigger("30 6 * * 0", now)
    assert next_trigger("30 6 * * 7", now) == datetime(2025, 1, 5, 6, 30, tzinfo=UTC)


def test_month_and_weekday_names():
    cron = parse_cron("0 12 * JAN,jul sun")
    assert cron.months == frozenset({1, 7})
    assert cron.days_of_week == frozenset({0})


def test_steps_and_ranges_expand():
    cron = parse_cron("1-30/10 */6 * * *")
    assert cron.minutes == frozenset({1, 11, 21})
    assert cron.hours == frozenset({0, 6, 12, 18})


def test_leap_day_schedule_is_valid():
    now = datetime(2025, 1, 1, tzinfo=UTC)
    assert next_trigger("0 0 29 2 *", now) == datetime(2028, 2, 29, tzinfo=UTC)


def test_aware_now_is_converted_to_reference_zone():
    now = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)  # 09:00 in Sao Paulo
    result = next_trigger("0 10 * * *", now, "America/Sao_Paulo")
    assert result == datetime(2025, 1, 1, 13, 0, tzinfo=UTC)


@pytest.mark.parametrize("expression", [
    "",
    "* * * *",
    "* * * * * *",
    "60 * * * *",
    "* 24 * * *",
    "* * 0 * *",
    "* * * 13 *",
    "* * * * 8",
    "5-1 * * * *",
    "*/0 * * * *",
    "*/ * * * *",
    "1,,2 * * * *",
    "5/10 * * * *",
    "abc * * * *",
    "* * 30 2 *",
    "* * 31 4,6 *",
])
def test_invalid_expressions_are_rejected(expression):
    with pytest.raises(InvalidScheduleError):
        parse_cron(expression)
    assert not is_valid(expression)


def test_invalid_schedule_error_is_a_value_error():
    with pytest.raises(ValueError) as excinfo:
        next_trigger("61 * * * *")
    assert "61 * * * *" in str(excinfo.value)


def test_upcoming_triggers():
    now = datetime(2025, 1, 1, tzinfo=UTC)
    times = upcoming_triggers("0 */8 * * *", 4, now)
    assert times == [
        datetime(2025, 1, 1, 8, tzinfo=UTC),
        datetime(2025, 1, 1, 16, tzinfo=UTC),
        datetime(2025, 1, 2, 0, tzinfo=UTC),
        datetime(2025, 1, 2, 8, tzinfo=UTC),
    ]


def test_trigger_advances_past_previous_fire_time():
    trigger = CronExpressionTrigger("*/5 * * * *", "UTC")
    fired = datetime(2025, 1, 1, 10, 5, tzinfo=UTC)
    now = fired + timedelta(milliseconds=3)
    assert trigger.get_next_fire_time(fired, now) == datetime(2025, 1, 1, 10, 10, tzinfo=UTC)
    assert trigger.get_next_fire_time(None, now) == datetime(2025, 1, 1, 10, 10, tzinfo=UTC)
    assert str(trigger) == "cron[*/5 * * * *]"


def test_humanize():
    assert humanize("*/1 * * * *") == "Every minute"
    assert humanize("*/5 * * * *") == "Every 5 minutes"
    assert humanize("30 2 * * *") == "Daily at 02:30"
    assert humanize("0 9 * * 1") == "Weekly on Mon at 09:00"
    assert humanize("0 0 1,15 * *") == "0 0 1,15 * *"
