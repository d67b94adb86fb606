"""Tests for digest schedule evaluation."""

from datetime import datetime

import pytest

from pricewatch.worker.schedule import (
    ScheduleConfig,
    describe_schedule,
    next_send_time,
    should_send,
    slot_key,
    to_cron_expression,
    to_local,
)

DAILY_9 = ScheduleConfig(frequency="daily", hour=9)
MONDAY_9 = ScheduleConfig(frequency="weekly", hour=9, day_of_week=1)


def test_daily_does_not_resend_same_day():
    last = datetime(2026, 1, 2, 9, 15)

    assert should_send(datetime(2026, 1, 2, 9, 15), last, DAILY_9) is False
    assert should_send(datetime(2026, 1, 2, 9, 20), last, DAILY_9) is False
    assert should_send(datetime(2026, 1, 3, 8, 59), last, DAILY_9) is False
    assert should_send(datetime(2026, 1, 3, 9, 0), last, DAILY_9) is True


def test_daily_first_send():
    assert should_send(datetime(2026, 1, 2, 8, 0), None, DAILY_9) is False
    assert should_send(datetime(2026, 1, 2, 9, 30), None, DAILY_9) is True


def test_daily_last_send_before_hour_keeps_same_day_slot():
    last = datetime(2026, 1, 2, 7, 0)
    assert next_send_time(last, DAILY_9) == datetime(2026, 1, 2, 9, 0)


def test_weekly_rolls_to_configured_weekday():
    # 2026-01-01 is a Thursday; the next Monday is 2026-01-05
    thursday = datetime(2026, 1, 1, 10, 0)
    assert next_send_time(None, MONDAY_9, thursday) == datetime(2026, 1, 5, 9, 0)
    assert should_send(thursday, None, MONDAY_9) is False
    assert should_send(datetime(2026, 1, 5, 9, 0), None, MONDAY_9) is True


def test_weekly_after_send_waits_a_week():
    last = datetime(2026, 1, 5, 9, 2)
    assert next_send_time(last, MONDAY_9) == datetime(2026, 1, 12, 9, 0)
    assert should_send(datetime(2026, 1, 6, 9, 0), last, MONDAY_9) is False
    assert should_send(datetime(2026, 1, 12, 9, 0), last, MONDAY_9) is True


def test_weekly_defaults_to_monday():
    config = ScheduleConfig(frequency="weekly", hour=8)
    assert config.weekday == 1
    assert config.to_dict() == {"frequency": "weekly", "hour": 8, "day_of_week": 1}


def test_next_send_time_requires_now_without_history():
    with pytest.raises(ValueError):
        next_send_time(None, DAILY_9)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"frequency": "hourly"},
        {"hour": 24},
        {"hour": -1},
        {"frequency": "weekly", "day_of_week": 0},
        {"frequency": "weekly", "day_of_week": 8},
    ],
)
def test_invalid_config_rejected(kwargs):
    with pytest.raises(ValueError):
        ScheduleConfig(**kwargs)


def test_from_dict_accepts_camel_case_day():
    config = ScheduleConfig.from_dict({"frequency": "weekly", "hour": "7", "dayOfWeek": 5})
    assert config == ScheduleConfig(frequency="weekly", hour=7, day_of_week=5)


def test_cron_and_description():
    assert to_cron_expression(DAILY_9) == "0 9 * * *"
    assert to_cron_expression(MONDAY_9) == "0 9 * * 1"
    assert to_cron_expression(ScheduleConfig(frequency="weekly", hour=18, day_of_week=7)) == "0 18 * * 0"
    assert describe_schedule(DAILY_9) == "Daily at 09:00"
    assert describe_schedule(MONDAY_9) == "Every Monday at 09:00"


def test_slot_key():
    assert slot_key(datetime(2026, 1, 5, 9, 0)) == "2026-01-05T09:00"


def test_to_local():
    utc = datetime(2026, 1, 2, 14, 0)
    assert to_local(utc, "UTC") == utc
    assert to_local(utc, "America/New_York") == datetime(2026, 1, 2, 9, 0)
    assert to_local(None, "UTC") is None
