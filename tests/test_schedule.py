from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from tgdigest.schedule import (
    DaySchedule,
    HourlyRange,
    Schedule,
    ScheduleError,
    format_duration,
    normalize_time_hm,
    parse_duration,
    parse_schedule,
)

KYIV = ZoneInfo("Europe/Kyiv")


def _kyiv_schedule() -> Schedule:
    return Schedule(
        timezone="Europe/Kyiv",
        weekdays=DaySchedule(times=["09:00", "13:00", "18:00"]),
        weekends=DaySchedule(hourly=HourlyRange(start="10:00", end="18:00")),
    )


def test_next_times_weekday_slots_in_local_time() -> None:
    now = datetime(2024, 1, 1, 8, 30, tzinfo=KYIV)

    upcoming = _kyiv_schedule().next_times(now, 3)

    assert [slot.strftime("%Y-%m-%d %H:%M") for slot in upcoming] == [
        "2024-01-01 09:00",
        "2024-01-01 13:00",
        "2024-01-01 18:00",
    ]


def test_next_times_rolls_into_weekend_hourly() -> None:
    now = datetime(2024, 1, 5, 19, 0, tzinfo=KYIV)

    upcoming = _kyiv_schedule().next_times(now, 2)

    assert [slot.strftime("%a %H:%M") for slot in upcoming] == ["Sat 10:00", "Sat 11:00"]


def test_next_times_strictly_increasing() -> None:
    now = datetime(2024, 3, 29, 0, 0, tzinfo=timezone.utc)

    upcoming = _kyiv_schedule().next_times(now, 30)

    instants = [slot.astimezone(timezone.utc) for slot in upcoming]
    assert instants == sorted(instants)
    assert len(set(instants)) == len(instants)


def test_previous_time_returns_latest_slot() -> None:
    now = datetime(2024, 1, 1, 14, 5, tzinfo=KYIV)

    slot = _kyiv_schedule().previous_time(now)

    assert slot is not None
    assert slot.astimezone(KYIV).hour == 13


def test_empty_schedule_has_no_slots() -> None:
    schedule = Schedule()
    assert schedule.is_empty()
    assert schedule.next_times(datetime.now(timezone.utc), 5) == []
    assert schedule.previous_time(datetime.now(timezone.utc)) is None


def test_parse_schedule_rejects_bad_values() -> None:
    with pytest.raises(ScheduleError):
        parse_schedule({"timezone": "Mars/Olympus", "weekdays": {"times": ["09:00"]}})
    with pytest.raises(ScheduleError):
        parse_schedule({"timezone": "UTC", "weekdays": {"times": ["09:30"]}})
    with pytest.raises(ScheduleError):
        parse_schedule({"timezone": "UTC", "weekends": {"hourly": {"start": "20:00", "end": "08:00"}}})


def test_schedule_dict_round_trip_normalizes() -> None:
    schedule = parse_schedule(
        {"timezone": "Europe/Kiev", "weekdays": {"times": "9:00,13:00"}, "weekends": {}}
    )

    assert schedule.to_dict() == {
        "timezone": "Europe/Kyiv",
        "weekdays": {"times": ["09:00", "13:00"]},
        "weekends": {},
    }


def test_normalize_time_hm() -> None:
    assert normalize_time_hm("9:00") == "09:00"
    with pytest.raises(ScheduleError):
        normalize_time_hm("24:00")
    with pytest.raises(ScheduleError):
        normalize_time_hm("noon")


def test_parse_duration() -> None:
    assert parse_duration("60m") == timedelta(minutes=60)
    assert parse_duration("1h30m") == timedelta(minutes=90)
    assert parse_duration("45") == timedelta(minutes=45)
    assert format_duration(timedelta(minutes=90)) == "1h30m"
    with pytest.raises(ValueError):
        parse_duration("1x")
    with pytest.raises(ValueError):
        parse_duration("")
