from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tgdigest.schedule import (
    DaySchedule,
    HourlyRange,
    Schedule,
    ScheduleError,
    normalize_time_hm,
    normalize_timezone,
)

_RATE_RE = re.compile(r"^rate:(?P<digest_id>\d+):(?P<vote>up|down)$")
_HOURLY_RE = re.compile(r"^(?P<start>\d{1,2}:\d{2})\s*-\s*(?P<end>\d{1,2}:\d{2})$")
_TRUE_VALUES = {"on", "true", "yes", "1", "enable", "enabled"}
_FALSE_VALUES = {"off", "false", "no", "0", "disable", "disabled"}


class UsageError(ValueError):
    """Bad command arguments; the message is the reply shown to the operator."""


@dataclass(slots=True)
class RateCallback:
    digest_id: int
    value: int


def split_args(raw: str | None) -> list[str]:
    return (raw or "").split()


def parse_toggle(raw: str | None) -> bool | None:
    """``on``/``off`` style flag; None when no argument was given."""
    value = (raw or "").strip().lower()
    if not value:
        return None
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise UsageError("Expected on or off")


def parse_threshold(raw: str | None) -> float:
    try:
        value = float((raw or "").strip().replace(",", "."))
    except ValueError as exc:
        raise UsageError("Threshold must be a number between 0 and 1") from exc
    if not 0.0 <= value <= 1.0:
        raise UsageError("Threshold must be a number between 0 and 1")
    return value


def parse_weight(raw: str | None) -> float | None:
    """Channel weight in [0.1, 2.0]; ``auto`` returns None."""
    value = (raw or "").strip().lower()
    if value == "auto":
        return None
    try:
        weight = float(value.replace(",", "."))
    except ValueError as exc:
        raise UsageError("Weight must be a number between 0.1 and 2.0, or auto") from exc
    if not 0.1 <= weight <= 2.0:
        raise UsageError("Weight must be a number between 0.1 and 2.0, or auto")
    return weight


def parse_positive_int(raw: str | None, *, name: str) -> int:
    try:
        value = int((raw or "").strip())
    except ValueError as exc:
        raise UsageError(f"{name} must be a positive integer") from exc
    if value <= 0:
        raise UsageError(f"{name} must be a positive integer")
    return value


def parse_rate_callback(data: str | None) -> RateCallback | None:
    match = _RATE_RE.match((data or "").strip())
    if match is None:
        return None
    value = 1 if match.group("vote") == "up" else -1
    return RateCallback(digest_id=int(match.group("digest_id")), value=value)


def _times(raw: str) -> list[str]:
    values = [normalize_time_hm(part) for part in raw.split(",") if part.strip()]
    if not values:
        raise UsageError("Give at least one time, e.g. 09:00,13:00")
    return sorted(set(values))


def _hourly(raw: str) -> HourlyRange:
    match = _HOURLY_RE.match(raw.strip())
    if match is None:
        raise UsageError("Hourly range must look like 10:00-18:00")
    return HourlyRange(
        start=normalize_time_hm(match.group("start")),
        end=normalize_time_hm(match.group("end")),
    )


def apply_schedule_command(current: Schedule | None, args: list[str]) -> Schedule | None:
    """Return the schedule after one ``/schedule`` edit; None means the schedule is cleared.

    Forms: ``timezone <zone>``, ``weekdays|weekends times 09:00,13:00``,
    ``weekdays|weekends hourly 10:00-18:00``, ``weekdays|weekends clear`` and ``clear``.
    """
    if not args:
        raise UsageError("Usage: /schedule show|preview [n]|timezone <zone>|<weekdays|weekends> ...")
    action = args[0].lower()
    if action == "clear":
        return None

    schedule = current or Schedule()
    schedule = Schedule(
        timezone=schedule.timezone,
        weekdays=DaySchedule(times=list(schedule.weekdays.times), hourly=schedule.weekdays.hourly),
        weekends=DaySchedule(times=list(schedule.weekends.times), hourly=schedule.weekends.hourly),
    )

    try:
        if action in ("timezone", "tz"):
            if len(args) != 2:
                raise UsageError("Usage: /schedule timezone Europe/Kyiv")
            schedule.timezone = normalize_timezone(args[1])
        elif action in ("weekdays", "weekends"):
            day = schedule.weekdays if action == "weekdays" else schedule.weekends
            if len(args) < 2:
                raise UsageError(f"Usage: /schedule {action} times|hourly|clear ...")
            mode = args[1].lower()
            rest = " ".join(args[2:])
            if mode == "times":
                day.times = _times(rest)
            elif mode == "hourly":
                day.hourly = _hourly(rest)
            elif mode == "clear":
                day.times = []
                day.hourly = None
            else:
                raise UsageError(f"Usage: /schedule {action} times|hourly|clear ...")
        else:
            raise UsageError("Usage: /schedule show|preview [n]|timezone <zone>|<weekdays|weekends> ...")
        schedule.validate()
    except ScheduleError as exc:
        raise UsageError(f"Invalid schedule: {exc}") from exc
    return schedule


def describe_schedule(schedule: Schedule | None) -> str:
    if schedule is None or schedule.is_empty():
        return "No schedule: the digest runs every DIGEST_WINDOW"

    def _day(label: str, day: DaySchedule) -> str:
        parts = []
        if day.times:
            parts.append("times " + ",".join(day.times))
        if day.hourly is not None:
            parts.append(f"hourly {day.hourly.start}-{day.hourly.end}")
        return f"{label}: {'; '.join(parts) if parts else 'off'}"

    return "\n".join(
        [
            f"Timezone: {schedule.timezone}",
            _day("Weekdays", schedule.weekdays),
            _day("Weekends", schedule.weekends),
        ]
    )


def format_value(value: Any) -> str:
    if value is None:
        return "—"
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
