from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

SETTING_DIGEST_SCHEDULE = "digest_schedule"
SETTING_DIGEST_SCHEDULE_ANCHOR = "digest_schedule_anchor"
SETTING_DIGEST_WINDOW = "digest_window"

_LOOKBACK_DAYS = 8
_TIME_RE = re.compile(r"^(?P<hour>\d{1,2}):(?P<minute>\d{2})$")
_DURATION_RE = re.compile(r"(?P<value>\d+)(?P<unit>[dhms])")
_DURATION_UNITS = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}
_TIMEZONE_ALIASES = {
    "Asia/Nicosia": "Europe/Nicosia",
    "Europe/Kiev": "Europe/Kyiv",
}


class ScheduleError(ValueError):
    pass


def parse_duration(value: str) -> timedelta:
    """Parse compact durations like ``60m``, ``6h`` or ``1h30m``."""
    cleaned = (value or "").strip().lower().replace(" ", "")
    if not cleaned:
        raise ValueError("duration must not be empty")
    if cleaned.isdigit():
        return timedelta(minutes=int(cleaned))

    consumed = 0
    total = timedelta(0)
    for match in _DURATION_RE.finditer(cleaned):
        if match.start() != consumed:
            raise ValueError(f"invalid duration: {value!r}")
        unit = _DURATION_UNITS[match.group("unit")]
        total += timedelta(**{unit: int(match.group("value"))})
        consumed = match.end()
    if consumed != len(cleaned):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return "".join(parts)


def normalize_timezone(value: str | None) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        return "UTC"
    return _TIMEZONE_ALIASES.get(cleaned, cleaned)


def normalize_time_hm(value: str) -> str:
    """Accept H:MM or HH:MM and return HH:MM."""
    match = _TIME_RE.match((value or "").strip())
    if match is None:
        raise ScheduleError(f"time must be HH:MM, got {value!r}")
    hour = int(match.group("hour"))
    minute = int(match.group("minute"))
    if not 0 <= hour <= 23:
        raise ScheduleError(f"hour out of range in {value!r}")
    if not 0 <= minute <= 59:
        raise ScheduleError(f"invalid minute in {value!r}")
    return f"{hour:02d}:{minute:02d}"


def _parse_hour(value: str) -> int:
    normalized = normalize_time_hm(value)
    if not normalized.endswith(":00"):
        raise ScheduleError(f"minute must be 00, got {value!r}")
    return int(normalized[:2])


@dataclass(slots=True)
class HourlyRange:
    start: str
    end: str


@dataclass(slots=True)
class DaySchedule:
    times: list[str] = field(default_factory=list)
    hourly: HourlyRange | None = None

    def is_empty(self) -> bool:
        return not self.times and self.hourly is None

    def hours(self) -> list[int]:
        result = {_parse_hour(value) for value in self.times}
        if self.hourly is not None:
            start = _parse_hour(self.hourly.start)
            end = _parse_hour(self.hourly.end)
            if start > end:
                raise ScheduleError("hourly range crosses midnight")
            result.update(range(start, end + 1))
        return sorted(result)

    def validate(self, label: str) -> None:
        try:
            self.hours()
        except ScheduleError as exc:
            raise ScheduleError(f"{label}: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.times:
            payload["times"] = [normalize_time_hm(value) for value in self.times]
        if self.hourly is not None:
            payload["hourly"] = {
                "start": normalize_time_hm(self.hourly.start),
                "end": normalize_time_hm(self.hourly.end),
            }
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> DaySchedule:
        if not isinstance(payload, dict):
            return cls()
        times_raw = payload.get("times") or []
        if isinstance(times_raw, str):
            times_raw = [item for item in times_raw.split(",") if item.strip()]
        hourly_raw = payload.get("hourly")
        hourly = None
        if isinstance(hourly_raw, dict):
            hourly = HourlyRange(start=str(hourly_raw.get("start", "")), end=str(hourly_raw.get("end", "")))
        return cls(times=[str(item).strip() for item in times_raw], hourly=hourly)


@dataclass(slots=True)
class Schedule:
    timezone: str = "UTC"
    weekdays: DaySchedule = field(default_factory=DaySchedule)
    weekends: DaySchedule = field(default_factory=DaySchedule)

    def is_empty(self) -> bool:
        return self.weekdays.is_empty() and self.weekends.is_empty()

    def location(self) -> ZoneInfo:
        name = normalize_timezone(self.timezone)
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ScheduleError(f"invalid timezone: {self.timezone!r}") from exc

    def validate(self) -> None:
        self.location()
        self.weekdays.validate("weekdays")
        self.weekends.validate("weekends")

    def day_schedule(self, day: date) -> DaySchedule:
        if day.weekday() >= 5:
            return self.weekends
        return self.weekdays

    def slots_for_day(self, day: date) -> list[datetime]:
        tz = self.location()
        slots: list[datetime] = []
        seen: set[datetime] = set()
        for hour in self.day_schedule(day).hours():
            local = datetime.combine(day, time(hour=hour), tzinfo=tz)
            # Round-trip through UTC so DST gaps resolve to a real instant.
            instant = local.astimezone(timezone.utc)
            if instant in seen:
                continue
            seen.add(instant)
            slots.append(instant.astimezone(tz))
        return slots

    def next_times(self, now: datetime, count: int) -> list[datetime]:
        if count <= 0 or self.is_empty():
            return []
        tz = self.location()
        now_utc = _as_utc(now)
        current = now_utc.astimezone(tz).date()
        results: list[datetime] = []
        last_instant: datetime | None = None
        max_days = count * _LOOKBACK_DAYS + _LOOKBACK_DAYS
        for _ in range(max_days):
            for slot in self.slots_for_day(current):
                instant = slot.astimezone(timezone.utc)
                if instant <= now_utc:
                    continue
                if last_instant is not None and instant <= last_instant:
                    continue
                results.append(slot)
                last_instant = instant
                if len(results) == count:
                    return results
            current += timedelta(days=1)
        return results

    def previous_time(self, before: datetime) -> datetime | None:
        if self.is_empty():
            return None
        tz = self.location()
        before_utc = _as_utc(before)
        start = before_utc.astimezone(tz).date()
        for offset in range(_LOOKBACK_DAYS):
            day = start - timedelta(days=offset)
            for slot in reversed(self.slots_for_day(day)):
                if slot.astimezone(timezone.utc) <= before_utc:
                    return slot
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timezone": normalize_timezone(self.timezone),
            "weekdays": self.weekdays.to_dict(),
            "weekends": self.weekends.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Any) -> Schedule:
        if not isinstance(payload, dict):
            raise ScheduleError("schedule must be a JSON object")
        return cls(
            timezone=normalize_timezone(payload.get("timezone")),
            weekdays=DaySchedule.from_dict(payload.get("weekdays")),
            weekends=DaySchedule.from_dict(payload.get("weekends")),
        )


def parse_schedule(payload: Any) -> Schedule:
    schedule = Schedule.from_dict(payload)
    schedule.validate()
    return schedule


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_window(value: str) -> timedelta:
    """Positive digest window duration; raises ``ValueError`` otherwise."""
    window = parse_duration(value)
    if window <= timedelta(0):
        raise ValueError("digest window must be positive")
    return window
