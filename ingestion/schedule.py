"""
Parsing of the scheduler's timer configuration.

Accepted formats:
    LEI_DELTA_SYNC_INTERVAL   duration such as "1h", "30m", "1h30m", "90s"
    LEI_FULL_SYNC_DAY         weekday name or three-letter abbreviation
    LEI_FULL_SYNC_TIME        "HH:MM" (24h)
    LEI_CLEANUP_TIME          "HH:MM" (24h)
    LEI_RUN_LEASE             duration, as above
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Tuple
import re

from core.exceptions import ConfigurationError

WEEKDAYS = {
    "monday": "mon",
    "tuesday": "tue",
    "wednesday": "wed",
    "thursday": "thu",
    "friday": "fri",
    "saturday": "sat",
    "sunday": "sun",
}

_DURATION_PART = re.compile(r"(\d+)(h|m|s)")
_DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}
_TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{2})$")

MIN_INTERVAL = timedelta(minutes=1)


def parse_duration(value: str) -> timedelta:
    """Parse "1h30m" style durations (minimum one minute)"""
    text = (value or "").strip().lower()
    if not text:
        raise ConfigurationError("Empty duration", context={"value": value})

    seconds = 0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += int(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ConfigurationError(f"Invalid duration {value!r}", context={"value": value})

    interval = timedelta(seconds=seconds)
    if interval < MIN_INTERVAL:
        raise ConfigurationError(
            f"Duration {value!r} is shorter than one minute", context={"value": value}
        )
    return interval


def parse_weekday(value: str) -> str:
    """Return the APScheduler day_of_week abbreviation for a weekday name"""
    text = (value or "").strip().lower()
    for name, abbreviation in WEEKDAYS.items():
        if text in (name, abbreviation):
            return abbreviation
    raise ConfigurationError(f"Invalid weekday {value!r}", context={"value": value})


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)"""
    match = _TIME_OF_DAY.match((value or "").strip())
    if not match:
        raise ConfigurationError(f"Invalid time of day {value!r}, expected HH:MM", context={"value": value})
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ConfigurationError(f"Time of day {value!r} out of range", context={"value": value})
    return hour, minute


@dataclass(frozen=True)
class ScheduleConfig:
    """Parsed timer configuration for the three scheduled jobs"""
    delta_interval: timedelta
    full_day: str
    full_time: Tuple[int, int]
    cleanup_time: Tuple[int, int]
    keep_full_files: int
    keep_delta_files: int
    run_lease: timedelta

    @classmethod
    def from_settings(cls, settings) -> "ScheduleConfig":
        """
        Build from Settings; raises ConfigurationError on any bad value.
        """
        keep_full = settings.LEI_KEEP_FULL_FILES
        keep_delta = settings.LEI_KEEP_DELTA_FILES
        if keep_full < 1 or keep_delta < 1:
            raise ConfigurationError(
                "Retention counts must be at least 1",
                context={"keep_full_files": keep_full, "keep_delta_files": keep_delta}
            )

        return cls(
            delta_interval=parse_duration(settings.LEI_DELTA_SYNC_INTERVAL),
            full_day=parse_weekday(settings.LEI_FULL_SYNC_DAY),
            full_time=parse_time_of_day(settings.LEI_FULL_SYNC_TIME),
            cleanup_time=parse_time_of_day(settings.LEI_CLEANUP_TIME),
            keep_full_files=keep_full,
            keep_delta_files=keep_delta,
            run_lease=parse_duration(settings.LEI_RUN_LEASE),
        )
