"""
Time-of-day helpers — one representation for slot times.

Slots arrive as display labels ("4:30PM", "16:30", "10:00AM - 10:55AM").
Internally every time is minutes since midnight, and every overlap check
works on half-open minute intervals.
"""

from __future__ import annotations
import re
from dataclasses import dataclass

MINUTES_PER_DAY = 24 * 60

_TWELVE_HOUR = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")
_TWENTY_FOUR_HOUR = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


@dataclass(frozen=True, order=True)
class TimeOfDay:
    minutes: int

    def __post_init__(self):
        # End times may sit exactly on midnight (e.g. 11:00PM + 60 min)
        if not 0 <= self.minutes <= MINUTES_PER_DAY:
            raise ValueError(f"Time of day out of range: {self.minutes} minutes")

    @classmethod
    def parse(cls, label: str) -> TimeOfDay:
        """Parse "4:30PM", "4:30 pm" or "16:30"."""
        match = _TWELVE_HOUR.match(label)
        if match:
            hours, minutes = int(match.group(1)), int(match.group(2))
            period = match.group(3).upper()
            if not 1 <= hours <= 12 or minutes > 59:
                raise ValueError(f"Invalid time label: {label!r}")
            if period == "PM" and hours != 12:
                hours += 12
            if period == "AM" and hours == 12:
                hours = 0
            return cls(hours * 60 + minutes)

        match = _TWENTY_FOUR_HOUR.match(label)
        if match:
            hours, minutes = int(match.group(1)), int(match.group(2))
            if hours > 23 or minutes > 59:
                raise ValueError(f"Invalid time label: {label!r}")
            return cls(hours * 60 + minutes)

        raise ValueError(f"Unrecognised time label: {label!r}")

    def plus(self, minutes: int) -> TimeOfDay:
        return TimeOfDay(self.minutes + minutes)

    @property
    def label(self) -> str:
        """12-hour display form, e.g. "4:30PM"."""
        hours, minutes = divmod(self.minutes % MINUTES_PER_DAY, 60)
        period = "PM" if hours >= 12 else "AM"
        display_hour = 12 if hours % 12 == 0 else hours % 12
        return f"{display_hour}:{minutes:02d}{period}"

    def __str__(self) -> str:
        return self.label


def parse_slot_label(slot_label: str) -> TimeOfDay:
    """
    Start time of a slot label.

    "10:00AM - 10:55AM" → 10:00AM. The displayed end has a changeover buffer
    trimmed off, so callers recompute the end from the field's full session
    duration instead of trusting it.
    """
    start = slot_label.split(" - ", 1)[0] if " - " in slot_label else slot_label
    return TimeOfDay.parse(start)


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """Half-open interval overlap in minutes since midnight."""
    return start_a < end_b and start_b < end_a


def slot_window(slot_label: str, session_minutes: int) -> tuple[TimeOfDay, TimeOfDay]:
    """(start, end) of a slot using the full session length, capped at midnight."""
    start = parse_slot_label(slot_label)
    return start, TimeOfDay(min(start.minutes + session_minutes, MINUTES_PER_DAY))
