"""
Cadence — which calendar days a recurring booking lands on.

Occurrences chain from the anchor date: each one is the previous plus one
interval, so a monthly plan anchored on the 31st settles on the 28th after
February and stays there.
"""

from __future__ import annotations
import calendar
from datetime import date, timedelta

INTERVALS = ("daily", "weekly", "monthly")


def add_months(day: date, months: int) -> date:
    """Same day of month, clamped to the end of shorter months."""
    month_index = day.month - 1 + months
    year, month = day.year + month_index // 12, month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def next_occurrence(day: date, interval: str) -> date:
    if interval == "daily":
        return day + timedelta(days=1)
    if interval == "weekly":
        return day + timedelta(days=7)
    if interval == "monthly":
        return add_months(day, 1)
    raise ValueError(f"Unknown interval: {interval}")


def occurs_on(interval: str, anchor: date, day: date) -> bool:
    """Is `day` one of the occurrences chained from `anchor`?"""
    if interval not in INTERVALS or day < anchor:
        return False
    if interval == "daily":
        return True
    if interval == "weekly":
        return (day - anchor).days % 7 == 0
    current = anchor
    while current < day:
        current = add_months(current, 1)
    return current == day
