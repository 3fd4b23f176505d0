"""
ISO week arithmetic.

Week ids are canonical ``"YYYY-Www"`` strings (zero-padded ISO-8601 week
number). Weeks start on Monday; every function here works on plain dates and
is independent of time zones.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union

WEEK_ID_PATTERN = re.compile(r"^(\d{4})-W(\d{2})$")
WEEKS_PER_MONTH = 4.33


@dataclass(frozen=True)
class WeekRange:
    start: date
    end: date


def format_week_id(d: date) -> str:
    iso = d.isocalendar()
    return f"{iso.year}-W{iso.week:02d}"


def current_iso_week(d: Optional[date] = None) -> str:
    """Return the ISO week id containing ``d`` (today when omitted)."""
    if d is None:
        d = date.today()
    if isinstance(d, datetime):
        d = d.date()
    return format_week_id(d)


def parse_iso_week(week_id: str) -> date:
    """Return the Monday of ``week_id``."""
    match = WEEK_ID_PATTERN.match(week_id or "")
    if not match:
        raise ValueError(f"bad week id: {week_id!r}")
    year, week = int(match.group(1)), int(match.group(2))
    try:
        return date.fromisocalendar(year, week, 1)
    except ValueError as exc:
        raise ValueError(f"bad week id: {week_id!r}") from exc


def week_range(week_id: str) -> WeekRange:
    start = parse_iso_week(week_id)
    return WeekRange(start=start, end=start + timedelta(days=6))


def weeks_between(start_week_id: str, end_week_id: str) -> list[str]:
    """Week ids from ``start_week_id`` (inclusive) up to ``end_week_id`` (exclusive)."""
    current = parse_iso_week(start_week_id)
    end = parse_iso_week(end_week_id)
    weeks: list[str] = []
    while current < end:
        weeks.append(format_week_id(current))
        current += timedelta(days=7)
    return weeks


def next_week_id(week_id: str) -> str:
    return format_week_id(parse_iso_week(week_id) + timedelta(days=7))


def compare_week_ids(a: str, b: str) -> int:
    left, right = parse_iso_week(a), parse_iso_week(b)
    return (left > right) - (left < right)


def month_id(week_id: str) -> str:
    """``"YYYY-MM"`` of the week's Monday."""
    monday = parse_iso_week(week_id)
    return f"{monday.year}-{monday.month:02d}"


def months_to_weeks(months: float) -> int:
    return math.ceil(months * WEEKS_PER_MONTH)


def _parse_target_date(value: Union[str, date, None]) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        pass
    try:
        return datetime.fromisoformat(value).date()
    except (TypeError, ValueError):
        return None


def weeks_until_date(target: Union[str, date, None], current_week_id: str) -> int:
    """
    Whole weeks from the Monday of ``current_week_id`` to ``target``.

    Partial weeks round up, so a deadline on Friday still counts as due this
    week on Monday. Returns -1 for a missing, unparseable or past date.
    """
    target_date = _parse_target_date(target)
    if target_date is None:
        return -1
    days = (target_date - parse_iso_week(current_week_id)).days
    weeks = math.ceil(days / 7)
    return -1 if weeks < 0 else weeks
