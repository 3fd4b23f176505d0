"""
Typed goal definitions parsed from stored template and dream documents.

Stored documents use camelCase keys and carry many display-only fields; the
engine only needs the scheduling fields, so each definition is parsed into
one member of the ``GoalDefinition`` tagged union and the raw document is kept
alongside for merging counters back without losing anything.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional, Union

from dacite import Config, from_dict

from rollover.weeks import months_to_weeks

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _number_hook(kind):
    def coerce(value):
        # Counters edited by hand or older clients arrive as strings.
        if not isinstance(value, str):
            return value
        try:
            return kind(float(value)) if kind is int else kind(value)
        except ValueError:
            logger.warning("Ignoring non-numeric counter value %r", value)
            return None

    return coerce


_DACITE_CONFIG = Config(
    check_types=False, type_hooks={int: _number_hook(int), float: _number_hook(float)}
)


class GoalType(StrEnum):
    CONSISTENCY = "consistency"
    DEADLINE = "deadline"


class Recurrence(StrEnum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class InstanceType(StrEnum):
    WEEKLY_GOAL = "weekly_goal"
    MONTHLY_GOAL = "monthly_goal"
    DEADLINE = "deadline"


@dataclass
class WeeklyConsistency:
    id: Any
    title: str = ""
    description: str = ""
    weeks_remaining: Optional[int] = None
    target_weeks: Optional[int] = None
    frequency: int = 1

    def current_weeks_remaining(self) -> int:
        if self.weeks_remaining is not None:
            return self.weeks_remaining
        return self.target_weeks or 0


@dataclass
class MonthlyConsistency:
    id: Any
    title: str = ""
    description: str = ""
    weeks_remaining: Optional[int] = None
    target_weeks: Optional[int] = None
    target_months: Optional[float] = None
    frequency: int = 2

    def normalized_target_weeks(self) -> Optional[int]:
        if self.target_weeks:
            return self.target_weeks
        if self.target_months:
            return months_to_weeks(self.target_months)
        return None

    def current_weeks_remaining(self) -> int:
        if self.weeks_remaining is not None:
            return self.weeks_remaining
        return self.normalized_target_weeks() or 0


@dataclass
class Deadline:
    id: Any
    title: str = ""
    description: str = ""
    weeks_remaining: Optional[int] = None
    target_weeks: Optional[int] = None
    target_date: Optional[str] = None
    active: Optional[bool] = None
    completed: bool = False


GoalDefinition = Union[WeeklyConsistency, MonthlyConsistency, Deadline]


@dataclass
class DreamRef:
    """Display fields of the dream a goal belongs to."""

    id: Any = None
    title: str = ""
    category: str = ""
    completed: bool = False
    goals: list[dict] = field(default_factory=list)


def snake_keys(raw: dict) -> dict:
    return {_CAMEL_BOUNDARY.sub("_", key).lower(): value for key, value in raw.items()}


def _without_nones(raw: dict) -> dict:
    # dacite would otherwise replace dataclass defaults with explicit nulls.
    return {key: value for key, value in raw.items() if value is not None}


def _build(cls, raw: dict):
    return from_dict(data_class=cls, data=_without_nones(snake_keys(raw)), config=_DACITE_CONFIG)


def parse_dream(raw: dict) -> DreamRef:
    return _build(DreamRef, raw)


def is_deadline_typed(raw: dict) -> bool:
    return GoalType.DEADLINE in (raw.get("type"), raw.get("goalType"))


def parse_template(raw: dict) -> GoalDefinition:
    """Templates are recurring by definition and dispatch on ``recurrence``."""
    if raw.get("recurrence") == Recurrence.MONTHLY:
        return _build(MonthlyConsistency, raw)
    return _build(WeeklyConsistency, raw)


def parse_dream_goal(raw: dict) -> Optional[GoalDefinition]:
    """Parse an embedded dream goal; ``None`` for shapes the engine cannot schedule."""
    goal_type = raw.get("type") or GoalType.CONSISTENCY
    if goal_type == GoalType.DEADLINE:
        return _build(Deadline, raw)
    if goal_type != GoalType.CONSISTENCY:
        logger.info("Skipping goal %r with unsupported type %r", raw.get("id"), goal_type)
        return None
    recurrence = raw.get("recurrence")
    if recurrence == Recurrence.WEEKLY:
        if raw.get("weeksRemaining") is None and not raw.get("targetWeeks"):
            return None
        return _build(WeeklyConsistency, raw)
    if recurrence == Recurrence.MONTHLY:
        if (
            raw.get("weeksRemaining") is None
            and not raw.get("targetWeeks")
            and not raw.get("targetMonths")
        ):
            return None
        return _build(MonthlyConsistency, raw)
    return None
