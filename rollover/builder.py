"""
Builds one week's goal instance from a goal definition and its prior instance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from rollover.models import (
    Deadline,
    DreamRef,
    GoalDefinition,
    InstanceType,
    MonthlyConsistency,
    Recurrence,
    WeeklyConsistency,
)
from rollover.weeks import month_id, weeks_until_date


@dataclass
class BuildResult:
    """Instance to emit (if any) plus the counter the caller must persist."""

    instance: Optional[dict]
    weeks_remaining: int
    target_weeks: Optional[int] = None


def instance_id(goal_id, week_id: str) -> str:
    return f"{goal_id}_{week_id}"


def next_weeks_remaining(
    current: int, previous: Optional[dict], decrement: bool = True
) -> int:
    """-1 means the final week has passed."""
    if not decrement:
        return current
    if previous and previous.get("skipped"):
        return current
    return max(-1, current - 1)


def _base_instance(
    goal: GoalDefinition,
    instance_type: InstanceType,
    week_id: str,
    dream: Optional[DreamRef],
    template: Optional[dict],
    created_at: str,
) -> dict:
    template = template or {}
    dream_title = (dream.title if dream else "") or template.get("dreamTitle") or ""
    dream_category = (dream.category if dream else "") or template.get("dreamCategory") or ""
    return {
        "id": instance_id(goal.id, week_id),
        "templateId": goal.id,
        "type": instance_type.value,
        "title": goal.title,
        "description": goal.description or "",
        "dreamId": dream.id if dream and dream.id is not None else template.get("dreamId"),
        "dreamTitle": dream_title,
        "dreamCategory": dream_category,
        "completed": False,
        "completedAt": None,
        "skipped": False,
        "weekId": week_id,
        "createdAt": created_at,
    }


def _build_weekly(goal, week_id, previous, dream, template, created_at, decrement):
    weeks_remaining = next_weeks_remaining(goal.current_weeks_remaining(), previous, decrement)
    if weeks_remaining < 0:
        return BuildResult(None, weeks_remaining, goal.target_weeks)
    instance = _base_instance(goal, InstanceType.WEEKLY_GOAL, week_id, dream, template, created_at)
    instance.update(
        recurrence=Recurrence.WEEKLY.value,
        targetWeeks=goal.target_weeks,
        weeksRemaining=weeks_remaining,
        frequency=goal.frequency or 1,
        completionCount=0,
        completionDates=[],
    )
    return BuildResult(instance, weeks_remaining, goal.target_weeks)


def _build_monthly(goal, week_id, previous, dream, template, created_at, decrement):
    weeks_remaining = next_weeks_remaining(goal.current_weeks_remaining(), previous, decrement)
    target_weeks = goal.normalized_target_weeks()
    if weeks_remaining < 0:
        return BuildResult(None, weeks_remaining, target_weeks)

    frequency = goal.frequency or 2
    current_month = month_id(week_id)
    same_month = bool(previous and previous.get("weekId")) and month_id(previous["weekId"]) == current_month

    instance = _base_instance(goal, InstanceType.MONTHLY_GOAL, week_id, dream, template, created_at)
    instance.update(
        recurrence=Recurrence.MONTHLY.value,
        targetWeeks=target_weeks,
        targetMonths=goal.target_months,
        weeksRemaining=weeks_remaining,
        frequency=frequency,
        monthId=current_month,
        completionCount=0,
        completionDates=[],
    )
    if same_month:
        count = previous.get("completionCount") or 0
        instance["completionCount"] = count
        instance["completionDates"] = list(previous.get("completionDates") or [])
        instance["completed"] = count >= frequency or bool(previous.get("completed"))
        if previous.get("completed"):
            instance["completedAt"] = previous.get("completedAt")
    return BuildResult(instance, weeks_remaining, target_weeks)


def _build_deadline(goal, week_id, previous, dream, template, created_at, decrement):
    if goal.target_weeks is not None:
        target_weeks = goal.target_weeks
    elif goal.target_date:
        target_weeks = weeks_until_date(goal.target_date, week_id)
    else:
        return None

    current = goal.weeks_remaining if goal.weeks_remaining is not None else target_weeks
    weeks_remaining = next_weeks_remaining(current, previous, decrement)

    if weeks_remaining < 0 or goal.completed or goal.active is not True:
        return BuildResult(None, weeks_remaining, target_weeks)

    instance = _base_instance(goal, InstanceType.DEADLINE, week_id, dream, template, created_at)
    instance.update(
        targetWeeks=target_weeks,
        targetDate=goal.target_date,
        weeksRemaining=weeks_remaining,
    )
    return BuildResult(instance, weeks_remaining, target_weeks)


def build_instance(
    goal: GoalDefinition,
    week_id: str,
    previous: Optional[dict] = None,
    *,
    dream: Optional[DreamRef] = None,
    template: Optional[dict] = None,
    created_at: str = "",
    decrement_weeks_remaining: bool = True,
) -> Optional[BuildResult]:
    """
    Build the instance of ``goal`` for ``week_id``.

    ``previous`` is last week's instance of the same goal, if any; a skipped
    previous instance holds the counter steady. ``decrement_weeks_remaining``
    is False for mid-week catch-up, where no week boundary was crossed.

    Returns ``None`` only for a deadline goal with neither targetWeeks nor
    targetDate. Otherwise the result always carries the new counter, even
    when no instance is emitted.
    """
    args = (goal, week_id, previous, dream, template, created_at, decrement_weeks_remaining)
    match goal:
        case WeeklyConsistency():
            return _build_weekly(*args)
        case MonthlyConsistency():
            return _build_monthly(*args)
        case Deadline():
            return _build_deadline(*args)
        case _:
            raise TypeError(f"unsupported goal definition: {type(goal).__name__}")
