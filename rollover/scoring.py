"""
Point totals for archived week summaries.
"""

from __future__ import annotations

from typing import Iterable, Optional

from rollover.models import GoalType, Recurrence
from rollover.weeks import week_range

WEEKLY_POINTS = 3
MONTHLY_POINTS = 5
DEADLINE_POINTS = 5


def goal_points(goal: dict) -> int:
    if goal.get("recurrence") == Recurrence.MONTHLY:
        return MONTHLY_POINTS
    if goal.get("type") == GoalType.DEADLINE:
        return DEADLINE_POINTS
    return WEEKLY_POINTS


def calculate_score(goals: Iterable[dict]) -> int:
    return sum(goal_points(goal) for goal in goals if goal.get("completed"))


def week_stats(goals: list[dict]) -> dict:
    return {
        "totalGoals": len(goals),
        "completedGoals": sum(1 for g in goals if g.get("completed")),
        "skippedGoals": sum(1 for g in goals if g.get("skipped")),
        "score": calculate_score(goals),
    }


def summarize_week(
    goals: list[dict],
    week_id: str,
    week_start_date: Optional[str] = None,
    week_end_date: Optional[str] = None,
) -> dict:
    """Summary of a week the user actually had goals in."""
    if not week_start_date or not week_end_date:
        dates = week_range(week_id)
        week_start_date = week_start_date or dates.start.isoformat()
        week_end_date = week_end_date or dates.end.isoformat()
    return {
        **week_stats(goals),
        "weekStartDate": week_start_date,
        "weekEndDate": week_end_date,
    }


def empty_week_summary(week_id: str) -> dict:
    """Zeroed summary for a week that passed without any rollover."""
    return summarize_week([], week_id)
