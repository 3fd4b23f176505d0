"""
Decides which templates and dream goals produce an instance this week, and
merges the resulting duration counters back into the dreams aggregate.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from rollover.builder import build_instance
from rollover.consistency import DreamsSnapshot
from rollover.errors import BestEffortWriteFailure, RolloverError
from rollover.models import (
    Deadline,
    GoalType,
    is_deadline_typed,
    parse_dream,
    parse_dream_goal,
    parse_template,
)
from rollover.repository import TEMPLATES_FIELD, RolloverRepository, dreams_field

logger = logging.getLogger(__name__)


@dataclass
class WeekPlan:
    instances: list[dict] = field(default_factory=list)
    # template id -> new weeksRemaining
    template_updates: dict = field(default_factory=dict)
    # dream id -> goal id -> fields to merge into the embedded goal
    goal_updates: dict = field(default_factory=dict)

    @property
    def has_updates(self) -> bool:
        return bool(self.template_updates or self.goal_updates)


def _dreams_by_id(dreams: list[dict]) -> dict:
    return {dream.get("id"): dream for dream in dreams}


def _embedded_goal(dream: Optional[dict], template: dict) -> Optional[dict]:
    if not dream:
        return None
    ids = {template.get("id"), template.get("goalId")} - {None}
    for goal in dream.get("goals") or []:
        if goal.get("id") in ids:
            return goal
    return None


def _normalized_weeks_remaining(template: dict) -> int:
    return parse_template(template).current_weeks_remaining()


def filter_active_templates(
    templates: list[dict], dreams: list[dict], user_id: str = ""
) -> list[dict]:
    """Templates still eligible to produce an instance this week."""
    dreams_by_id = _dreams_by_id(dreams)
    active = []
    for template in templates:
        title = template.get("title")
        if template.get("active") is False:
            logger.info("%s: skipping template %r - inactive", user_id, title)
            continue
        if template.get("completed") is True:
            logger.info("%s: skipping template %r - completed", user_id, title)
            continue
        dream = dreams_by_id.get(template.get("dreamId"))
        if dream and dream.get("completed"):
            logger.info("%s: skipping template %r - dream completed", user_id, title)
            continue
        if is_deadline_typed(template):
            goal = _embedded_goal(dream, template)
            if goal and goal.get("type") == GoalType.DEADLINE:
                if goal.get("completed") is True or goal.get("active") is not True:
                    # The embedded goal is authoritative over a stale template copy.
                    logger.warning(
                        "%s: template %r disagrees with its dream goal (active=%r completed=%r), skipping",
                        user_id,
                        title,
                        goal.get("active"),
                        goal.get("completed"),
                    )
                    continue
        if _normalized_weeks_remaining(template) <= 0:
            continue
        active.append(template)

    if len(active) < len(templates):
        logger.info(
            "%s: %d of %d template(s) active", user_id, len(active), len(templates)
        )
    return active


def find_exhausted_templates(
    templates: list[dict], dreams: list[dict], previous_goals: Iterable[dict] = ()
) -> list[dict]:
    """
    Templates that ran their final week last week.

    They sit at a counter of 0 and are no longer built, so the decrement to
    -1 that retires them happens here instead. A skipped final week holds
    the counter like any other skipped week.
    """
    dreams_by_id = _dreams_by_id(dreams)
    skipped = {goal.get("templateId") for goal in previous_goals if goal.get("skipped")}
    exhausted = []
    for template in templates:
        if template.get("active") is False or template.get("completed") is True:
            continue
        dream = dreams_by_id.get(template.get("dreamId"))
        if dream and dream.get("completed"):
            continue
        if template.get("id") in skipped:
            continue
        if _normalized_weeks_remaining(template) == 0:
            exhausted.append(template)
    return exhausted


def _previous_instance(previous_goals: list[dict], goal_id) -> Optional[dict]:
    for goal in previous_goals:
        if goal.get("templateId") == goal_id:
            return goal
    return None


def _is_schedulable_dream_goal(raw: dict, owned_ids: set, user_id: str) -> bool:
    title = raw.get("title")
    if raw.get("id") in owned_ids:
        logger.debug("%s: goal %r already has a template", user_id, title)
        return False
    if raw.get("type") == GoalType.DEADLINE:
        if raw.get("completed") is True:
            logger.info("%s: skipping deadline goal %r - completed", user_id, title)
            return False
        if raw.get("active") is not True:
            logger.info(
                "%s: skipping deadline goal %r - not active (active=%r)",
                user_id,
                title,
                raw.get("active"),
            )
            return False
        return True
    if raw.get("completed") is True or raw.get("active") is False:
        logger.info("%s: skipping goal %r - completed or inactive", user_id, title)
        return False
    return True


def plan_week(
    snapshot: DreamsSnapshot,
    week_id: str,
    previous_goals: list[dict],
    *,
    created_at: str,
    decrement_weeks_remaining: bool = True,
    existing_ids: Iterable[str] = (),
    user_id: str = "",
) -> WeekPlan:
    """
    Build the instances for ``week_id`` and the counters to persist.

    Templates are processed first; embedded dream goals that a template
    already owns are skipped. Instance ids in ``existing_ids`` (or produced
    earlier in the same pass) are never emitted twice.
    """
    plan = WeekPlan()
    seen = set(existing_ids)
    dreams_by_id = _dreams_by_id(snapshot.dreams)

    def emit(instance: Optional[dict]) -> None:
        if instance is None:
            return
        if instance["id"] in seen:
            logger.info("%s: skipping duplicate instance %s", user_id, instance["id"])
            return
        seen.add(instance["id"])
        plan.instances.append(instance)

    for template in filter_active_templates(snapshot.templates, snapshot.dreams, user_id):
        dream = dreams_by_id.get(template.get("dreamId"))
        result = build_instance(
            parse_template(template),
            week_id,
            _previous_instance(previous_goals, template.get("id")),
            dream=parse_dream(dream) if dream else None,
            template=template,
            created_at=created_at,
            decrement_weeks_remaining=decrement_weeks_remaining,
        )
        emit(result.instance)
        if result.weeks_remaining != template.get("weeksRemaining"):
            plan.template_updates[template.get("id")] = result.weeks_remaining

    if decrement_weeks_remaining:
        for template in find_exhausted_templates(
            snapshot.templates, snapshot.dreams, previous_goals
        ):
            logger.info("%s: template %r finished its final week", user_id, template.get("title"))
            plan.template_updates[template.get("id")] = -1

    owned_ids = set()
    for template in snapshot.templates:
        owned_ids.update({template.get("id"), template.get("goalId")} - {None})

    for raw_dream in snapshot.dreams:
        if raw_dream.get("completed"):
            logger.info("%s: skipping completed dream %r", user_id, raw_dream.get("title"))
            continue
        dream = parse_dream(raw_dream)
        for raw in dream.goals:
            if not _is_schedulable_dream_goal(raw, owned_ids, user_id):
                continue
            goal = parse_dream_goal(raw)
            if goal is None:
                continue
            result = build_instance(
                goal,
                week_id,
                _previous_instance(previous_goals, goal.id),
                dream=dream,
                created_at=created_at,
                decrement_weeks_remaining=decrement_weeks_remaining,
            )
            if result is None:
                logger.warning(
                    "%s: deadline goal %r has neither targetWeeks nor targetDate",
                    user_id,
                    raw.get("title"),
                )
                continue
            emit(result.instance)

            update = {}
            if result.weeks_remaining != raw.get("weeksRemaining"):
                update["weeksRemaining"] = result.weeks_remaining
            if isinstance(goal, Deadline) and result.target_weeks != raw.get("targetWeeks"):
                update["targetWeeks"] = result.target_weeks
            if update:
                plan.goal_updates.setdefault(dream.id, {})[goal.id] = update

    logger.info(
        "%s: planned %d instance(s) for %s", user_id, len(plan.instances), week_id
    )
    return plan


def _merge_counter(item: dict, update: dict, now: str) -> dict:
    merged = {**item, **update}
    weeks_remaining = merged.get("weeksRemaining")
    if (
        weeks_remaining is not None
        and weeks_remaining < 0
        and not item.get("completed")
        and item.get("active") is not False
    ):
        merged["active"] = False
        merged["completedAt"] = now
    return merged


def _verify(user_id: str, body: dict, plan: WeekPlan) -> None:
    templates = {t.get("id"): t for t in body.get(TEMPLATES_FIELD) or []}
    for template_id, weeks_remaining in plan.template_updates.items():
        template = templates.get(template_id)
        if template is not None and template.get("weeksRemaining") != weeks_remaining:
            logger.warning(
                "%s: template %s weeksRemaining mismatch: expected %s, got %s",
                user_id,
                template_id,
                weeks_remaining,
                template.get("weeksRemaining"),
            )
    dreams = _dreams_by_id(body.get(dreams_field(body)) or [])
    for dream_id, updates in plan.goal_updates.items():
        goals = {g.get("id"): g for g in (dreams.get(dream_id) or {}).get("goals") or []}
        for goal_id, update in updates.items():
            goal = goals.get(goal_id)
            if goal is None:
                logger.warning("%s: goal %s vanished from dream %s", user_id, goal_id, dream_id)
            elif goal.get("weeksRemaining") != update.get("weeksRemaining", goal.get("weeksRemaining")):
                logger.warning(
                    "%s: goal %s weeksRemaining mismatch: expected %s, got %s",
                    user_id,
                    goal_id,
                    update.get("weeksRemaining"),
                    goal.get("weeksRemaining"),
                )


def apply_updates(
    repository: RolloverRepository,
    user_id: str,
    snapshot: DreamsSnapshot,
    plan: WeekPlan,
    *,
    now: str,
) -> bool:
    """
    Persist the plan's counters into the dreams aggregate in one guarded write.

    Templates and goals whose counter goes negative are retired with
    ``active=False`` and ``completedAt``. Returns False when there was
    nothing to write; raises ``BestEffortWriteFailure`` when the write fails.
    """
    if not plan.has_updates or snapshot.stored is None:
        return False

    body = copy.deepcopy(snapshot.stored.body)
    body[TEMPLATES_FIELD] = [
        _merge_counter(t, {"weeksRemaining": plan.template_updates[t.get("id")]}, now)
        if t.get("id") in plan.template_updates
        else t
        for t in body.get(TEMPLATES_FIELD) or []
    ]

    field_name = dreams_field(body)
    dreams = []
    for dream in body.get(field_name) or []:
        updates = plan.goal_updates.get(dream.get("id"))
        if updates:
            dream = {
                **dream,
                "goals": [
                    _merge_counter(g, updates[g.get("id")], now) if g.get("id") in updates else g
                    for g in dream.get("goals") or []
                ],
            }
        dreams.append(dream)
    body[field_name] = dreams
    body["updatedAt"] = now

    _verify(user_id, body, plan)

    try:
        repository.put_dreams(user_id, body, expected_version=snapshot.stored.version)
    except RolloverError as exc:
        raise BestEffortWriteFailure(f"{user_id}: failed to persist counters: {exc}") from exc

    logger.info(
        "%s: updated %d template(s) and goals in %d dream(s)",
        user_id,
        len(plan.template_updates),
        len(plan.goal_updates),
    )
    return True
