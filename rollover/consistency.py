"""
Reads the dreams aggregate with bounded backoff.

The store is eventually consistent: a deadline goal completed in the week
being vacated may still look active when the rollover reads the aggregate,
which would regenerate an already finished goal. When the previous week
contains a completed deadline goal the aggregate is always re-read at least
once, then again with exponential backoff while any such goal is not yet
shown as completed and inactive. This narrows the race, it does not close it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from rollover.config import Settings
from rollover.models import GoalType
from rollover.repository import TEMPLATES_FIELD, RolloverRepository, dreams_field
from rollover.store import StoredDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsistencyPolicy:
    max_retries: int = 3
    base_delay_ms: int = 800
    backoff_factor: float = 2.0
    deadline_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConsistencyPolicy":
        return cls(
            max_retries=settings.consistency_max_retries,
            base_delay_ms=settings.consistency_base_delay_ms,
            backoff_factor=settings.consistency_backoff_factor,
            deadline_seconds=settings.rollover_deadline_seconds,
        )

    def delay_seconds(self, attempt: int) -> float:
        return self.base_delay_ms * (self.backoff_factor ** attempt) / 1000.0


@dataclass
class DreamsSnapshot:
    """The dreams aggregate as last read, split into the parts the planner uses."""

    stored: Optional[StoredDocument] = None
    dreams: list[dict] = field(default_factory=list)
    templates: list[dict] = field(default_factory=list)
    retries: int = 0
    consistent: bool = True

    @classmethod
    def from_document(
        cls, stored: Optional[StoredDocument], *, retries: int = 0, consistent: bool = True
    ) -> "DreamsSnapshot":
        if stored is None:
            return cls(retries=retries, consistent=consistent)
        body = stored.body
        return cls(
            stored=stored,
            dreams=list(body.get(dreams_field(body)) or []),
            templates=list(body.get(TEMPLATES_FIELD) or []),
            retries=retries,
            consistent=consistent,
        )


def completed_deadline_ids(previous_goals: list[dict]) -> set:
    return {
        goal.get("templateId") or goal.get("id")
        for goal in previous_goals
        if goal.get("type") == GoalType.DEADLINE and goal.get("completed") is True
    }


def _stale_goals(dreams: list[dict], goal_ids: set) -> list[dict]:
    """Embedded deadline goals completed last week that the aggregate still shows as open."""
    stale = []
    for dream in dreams:
        for goal in dream.get("goals") or []:
            if goal.get("id") not in goal_ids or goal.get("type") != GoalType.DEADLINE:
                continue
            if goal.get("completed") is not True or goal.get("active") is not False:
                stale.append(goal)
    return stale


def _log_verification(user_id: str, dreams: list[dict], goal_ids: set) -> None:
    logger.info(
        "%s: verifying %d completed deadline goal(s) in dreams document", user_id, len(goal_ids)
    )
    for dream in dreams:
        if dream.get("completed"):
            continue
        for goal in dream.get("goals") or []:
            if goal.get("type") != GoalType.DEADLINE or goal.get("id") not in goal_ids:
                continue
            if goal.get("completed") is not True or goal.get("active") is not False:
                logger.warning(
                    "%s: completed deadline goal %r (%s) still shows active=%r completed=%r",
                    user_id,
                    goal.get("title"),
                    goal.get("id"),
                    goal.get("active"),
                    goal.get("completed"),
                )
            else:
                logger.info(
                    "%s: verified deadline goal %r (%s) is completed and inactive",
                    user_id,
                    goal.get("title"),
                    goal.get("id"),
                )


def fetch_dreams_with_consistency_retry(
    repository: RolloverRepository,
    user_id: str,
    previous_goals: list[dict],
    policy: ConsistencyPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> DreamsSnapshot:
    """
    Read the user's dreams aggregate, re-reading while it looks stale.

    Without a completed deadline goal in ``previous_goals`` this is a single
    read. Otherwise the first re-read is unconditional and later ones happen
    only while a completed goal is not yet reflected. At most
    ``policy.max_retries`` re-reads are made, and none that would end past
    ``policy.deadline_seconds``.
    """
    stored = repository.get_dreams(user_id)
    if stored is None:
        logger.warning("%s: no dreams document found", user_id)
        return DreamsSnapshot()

    goal_ids = completed_deadline_ids(previous_goals)
    if not goal_ids:
        return DreamsSnapshot.from_document(stored)

    started = clock()
    retries = 0
    while True:
        snapshot = DreamsSnapshot.from_document(stored, retries=retries)
        stale = _stale_goals(snapshot.dreams, goal_ids)
        if not stale and retries > 0:
            logger.info(
                "%s: dreams document consistent after %d re-read(s)", user_id, retries
            )
            break
        if stale:
            goal = stale[0]
            logger.warning(
                "%s: stale dreams document (attempt %d/%d): deadline goal %r (%s) shows active=%r completed=%r",
                user_id,
                retries + 1,
                policy.max_retries + 1,
                goal.get("title"),
                goal.get("id"),
                goal.get("active"),
                goal.get("completed"),
            )
        if retries >= policy.max_retries:
            if stale:
                logger.warning(
                    "%s: max retries reached, proceeding with possibly stale dreams document",
                    user_id,
                )
            break

        delay = policy.delay_seconds(retries)
        if clock() - started + delay > policy.deadline_seconds:
            logger.warning(
                "%s: consistency wait would exceed %.1fs, proceeding with current read",
                user_id,
                policy.deadline_seconds,
            )
            break
        logger.info(
            "%s: waiting %.0fms for eventual consistency (retry %d/%d)",
            user_id,
            delay * 1000,
            retries + 1,
            policy.max_retries,
        )
        sleep(delay)

        reread = repository.get_dreams(user_id)
        if reread is None:
            logger.warning("%s: dreams document missing on retry %d", user_id, retries + 1)
            break
        stored = reread
        retries += 1

    snapshot = DreamsSnapshot.from_document(stored, retries=retries)
    snapshot.consistent = not _stale_goals(snapshot.dreams, goal_ids)
    _log_verification(user_id, snapshot.dreams, goal_ids)
    return snapshot
