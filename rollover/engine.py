"""
Per-user weekly rollover.

``RolloverEngine.rollover_week_for_user`` moves a user's current week
forward to the target week:

1. archive the vacated week (and any fully missed weeks) into pastWeeks,
2. read the dreams aggregate through the consistency-retry reader,
3. plan the new week's instances and counters,
4. replace the current-week document, guarded by the version read at the start,
5. persist counters (best effort).

Counters are only written once the new week is in place, so a rollover that
failed part way is simply run again from the same counters. Re-running on a
user who is already on the target week is a no-op; a lost counter write
leaves the counters one week behind rather than decrementing them twice.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timezone
from typing import Callable, Optional

from rollover.config import Settings, get_settings
from rollover.consistency import ConsistencyPolicy, fetch_dreams_with_consistency_retry
from rollover.errors import BestEffortWriteFailure, TransientStoreError, VersionConflictError
from rollover.processor import apply_updates, plan_week
from rollover.repository import RolloverRepository
from rollover.schemas import ErrorKind, RolloverResult, RolloverState, SyncResult
from rollover.scoring import empty_week_summary, summarize_week
from rollover.weeks import compare_week_ids, current_iso_week, next_week_id, weeks_between

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _classify(exc: Exception) -> ErrorKind:
    if isinstance(exc, VersionConflictError):
        return ErrorKind.VERSION_CONFLICT
    if isinstance(exc, TransientStoreError):
        return ErrorKind.TRANSIENT_STORE
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ErrorKind.DATA_SHAPE
    return ErrorKind.UNEXPECTED


class RolloverEngine:
    """Advances users from one ISO week to the next."""

    def __init__(
        self,
        repository: RolloverRepository,
        *,
        settings: Optional[Settings] = None,
        today: Callable[[], date] = date.today,
        now: Callable[[], str] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.settings = settings or get_settings()
        self.policy = ConsistencyPolicy.from_settings(self.settings)
        self._today = today
        self._now = now
        self._sleep = sleep
        self._clock = clock

    def system_week(self) -> str:
        return current_iso_week(self._today())

    def rollover_week_for_user(self, user_id: str, simulate: bool = False) -> RolloverResult:
        """
        Roll ``user_id`` forward. Never raises for per-user failures.

        ``simulate`` forces a rollover to the week after the document's own
        week regardless of the calendar.
        """
        try:
            return self._rollover(user_id, simulate)
        except VersionConflictError as exc:
            logger.warning("%s: rollover aborted by concurrent writer: %s", user_id, exc)
            return RolloverResult.failure(user_id, str(exc), ErrorKind.VERSION_CONFLICT)
        except Exception as exc:
            logger.exception("%s: rollover failed", user_id)
            return RolloverResult.failure(user_id, str(exc), _classify(exc))

    def _rollover(self, user_id: str, simulate: bool) -> RolloverResult:
        current = self.repository.get_current_week(user_id)
        if current is None:
            logger.info("%s: no current week document, skipping", user_id)
            return RolloverResult(
                user_id=user_id,
                success=True,
                rolled=False,
                message="No current week",
                state=RolloverState.NO_CURRENT_WEEK,
            )

        from_week = current.body.get("weekId")
        system_week = self.system_week()
        target_week = next_week_id(from_week) if simulate else system_week
        if from_week == target_week or (
            not simulate and compare_week_ids(from_week, system_week) > 0
        ):
            logger.info("%s: already on %s", user_id, from_week)
            return RolloverResult(
                user_id=user_id,
                success=True,
                rolled=False,
                message="Already current",
                state=RolloverState.ALREADY_CURRENT,
                from_week=from_week,
                to_week=from_week,
            )

        logger.info("%s: rolling over %s -> %s", user_id, from_week, target_week)
        now = self._now()
        previous_goals = current.body.get("goals") or []

        summaries = {}
        for week_id in weeks_between(from_week, target_week):
            if week_id == from_week:
                summaries[week_id] = summarize_week(
                    previous_goals,
                    week_id,
                    current.body.get("weekStartDate"),
                    current.body.get("weekEndDate"),
                )
            else:
                summaries[week_id] = empty_week_summary(week_id)
        self.repository.archive_weeks(user_id, summaries, now=now)
        if len(summaries) > 1:
            logger.info("%s: archived %d missed week(s)", user_id, len(summaries) - 1)

        snapshot = fetch_dreams_with_consistency_retry(
            self.repository,
            user_id,
            previous_goals,
            self.policy,
            sleep=self._sleep,
            clock=self._clock,
        )
        plan = plan_week(
            snapshot, target_week, previous_goals, created_at=now, user_id=user_id
        )
        self.repository.replace_current_week(
            user_id, target_week, plan.instances, now=now, previous=current
        )
        try:
            apply_updates(self.repository, user_id, snapshot, plan, now=now)
        except BestEffortWriteFailure as exc:
            logger.warning("%s (non-critical, counters stay one week behind)", exc)

        logger.info(
            "%s: rolled over to %s with %d goal(s)", user_id, target_week, len(plan.instances)
        )
        return RolloverResult(
            user_id=user_id,
            success=True,
            rolled=True,
            message=f"Rolled over from {from_week} to {target_week}",
            state=RolloverState.ROLLED,
            from_week=from_week,
            to_week=target_week,
            goals_count=len(plan.instances),
        )

    def sync_current_week(self, user_id: str) -> SyncResult:
        """
        Bring the user's current week in line with the calendar and their templates.

        A week behind the calendar is rolled over. Otherwise instances missing
        from the current week (for example templates added mid-week) are
        appended without touching any counter.
        """
        try:
            return self._sync(user_id)
        except Exception as exc:
            logger.exception("%s: sync failed", user_id)
            return SyncResult(
                user_id=user_id, success=False, message=str(exc), error_kind=_classify(exc)
            )

    def _sync(self, user_id: str) -> SyncResult:
        system_week = self.system_week()
        current = self.repository.get_current_week(user_id)

        if current is not None and compare_week_ids(current.body.get("weekId"), system_week) < 0:
            result = self.rollover_week_for_user(user_id)
            if not result.success:
                return SyncResult(
                    user_id=user_id,
                    success=False,
                    week_id=result.from_week,
                    message=result.message,
                    error_kind=result.error_kind,
                )
            refreshed = self.repository.get_current_week(user_id)
            return SyncResult(
                user_id=user_id,
                success=True,
                week_id=result.to_week,
                goals=(refreshed.body.get("goals") or []) if refreshed else [],
                created=result.goals_count or 0,
                message=result.message,
            )

        week_id = current.body.get("weekId") if current else system_week
        existing = (current.body.get("goals") or []) if current else []
        snapshot = fetch_dreams_with_consistency_retry(
            self.repository, user_id, [], self.policy, sleep=self._sleep, clock=self._clock
        )
        plan = plan_week(
            snapshot,
            week_id,
            [],
            created_at=self._now(),
            decrement_weeks_remaining=False,
            existing_ids=[goal.get("id") for goal in existing],
            user_id=user_id,
        )
        if current is not None and not plan.instances:
            return SyncResult(
                user_id=user_id,
                success=True,
                week_id=week_id,
                goals=existing,
                message="Already in sync",
            )

        goals = existing + plan.instances
        self.repository.replace_current_week(
            user_id, week_id, goals, now=self._now(), previous=current
        )
        logger.info("%s: synced %s, added %d goal(s)", user_id, week_id, len(plan.instances))
        return SyncResult(
            user_id=user_id,
            success=True,
            week_id=week_id,
            goals=goals,
            created=len(plan.instances),
            message=f"Added {len(plan.instances)} goal(s)",
        )
