"""
Batch driver that runs the weekly rollover for every known user.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from rollover.engine import RolloverEngine
from rollover.schemas import BatchSummary, ErrorKind, RolloverResult

logger = logging.getLogger(__name__)


def _rollover_one(engine: RolloverEngine, user_id: str) -> RolloverResult:
    try:
        return engine.rollover_week_for_user(user_id)
    except Exception as exc:
        logger.exception("%s: rollover raised", user_id)
        return RolloverResult.failure(user_id, str(exc), ErrorKind.UNEXPECTED)


def run_weekly_rollover(
    engine: RolloverEngine,
    *,
    max_workers: Optional[int] = None,
    user_ids: Optional[Iterable[str]] = None,
) -> BatchSummary:
    """
    Roll every user forward and summarize the outcome.

    Users are processed one at a time unless ``max_workers`` (default from
    settings) is greater than one. Each user is submitted once; one user's
    failure never stops the others.
    """
    if user_ids is None:
        user_ids = engine.repository.list_user_ids()
    # dict keeps order and drops repeated ids
    user_ids = list(dict.fromkeys(user_ids))
    max_workers = max_workers or engine.settings.batch_max_workers

    logger.info("Starting weekly rollover for %d user(s)", len(user_ids))
    summary = BatchSummary()
    if max_workers <= 1 or len(user_ids) <= 1:
        for user_id in user_ids:
            summary.record(_rollover_one(engine, user_id))
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            for result in pool.map(lambda uid: _rollover_one(engine, uid), user_ids):
                summary.record(result)

    logger.info(
        "Weekly rollover complete: %d rolled, %d skipped, %d failed (of %d)",
        summary.rolled,
        summary.skipped,
        summary.failed,
        summary.total,
    )
    for result in summary.details:
        if not result.success:
            logger.warning("  failed %s: %s", result.user_id, result.message)
        elif result.rolled:
            logger.info("  rolled %s: %s -> %s", result.user_id, result.from_week, result.to_week)
    return summary
