"""
Worker loop that runs queued per-user rollovers.

Clients call ``request_rollover`` whenever a user shows activity. The queue
keeps one pending entry per user until the worker releases it, so repeated
requests collapse into a single rollover.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from rollover.dependencies import get_engine, get_queue
from rollover.engine import RolloverEngine
from rollover.queue import RolloverQueue

logger = logging.getLogger(__name__)


def request_rollover(user_id: str, queue: Optional[RolloverQueue] = None) -> bool:
    queue = queue or get_queue()
    queued = queue.enqueue(user_id)
    if queued:
        logger.debug("Queued rollover for %s", user_id)
    return queued


def process_next(
    *,
    engine: Optional[RolloverEngine] = None,
    queue: Optional[RolloverQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Pop one user id and roll that user over. Returns True if a user was processed.
    """
    engine = engine or get_engine()
    queue = queue or get_queue()

    user_id = queue.dequeue(block=block, timeout=timeout)
    if not user_id:
        return False

    try:
        result = engine.rollover_week_for_user(user_id)
    finally:
        queue.release(user_id)
    if result.success:
        logger.info(f"[{user_id}] {result.message}")
    else:
        logger.warning(f"[{user_id}] rollover failed ({result.error_kind}): {result.message}")
    return True


def run_loop(poll_interval_seconds: float = 2.0) -> None:
    """
    Simple polling loop that blocks on the queue. Intended to be run under systemd/supervisor.
    """
    engine = get_engine()
    queue = get_queue()
    while True:
        processed = process_next(
            engine=engine, queue=queue, block=True, timeout=int(poll_interval_seconds)
        )
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )
    run_loop()
