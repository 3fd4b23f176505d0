"""
Daemon that periodically runs the weekly rollover for every user.

Rollover is idempotent, so running hourly only does work right after an
ISO week boundary (or for users whose client was offline).
"""

from __future__ import annotations

import argparse
import logging
import random
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rollover.batch import run_weekly_rollover
from rollover.config import get_settings
from rollover.dependencies import get_engine

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Weekly goal rollover daemon")
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=settings.daemon_interval_seconds,
        help="Seconds between rollover runs",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=int,
        default=settings.daemon_jitter_seconds,
        help="Max random jitter added to sleep",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=settings.batch_max_workers,
        help="Users rolled over concurrently",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single batch and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    engine = get_engine()

    while True:
        try:
            summary = run_weekly_rollover(engine, max_workers=args.max_workers)
            logger.info(
                "Batch complete: total=%d rolled=%d skipped=%d failed=%d",
                summary.total,
                summary.rolled,
                summary.skipped,
                summary.failed,
            )
        except Exception as exc:
            logger.exception("Batch failed: %s", exc)
            summary = None

        if args.once:
            return 0 if summary is not None and summary.failed == 0 else 1

        sleep_for = args.interval_seconds + random.uniform(0, args.jitter_seconds)
        logger.info("Sleeping for %.1fs", sleep_for)
        time.sleep(sleep_for)


if __name__ == "__main__":
    raise SystemExit(main())
