"""
Force one user's week forward and print the result.

By default the rollover is simulated: the user moves to the week after the
one stored in their current-week document, whatever the calendar says.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rollover.dependencies import get_engine


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a rollover for a single user")
    parser.add_argument("user_id", help="User whose week should roll over")
    parser.add_argument(
        "--real",
        action="store_true",
        help="Roll over to the calendar's current week instead of simulating",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    engine = get_engine()
    result = engine.rollover_week_for_user(args.user_id, simulate=not args.real)
    print(json.dumps(result.model_dump(mode="json"), indent=2))

    current = engine.repository.get_current_week(args.user_id)
    if current is not None:
        for goal in current.body.get("goals") or []:
            print(
                f"  {goal.get('id')}: {goal.get('title')!r} "
                f"weeksRemaining={goal.get('weeksRemaining')} completed={goal.get('completed')}"
            )
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
