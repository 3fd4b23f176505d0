"""
Access to the per-user rollover collections on top of a ``DocumentStore``.

Collections (all keyed by user id):

- ``users``: one document per known user.
- ``dreams``: the dreams aggregate with embedded goals and weekly goal templates.
- ``currentWeek``: the user's live week and its goal instances.
- ``pastWeeks``: archived per-week summaries keyed by week id.
"""

from __future__ import annotations

import logging
from typing import Optional

from rollover.scoring import week_stats
from rollover.store import DocumentStore, StoredDocument
from rollover.weeks import week_range

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
DREAMS_COLLECTION = "dreams"
CURRENT_WEEK_COLLECTION = "currentWeek"
PAST_WEEKS_COLLECTION = "pastWeeks"

TEMPLATES_FIELD = "weeklyGoalTemplates"


def dreams_field(dreams_doc: dict) -> str:
    """Older documents keep dreams under ``dreams`` instead of ``dreamBook``."""
    return "dreamBook" if "dreamBook" in dreams_doc or "dreams" not in dreams_doc else "dreams"


class RolloverRepository:
    """Reads and writes the documents the rollover engine works on."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def list_user_ids(self) -> list[str]:
        return [doc.key for doc in self.store.query(USERS_COLLECTION)]

    def get_dreams(self, user_id: str) -> Optional[StoredDocument]:
        return self.store.get(DREAMS_COLLECTION, user_id)

    def put_dreams(
        self, user_id: str, body: dict, *, expected_version: Optional[int] = None
    ) -> StoredDocument:
        return self.store.put(
            DREAMS_COLLECTION, user_id, body, expected_version=expected_version
        )

    def get_current_week(self, user_id: str) -> Optional[StoredDocument]:
        return self.store.get(CURRENT_WEEK_COLLECTION, user_id)

    def replace_current_week(
        self,
        user_id: str,
        week_id: str,
        goals: list[dict],
        *,
        now: str,
        previous: Optional[StoredDocument] = None,
    ) -> StoredDocument:
        """
        Write the user's current week wholesale.

        ``previous`` is the document as read before the rollover started; the
        write fails with ``VersionConflictError`` if it changed since.
        """
        dates = week_range(week_id)
        body = {
            "id": user_id,
            "userId": user_id,
            "weekId": week_id,
            "weekStartDate": dates.start.isoformat(),
            "weekEndDate": dates.end.isoformat(),
            "goals": goals,
            "stats": week_stats(goals),
            "createdAt": (previous.body.get("createdAt") if previous else None) or now,
            "updatedAt": now,
        }
        return self.store.put(
            CURRENT_WEEK_COLLECTION,
            user_id,
            body,
            expected_version=previous.version if previous else 0,
        )

    def get_past_weeks(self, user_id: str) -> Optional[StoredDocument]:
        return self.store.get(PAST_WEEKS_COLLECTION, user_id)

    def archive_weeks(
        self, user_id: str, summaries: dict[str, dict], *, now: str
    ) -> StoredDocument:
        """
        Add ``summaries`` (week id -> summary) to the user's week history.

        Entries already present are kept as they are, so replaying a rollover
        after a partial failure never rewrites history.
        """
        existing = self.get_past_weeks(user_id)
        if existing:
            body = dict(existing.body)
            history = dict(body.get("weekHistory") or {})
        else:
            body = {"id": user_id, "userId": user_id, "createdAt": now}
            history = {}

        for week_id, summary in summaries.items():
            if week_id in history:
                logger.info("%s: week %s already archived, keeping existing entry", user_id, week_id)
                continue
            history[week_id] = {**summary, "archivedAt": now}

        body["weekHistory"] = history
        body["totalWeeksTracked"] = len(history)
        body["updatedAt"] = now
        return self.store.put(
            PAST_WEEKS_COLLECTION,
            user_id,
            body,
            expected_version=existing.version if existing else 0,
        )
