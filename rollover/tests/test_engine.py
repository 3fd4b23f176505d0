import unittest
from datetime import date

from rollover.config import Settings
from rollover.engine import RolloverEngine
from rollover.errors import TransientStoreError
from rollover.repository import (
    CURRENT_WEEK_COLLECTION,
    DREAMS_COLLECTION,
    PAST_WEEKS_COLLECTION,
    RolloverRepository,
)
from rollover.schemas import ErrorKind, RolloverState
from rollover.store import InMemoryDocumentStore

NOW = "2025-03-12T09:00:00+00:00"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


def _template(template_id="T", **fields):
    template = {
        "id": template_id,
        "dreamId": "d1",
        "title": f"Template {template_id}",
        "recurrence": "weekly",
        "weeksRemaining": 2,
        "frequency": 3,
        "active": True,
    }
    template.update(fields)
    return template


class EngineTestCase(unittest.TestCase):
    today = date(2025, 3, 12)  # Wednesday of 2025-W11

    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.repository = RolloverRepository(self.store)
        self.sleep = RecordingSleep()
        self.engine = self._engine(self.store)

    def _engine(self, store):
        return RolloverEngine(
            RolloverRepository(store),
            settings=Settings(consistency_max_retries=3, rollover_deadline_seconds=30),
            today=lambda: self.today,
            now=lambda: NOW,
            sleep=self.sleep,
            clock=lambda: 0.0,
        )

    def seed(self, week_id="2025-W10", goals=None, templates=None, dreams=None, user_id="u1"):
        self.store.put("users", user_id, {"id": user_id})
        if week_id is not None:
            self.repository.replace_current_week(user_id, week_id, goals or [], now="SEEDED")
        self.repository.put_dreams(
            user_id,
            {
                "dreamBook": dreams if dreams is not None else [{"id": "d1", "title": "Dream", "category": "Health", "goals": []}],
                "weeklyGoalTemplates": templates or [],
            },
        )

    def current(self, user_id="u1"):
        return self.repository.get_current_week(user_id)

    def templates(self, user_id="u1"):
        return self.repository.get_dreams(user_id).body["weeklyGoalTemplates"]

    def dream_goals(self, user_id="u1"):
        return self.repository.get_dreams(user_id).body["dreamBook"][0]["goals"]


class RolloverStateTests(EngineTestCase):
    def test_no_current_week(self):
        self.seed(week_id=None)
        result = self.engine.rollover_week_for_user("u1")
        self.assertTrue(result.success)
        self.assertFalse(result.rolled)
        self.assertEqual(result.state, RolloverState.NO_CURRENT_WEEK)
        self.assertEqual(result.message, "No current week")

    def test_rolls_to_system_week(self):
        self.seed(templates=[_template()])
        result = self.engine.rollover_week_for_user("u1")

        self.assertTrue(result.success)
        self.assertTrue(result.rolled)
        self.assertEqual(result.state, RolloverState.ROLLED)
        self.assertEqual((result.from_week, result.to_week), ("2025-W10", "2025-W11"))
        self.assertEqual(result.goals_count, 1)

        body = self.current().body
        self.assertEqual(body["weekId"], "2025-W11")
        self.assertEqual(body["weekStartDate"], "2025-03-10")
        self.assertEqual(body["weekEndDate"], "2025-03-16")
        self.assertEqual(body["createdAt"], "SEEDED")
        self.assertEqual(body["updatedAt"], NOW)
        self.assertEqual(body["stats"], {"totalGoals": 1, "completedGoals": 0, "skippedGoals": 0, "score": 0})

    def test_second_call_is_a_no_op(self):
        self.seed(templates=[_template()])
        self.engine.rollover_week_for_user("u1")
        before = self.current()
        dreams_before = self.repository.get_dreams("u1")

        for _ in range(2):
            result = self.engine.rollover_week_for_user("u1")
            self.assertTrue(result.success)
            self.assertFalse(result.rolled)
            self.assertEqual(result.state, RolloverState.ALREADY_CURRENT)

        after = self.current()
        self.assertEqual(after.version, before.version)
        self.assertEqual(after.body, before.body)
        self.assertEqual(self.repository.get_dreams("u1").version, dreams_before.version)

    def test_document_ahead_of_calendar_is_left_alone(self):
        self.seed(week_id="2025-W12")
        result = self.engine.rollover_week_for_user("u1")
        self.assertFalse(result.rolled)
        self.assertEqual(result.state, RolloverState.ALREADY_CURRENT)
        self.assertEqual(self.current().body["weekId"], "2025-W12")

    def test_simulate_moves_one_week_past_document(self):
        self.seed(week_id="2025-W11", templates=[_template()])
        result = self.engine.rollover_week_for_user("u1", simulate=True)
        self.assertTrue(result.rolled)
        self.assertEqual(result.to_week, "2025-W12")


class RolloverContentTests(EngineTestCase):
    def test_weekly_template_example(self):
        previous = [
            {
                "id": "T_2025-W10",
                "templateId": "T",
                "type": "weekly_goal",
                "recurrence": "weekly",
                "weekId": "2025-W10",
                "completed": True,
                "completionCount": 3,
                "completionDates": ["a", "b", "c"],
                "skipped": False,
            }
        ]
        self.seed(goals=previous, templates=[_template()])
        self.engine.rollover_week_for_user("u1")

        (instance,) = self.current().body["goals"]
        self.assertEqual(instance["id"], "T_2025-W11")
        self.assertEqual(instance["weeksRemaining"], 1)
        self.assertEqual(instance["completionCount"], 0)
        self.assertEqual(instance["completionDates"], [])
        self.assertEqual(instance["createdAt"], NOW)
        self.assertEqual(self.templates()[0]["weeksRemaining"], 1)

        history = self.repository.get_past_weeks("u1").body["weekHistory"]
        self.assertEqual(history["2025-W10"]["completedGoals"], 1)
        self.assertEqual(history["2025-W10"]["score"], 3)
        self.assertEqual(history["2025-W10"]["archivedAt"], NOW)

    def test_skipped_week_holds_counter(self):
        previous = [{"id": "T_2025-W10", "templateId": "T", "weekId": "2025-W10", "skipped": True}]
        self.seed(goals=previous, templates=[_template(weeksRemaining=2)])
        self.engine.rollover_week_for_user("u1")
        self.assertEqual(self.current().body["goals"][0]["weeksRemaining"], 2)
        self.assertEqual(self.templates()[0]["weeksRemaining"], 2)

    def test_monthly_progress_carries_within_month(self):
        template = _template("M", recurrence="monthly", weeksRemaining=8, frequency=2)
        previous = [
            {
                "id": "M_2025-W10",
                "templateId": "M",
                "weekId": "2025-W10",
                "completionCount": 1,
                "completionDates": ["2025-03-04"],
                "completed": False,
            }
        ]
        self.seed(goals=previous, templates=[template])
        self.engine.rollover_week_for_user("u1")
        (instance,) = self.current().body["goals"]
        self.assertEqual(instance["monthId"], "2025-03")
        self.assertEqual(instance["completionCount"], 1)
        self.assertEqual(instance["completionDates"], ["2025-03-04"])

    def test_missed_weeks_are_archived_with_zeroed_stats(self):
        previous = [{"id": "T_2025-W08", "templateId": "T", "completed": True, "weekId": "2025-W08"}]
        self.seed(week_id="2025-W08", goals=previous, templates=[_template(weeksRemaining=5)])
        result = self.engine.rollover_week_for_user("u1")

        self.assertEqual((result.from_week, result.to_week), ("2025-W08", "2025-W11"))
        past = self.repository.get_past_weeks("u1").body
        self.assertEqual(sorted(past["weekHistory"]), ["2025-W08", "2025-W09", "2025-W10"])
        self.assertEqual(past["totalWeeksTracked"], 3)
        self.assertEqual(past["weekHistory"]["2025-W08"]["completedGoals"], 1)
        for week_id in ("2025-W09", "2025-W10"):
            entry = past["weekHistory"][week_id]
            self.assertEqual((entry["totalGoals"], entry["completedGoals"], entry["score"]), (0, 0, 0))
        self.assertEqual(past["weekHistory"]["2025-W09"]["weekStartDate"], "2025-02-24")

        self.assertEqual(self.current().body["weekId"], "2025-W11")
        self.assertEqual(self.current().version, 2)
        # one rollover, one decrement
        self.assertEqual(self.templates()[0]["weeksRemaining"], 4)

    def test_archived_weeks_are_never_overwritten(self):
        self.store.put(
            PAST_WEEKS_COLLECTION,
            "u1",
            {"weekHistory": {"2025-W10": {"score": 99}}, "totalWeeksTracked": 1},
        )
        self.seed(goals=[{"id": "x", "completed": True}])
        self.engine.rollover_week_for_user("u1")
        past = self.repository.get_past_weeks("u1").body
        self.assertEqual(past["weekHistory"]["2025-W10"], {"score": 99})
        self.assertEqual(past["totalWeeksTracked"], 1)

    def test_template_exhaustion(self):
        self.seed(templates=[_template(weeksRemaining=1)])
        self.engine.rollover_week_for_user("u1")
        self.assertEqual(self.current().body["goals"][0]["weeksRemaining"], 0)
        self.assertTrue(self.templates()[0]["active"])

        self.engine.rollover_week_for_user("u1", simulate=True)
        self.assertEqual(self.current().body["goals"], [])
        template = self.templates()[0]
        self.assertEqual(template["weeksRemaining"], -1)
        self.assertFalse(template["active"])
        self.assertEqual(template["completedAt"], NOW)

        self.engine.rollover_week_for_user("u1", simulate=True)
        self.assertEqual(self.current().body["goals"], [])
        self.assertEqual(self.templates()[0]["weeksRemaining"], -1)

    def test_skipped_final_week_holds_template_counter(self):
        previous = [{"id": "T_2025-W10", "templateId": "T", "weekId": "2025-W10", "skipped": True}]
        self.seed(goals=previous, templates=[_template(weeksRemaining=0)])

        self.engine.rollover_week_for_user("u1")
        self.assertEqual(self.current().body["goals"], [])
        template = self.templates()[0]
        self.assertEqual(template["weeksRemaining"], 0)
        self.assertTrue(template["active"])

        self.engine.rollover_week_for_user("u1", simulate=True)
        template = self.templates()[0]
        self.assertEqual(template["weeksRemaining"], -1)
        self.assertFalse(template["active"])

    def test_string_counters_are_coerced(self):
        self.seed(templates=[_template(weeksRemaining="4")])
        result = self.engine.rollover_week_for_user("u1")
        self.assertTrue(result.success)
        self.assertEqual(self.current().body["goals"][0]["weeksRemaining"], 3)
        self.assertEqual(self.templates()[0]["weeksRemaining"], 3)

    def test_dream_consistency_goal_counts_down(self):
        goal = {"id": "c1", "type": "consistency", "recurrence": "weekly", "targetWeeks": 2, "title": "Read"}
        self.seed(dreams=[{"id": "d1", "title": "Learn", "goals": [goal]}])

        self.engine.rollover_week_for_user("u1")
        self.assertEqual(self.current().body["goals"][0]["dreamTitle"], "Learn")
        self.assertEqual(self.dream_goals()[0]["weeksRemaining"], 1)

        self.engine.rollover_week_for_user("u1", simulate=True)
        self.assertEqual(self.dream_goals()[0]["weeksRemaining"], 0)
        self.assertEqual(len(self.current().body["goals"]), 1)

        self.engine.rollover_week_for_user("u1", simulate=True)
        self.assertEqual(self.current().body["goals"], [])
        retired = self.dream_goals()[0]
        self.assertEqual(retired["weeksRemaining"], -1)
        self.assertFalse(retired["active"])


class DeadlineLifecycleTests(EngineTestCase):
    today = date(2025, 12, 10)  # Wednesday of 2025-W50

    def test_deadline_goal_runs_to_its_date_then_retires(self):
        goal = {
            "id": "G",
            "type": "deadline",
            "title": "Launch",
            "targetDate": "2025-12-31",
            "active": True,
            "completed": False,
        }
        self.seed(week_id="2025-W49", dreams=[{"id": "d1", "title": "Company", "goals": [goal]}])

        self.engine.rollover_week_for_user("u1")
        (instance,) = self.current().body["goals"]
        self.assertEqual(instance["id"], "G_2025-W50")
        self.assertEqual(instance["weeksRemaining"], 3)
        stored = self.dream_goals()[0]
        self.assertEqual((stored["weeksRemaining"], stored["targetWeeks"]), (3, 4))
        self.assertTrue(stored["active"])

        for expected in (2, 1, 0):
            self.engine.rollover_week_for_user("u1", simulate=True)
            self.assertEqual(self.current().body["goals"][0]["weeksRemaining"], expected)

        self.engine.rollover_week_for_user("u1", simulate=True)
        self.assertEqual(self.current().body["weekId"], "2026-W02")
        self.assertEqual(self.current().body["goals"], [])
        stored = self.dream_goals()[0]
        self.assertEqual(stored["weeksRemaining"], -1)
        self.assertFalse(stored["active"])
        self.assertEqual(stored["completedAt"], NOW)

        self.engine.rollover_week_for_user("u1", simulate=True)
        self.assertEqual(self.current().body["goals"], [])

    def test_completed_deadline_waits_for_consistency(self):
        goal = {"id": "G", "type": "deadline", "targetWeeks": 4, "active": False, "completed": True}
        previous = [{"id": "G_2025-W49", "templateId": "G", "type": "deadline", "completed": True}]
        self.seed(week_id="2025-W49", goals=previous, dreams=[{"id": "d1", "goals": [goal]}])

        result = self.engine.rollover_week_for_user("u1")
        self.assertTrue(result.rolled)
        self.assertEqual(self.sleep.delays, [0.8])
        self.assertEqual(self.current().body["goals"], [])
        self.assertEqual(self.current().body["stats"]["totalGoals"], 0)
        history = self.repository.get_past_weeks("u1").body["weekHistory"]
        self.assertEqual(history["2025-W49"]["score"], 5)


class ConcurrentWriterStore(InMemoryDocumentStore):
    """Another process rewrites the current week while the rollover reads dreams."""

    def get(self, collection, key):
        if collection == DREAMS_COLLECTION:
            current = super().get(CURRENT_WEEK_COLLECTION, key)
            if current is not None:
                super().put(CURRENT_WEEK_COLLECTION, key, current.body)
        return super().get(collection, key)


class FailingStore(InMemoryDocumentStore):
    def __init__(self, fail_get=(), fail_put=()):
        super().__init__()
        self.fail_get = set(fail_get)
        self.fail_put = set(fail_put)

    def get(self, collection, key):
        if collection in self.fail_get:
            raise TransientStoreError(f"read {collection}/{key} timed out")
        return super().get(collection, key)

    def put(self, collection, key, body, *, expected_version=None):
        if collection in self.fail_put:
            raise TransientStoreError(f"write {collection}/{key} timed out")
        return super().put(collection, key, body, expected_version=expected_version)


class RolloverFailureTests(EngineTestCase):
    def test_concurrent_writer_fails_closed(self):
        self.store = ConcurrentWriterStore()
        self.repository = RolloverRepository(self.store)
        self.seed(templates=[_template()])
        engine = self._engine(self.store)

        result = engine.rollover_week_for_user("u1")
        self.assertFalse(result.success)
        self.assertFalse(result.rolled)
        self.assertEqual(result.state, RolloverState.FAILED)
        self.assertEqual(result.error_kind, ErrorKind.VERSION_CONFLICT)
        self.assertEqual(self.current().body["weekId"], "2025-W10")
        self.assertEqual(self.templates()[0]["weeksRemaining"], 2)

    def test_transient_store_error(self):
        self.store = FailingStore()
        self.repository = RolloverRepository(self.store)
        self.seed()
        self.store.fail_get.add(CURRENT_WEEK_COLLECTION)

        result = self._engine(self.store).rollover_week_for_user("u1")
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, ErrorKind.TRANSIENT_STORE)
        self.assertIn("timed out", result.message)

    def test_retry_after_failed_week_write_decrements_once(self):
        self.store = FailingStore()
        self.repository = RolloverRepository(self.store)
        self.seed(templates=[_template(weeksRemaining=5)])
        engine = self._engine(self.store)

        self.store.fail_put.add(CURRENT_WEEK_COLLECTION)
        result = engine.rollover_week_for_user("u1")
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, ErrorKind.TRANSIENT_STORE)
        self.assertEqual(self.templates()[0]["weeksRemaining"], 5)

        self.store.fail_put.clear()
        result = engine.rollover_week_for_user("u1")
        self.assertTrue(result.rolled)
        self.assertEqual(result.to_week, "2025-W11")
        self.assertEqual(self.current().body["goals"][0]["weeksRemaining"], 4)
        self.assertEqual(self.templates()[0]["weeksRemaining"], 4)

    def test_counter_write_failure_does_not_fail_rollover(self):
        self.store = FailingStore()
        self.repository = RolloverRepository(self.store)
        self.seed(templates=[_template()])
        self.store.fail_put.add(DREAMS_COLLECTION)

        with self.assertLogs("rollover.engine", level="WARNING"):
            result = self._engine(self.store).rollover_week_for_user("u1")
        self.assertTrue(result.success)
        self.assertTrue(result.rolled)
        self.assertEqual(self.current().body["goals"][0]["weeksRemaining"], 1)
        self.assertEqual(self.templates()[0]["weeksRemaining"], 2)

    def test_malformed_week_id(self):
        self.seed(week_id="2025-W10")
        body = self.current().body
        body["weekId"] = "week ten"
        self.store.put(CURRENT_WEEK_COLLECTION, "u1", body)

        result = self.engine.rollover_week_for_user("u1")
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, ErrorKind.DATA_SHAPE)


class SyncCurrentWeekTests(EngineTestCase):
    def test_adds_templates_created_mid_week(self):
        existing = [{"id": "T_2025-W11", "templateId": "T", "completed": True, "weekId": "2025-W11"}]
        self.seed(
            week_id="2025-W11",
            goals=existing,
            templates=[_template("T"), _template("NEW", weeksRemaining=6)],
        )
        result = self.engine.sync_current_week("u1")

        self.assertTrue(result.success)
        self.assertEqual(result.created, 1)
        ids = [goal["id"] for goal in self.current().body["goals"]]
        self.assertEqual(ids, ["T_2025-W11", "NEW_2025-W11"])
        self.assertEqual(self.current().body["goals"][1]["weeksRemaining"], 6)
        self.assertTrue(self.current().body["goals"][0]["completed"])
        # counters are untouched mid-week
        self.assertEqual([t["weeksRemaining"] for t in self.templates()], [2, 6])

    def test_already_in_sync(self):
        self.seed(week_id="2025-W11", templates=[_template("T")])
        self.engine.sync_current_week("u1")
        version = self.current().version

        result = self.engine.sync_current_week("u1")
        self.assertTrue(result.success)
        self.assertEqual(result.created, 0)
        self.assertEqual(self.current().version, version)

    def test_creates_missing_document(self):
        self.seed(week_id=None, templates=[_template("T")])
        result = self.engine.sync_current_week("u1")
        self.assertTrue(result.success)
        self.assertEqual(result.week_id, "2025-W11")
        self.assertEqual(self.current().body["goals"][0]["id"], "T_2025-W11")

    def test_rolls_over_when_behind(self):
        self.seed(week_id="2025-W10", templates=[_template("T")])
        result = self.engine.sync_current_week("u1")
        self.assertTrue(result.success)
        self.assertEqual(result.week_id, "2025-W11")
        self.assertEqual([goal["id"] for goal in result.goals], ["T_2025-W11"])
        self.assertEqual(self.templates()[0]["weeksRemaining"], 1)


if __name__ == "__main__":
    unittest.main()
