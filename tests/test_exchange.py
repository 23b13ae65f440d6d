"""
A2W Runtime: Need/Insight Exchange Tests

Tests:
  - raise_need only from running, emits need_data, parks a Continuation
  - strict policy waits for every required key, optimistic resumes at once
  - insight for a task that is not waiting fails instead of queueing
  - a superset of the required keys resumes
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from a2w.errors import IllegalTransition, InvalidInput, TaskNotWaiting
from a2w.types import TaskContext, TaskState
from runtime.exchange import InsightPolicy, NeedInsightExchange
from runtime.fsm import FSMEngine
from runtime.registry import TaskRegistry


def _running_task(policy=InsightPolicy.STRICT):
    registry = TaskRegistry()
    fsm = FSMEngine(registry)
    needs = []
    exchange = NeedInsightExchange(registry, fsm, policy=policy, publish_need=needs.append)
    registry.submit(TaskContext(task_id="T1"))
    fsm.transition("T1", TaskState.INITIALIZING)
    fsm.transition("T1", TaskState.RUNNING)
    return registry, exchange, needs


class TestRaiseNeed(unittest.TestCase):

    def setUp(self):
        self.registry, self.exchange, self.needs = _running_task()

    def test_suspends_and_emits(self):
        continuation = self.exchange.raise_need(
            "T1", ["market_trends"], urgency="high", description="need trends",
        )
        self.assertEqual(self.registry.state_of("T1"), TaskState.WAITING)
        self.assertEqual(continuation.missing(), ["market_trends"])
        self.assertEqual(len(self.needs), 1)
        self.assertEqual(self.needs[0].required, ["market_trends"])
        self.assertEqual(self.needs[0].urgency, "high")
        self.assertEqual(self.registry.lookup("T1").suspension.reason, "need_data")

    def test_duplicate_keys_collapsed(self):
        continuation = self.exchange.raise_need("T1", ["a", "a", "b"])
        self.assertEqual(continuation.required, ["a", "b"])

    def test_only_from_running(self):
        self.exchange.raise_need("T1", ["a"])
        with self.assertRaises(IllegalTransition):
            self.exchange.raise_need("T1", ["b"])
        self.assertEqual(len(self.needs), 1)

    def test_bad_required(self):
        for required in ([], "market_trends", [""], [1], None):
            with self.subTest(required=required):
                with self.assertRaises(InvalidInput):
                    self.exchange.raise_need("T1", required)
        self.assertEqual(self.registry.state_of("T1"), TaskState.RUNNING)

    def test_bad_urgency(self):
        with self.assertRaises(InvalidInput):
            self.exchange.raise_need("T1", ["a"], urgency="whenever")


class TestStrictPolicy(unittest.TestCase):

    def setUp(self):
        self.registry, self.exchange, _ = _running_task(InsightPolicy.STRICT)
        self.exchange.raise_need("T1", ["a", "b"])

    def test_partial_insight_keeps_waiting(self):
        result = self.exchange.provide_insight("T1", {"a": 1})
        self.assertFalse(result.resumed)
        self.assertEqual(result.missing, ["b"])
        self.assertEqual(self.registry.state_of("T1"), TaskState.WAITING)

        result = self.exchange.provide_insight("T1", {"b": 2}, rating=0.8)
        self.assertTrue(result.resumed)
        self.assertEqual(result.state, TaskState.RUNNING)
        suspension = self.registry.lookup("T1").suspension
        self.assertEqual(suspension.insights, {"a": 1, "b": 2})
        self.assertEqual(suspension.ratings, [0.8])

    def test_superset_resumes(self):
        result = self.exchange.provide_insight("T1", {"a": 1, "b": 2, "extra": 3})
        self.assertTrue(result.resumed)
        self.assertEqual(result.missing, [])

    def test_rating_range(self):
        for rating in (-0.1, 1.5, True, "high"):
            with self.subTest(rating=rating):
                with self.assertRaises(InvalidInput):
                    self.exchange.provide_insight("T1", {"a": 1}, rating=rating)
        self.assertEqual(self.registry.lookup("T1").suspension.insights, {})

    def test_payload_must_be_object(self):
        with self.assertRaises(InvalidInput):
            self.exchange.provide_insight("T1", ["a"])


class TestOptimisticPolicy(unittest.TestCase):

    def test_first_insight_resumes(self):
        registry, exchange, _ = _running_task(InsightPolicy.OPTIMISTIC)
        exchange.raise_need("T1", ["a", "b"])
        result = exchange.provide_insight("T1", {"a": 1})
        self.assertTrue(result.resumed)
        self.assertEqual(result.missing, ["b"])
        self.assertEqual(registry.state_of("T1"), TaskState.RUNNING)


class TestNotWaiting(unittest.TestCase):

    def test_running_task_refuses_insight(self):
        registry, exchange, _ = _running_task()
        with self.assertRaises(TaskNotWaiting) as ctx:
            exchange.provide_insight("T1", {"a": 1})
        self.assertEqual(ctx.exception.status, 409)
        self.assertIsNone(registry.lookup("T1").suspension)


class TestReopen(unittest.TestCase):

    def test_blocked_task_waits_again(self):
        registry, exchange, needs = _running_task()
        exchange.raise_need("T1", ["a"])
        exchange.provide_insight("T1", {"a": 1})
        exchange.fsm.transition("T1", TaskState.BLOCKED)
        continuation = exchange.reopen("T1", ["b"], description="try again")
        self.assertEqual(registry.state_of("T1"), TaskState.WAITING)
        self.assertEqual(continuation.insights, {"a": 1})
        self.assertEqual(continuation.missing(), ["b"])
        self.assertEqual(len(needs), 2)

    def test_reopen_requires_blocked(self):
        _, exchange, _ = _running_task()
        with self.assertRaises(IllegalTransition):
            exchange.reopen("T1", ["a"])


if __name__ == "__main__":
    unittest.main()
