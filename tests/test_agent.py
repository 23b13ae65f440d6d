"""
A2W Runtime: Agent Record and Capability Listing Tests
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from a2w.errors import InvalidInput, PermissionDenied
from runtime.abilities import Ability, AbilityRegistry
from runtime.agent import AgentRecord


class TestAgentRecord(unittest.TestCase):

    def test_identity(self):
        agent = AgentRecord("planner", weight=40)
        self.assertEqual(agent.agent_id, "planner")
        self.assertEqual(agent.weight, 40)

    def test_invalid_construction(self):
        with self.assertRaises(InvalidInput):
            AgentRecord("")
        with self.assertRaises(InvalidInput):
            AgentRecord("planner", weight=101)

    def test_update_weight_by_authority(self):
        agent = AgentRecord("planner", weight=40, weight_authorities=["orchestrator"])
        self.assertEqual(agent.update_weight(75, "orchestrator"), (40, 75))
        self.assertEqual(agent.weight, 75)

    def test_update_weight_by_self(self):
        agent = AgentRecord("planner", weight=40, weight_authorities=[])
        self.assertEqual(agent.update_weight(0, "planner"), (40, 0))
        self.assertEqual(agent.update_weight(100, "planner"), (0, 100))

    def test_update_weight_denied(self):
        agent = AgentRecord("planner", weight=40, weight_authorities=["orchestrator"])
        with self.assertRaises(PermissionDenied):
            agent.update_weight(90, "stranger")
        self.assertEqual(agent.weight, 40)

    def test_update_weight_range(self):
        agent = AgentRecord("planner", weight=40)
        for value in (-1, 101, 50.5, True, "60"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidInput):
                    agent.update_weight(value, "planner")
        self.assertEqual(agent.weight, 40)

    def test_authorities_default_to_callers(self):
        agent = AgentRecord("planner", allowed_callers=["orchestrator"])
        self.assertEqual(agent.weight_authorities, frozenset({"orchestrator"}))

    def test_accepts_caller(self):
        open_agent = AgentRecord("planner")
        self.assertTrue(open_agent.accepts_caller("anyone"))
        closed = AgentRecord("planner", allowed_callers=["orchestrator"])
        self.assertTrue(closed.accepts_caller("orchestrator"))
        self.assertTrue(closed.accepts_caller(""))
        self.assertFalse(closed.accepts_caller("stranger"))

    def test_can_delegate_to(self):
        agent = AgentRecord("planner", allowed_callees=["pricing"])
        self.assertTrue(agent.can_delegate_to("pricing"))
        self.assertFalse(agent.can_delegate_to("billing"))
        self.assertFalse(AgentRecord("planner").can_delegate_to("pricing"))

    def test_snapshot(self):
        snap = AgentRecord("planner", weight=10, allowed_callees=["b", "a"]).snapshot()
        self.assertEqual(snap["allowed_callees"], ["a", "b"])
        self.assertEqual(snap["weight"], 10)


class TestAbilityRegistry(unittest.TestCase):

    def test_from_config(self):
        registry = AbilityRegistry.from_config([
            "summarize",
            {"name": "forecast", "description": "sales forecast", "version": "2.1"},
        ])
        listed = registry.list()
        self.assertEqual([a["name"] for a in listed], ["forecast", "summarize"])
        self.assertEqual(listed[0]["version"], "2.1")
        self.assertEqual(len(registry), 2)

    def test_invalid_entry(self):
        with self.assertRaises(ValueError):
            AbilityRegistry.from_config([{"description": "no name"}])

    def test_register_replaces(self):
        registry = AbilityRegistry([Ability("x", description="old")])
        registry.register(Ability("x", description="new"))
        self.assertEqual(registry.list(), [Ability("x", description="new").to_dict()])


if __name__ == "__main__":
    unittest.main()
