"""
A2W Runtime: Configuration Loader Tests

Tests layered loading (base file → overlay file → A2W_ env vars) and
the typed RuntimeConfig built from the merged mapping.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest import mock

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from a2w.errors import ConfigError
from runtime.config import (
    RuntimeConfig,
    _load_env_overrides,
    _set_nested,
    deep_merge,
    get_config_value,
    load_config,
)

BASE_YAML = """
agent:
  agent_id: planner
  weight: 40
  allowed_callers: [orchestrator]
scheduler:
  max_concurrent: 2
exchange:
  insight_policy: strict
"""


class TestDeepMerge(unittest.TestCase):

    def test_nested_merge(self):
        base = {"outer": {"a": 1, "b": 2, "inner": {"x": 10}}}
        overlay = {"outer": {"b": 99, "inner": {"y": 20}}}
        result = deep_merge(base, overlay)
        self.assertEqual(result, {"outer": {"a": 1, "b": 99, "inner": {"x": 10, "y": 20}}})

    def test_overlay_replaces_list(self):
        self.assertEqual(deep_merge({"items": [1, 2]}, {"items": [9]}), {"items": [9]})

    def test_base_unmodified(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 99}})
        self.assertEqual(base["a"]["b"], 1)

    def test_set_nested(self):
        d = {}
        _set_nested(d, ["agent", "weight"], 70)
        self.assertEqual(d, {"agent": {"weight": 70}})


class TestEnvOverrides(unittest.TestCase):

    def test_section_split_at_first_underscore(self):
        env = {
            "A2W_AGENT_WEIGHT": "70",
            "A2W_SCHEDULER_MAX_CONCURRENT": "8",
            "A2W_AGENT_ALLOWED_CALLERS": "orchestrator, auditor",
            "A2W_ENV": "prod",
            "A2W_CONFIG": "elsewhere.yaml",
            "OTHER_VAR": "ignored",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            overrides = _load_env_overrides()
        self.assertEqual(overrides["agent"]["weight"], 70)
        self.assertEqual(overrides["scheduler"]["max_concurrent"], 8)
        self.assertEqual(overrides["agent"]["allowed_callers"], "orchestrator, auditor")
        self.assertNotIn("env", overrides)
        self.assertNotIn("config", overrides)

    def test_booleans_and_strings(self):
        with mock.patch.dict(os.environ, {"A2W_STORE_BACKEND": "sqlite", "A2W_X_FLAG": "true"}, clear=True):
            overrides = _load_env_overrides()
        self.assertEqual(overrides["store"]["backend"], "sqlite")
        self.assertIs(overrides["x"]["flag"], True)


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.base = os.path.join(self.tmpdir, "runtime.yaml")
        with open(self.base, "w") as f:
            f.write(BASE_YAML)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_base_only(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config(self.base)
        self.assertEqual(config["agent"]["agent_id"], "planner")
        self.assertEqual(config["_active_env"], "default")
        self.assertEqual(config["_config_source"], self.base)

    def test_overlay_then_env(self):
        with open(os.path.join(self.tmpdir, "prod.yaml"), "w") as f:
            f.write("agent:\n  weight: 80\nscheduler:\n  max_concurrent: 16\n")
        env = {"A2W_SCHEDULER_MAX_CONCURRENT": "32"}
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config(self.base, env="prod", config_dir=self.tmpdir)
        self.assertEqual(config["agent"]["weight"], 80)
        self.assertEqual(config["agent"]["allowed_callers"], ["orchestrator"])
        self.assertEqual(config["scheduler"]["max_concurrent"], 32)
        self.assertEqual(config["_active_env"], "prod")

    def test_env_vars_can_be_skipped(self):
        with mock.patch.dict(os.environ, {"A2W_AGENT_WEIGHT": "99"}, clear=True):
            config = load_config(self.base, include_env_vars=False)
        self.assertEqual(config["agent"]["weight"], 40)

    def test_missing_base_is_empty(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config(os.path.join(self.tmpdir, "absent.yaml"))
        self.assertEqual(set(config), {"_active_env", "_config_source"})

    def test_invalid_yaml(self):
        with open(self.base, "w") as f:
            f.write("agent: [unclosed\n")
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigError):
                load_config(self.base)

    def test_get_config_value(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config(self.base)
        self.assertEqual(get_config_value("scheduler.max_concurrent", config), 2)
        self.assertEqual(get_config_value("scheduler.alpha", config, 1.0), 1.0)


class TestRuntimeConfig(unittest.TestCase):

    def test_defaults(self):
        cfg = RuntimeConfig.from_dict({"agent": {"agent_id": "planner"}})
        self.assertEqual(cfg.weight, 50)
        self.assertEqual(cfg.interrupt_threshold, 20)
        self.assertEqual(cfg.insight_policy, "strict")
        self.assertIsNone(cfg.weight_authorities)

    def test_sections(self):
        cfg = RuntimeConfig.from_dict({
            "agent": {
                "agent_id": "planner",
                "weight": 70,
                "allowed_callees": "pricing,billing",
                "weight_authorities": ["orchestrator"],
            },
            "scheduler": {"alpha": 0.5, "beta": 2, "max_concurrent": 8},
            "execution": {"dispatch_mode": "inline", "stop_grace_seconds": 0},
            "exchange": {"insight_policy": "optimistic"},
            "broadcast": {"buffer_size": 16},
            "store": {"backend": "sqlite", "path": "/tmp/a2w.db"},
            "logging": {"level": "DEBUG"},
            "abilities": [{"name": "forecast"}],
        })
        self.assertEqual(cfg.allowed_callees, ["pricing", "billing"])
        self.assertEqual(cfg.weight_authorities, ["orchestrator"])
        self.assertEqual(cfg.alpha, 0.5)
        self.assertEqual(cfg.dispatch_mode, "inline")
        self.assertEqual(cfg.store_backend, "sqlite")
        self.assertEqual(cfg.log_level, "DEBUG")
        self.assertEqual(cfg.abilities, [{"name": "forecast"}])

    def test_invalid_values_collected(self):
        with self.assertRaises(ConfigError) as ctx:
            RuntimeConfig.from_dict({
                "agent": {"weight": 150},
                "scheduler": {"max_concurrent": 0},
                "exchange": {"insight_policy": "hopeful"},
                "store": {"backend": "postgres"},
            })
        errors = ctx.exception.details["errors"]
        self.assertEqual(len(errors), 5)
        self.assertTrue(any("agent_id" in e for e in errors))
        self.assertTrue(any("insight_policy" in e for e in errors))

    def test_shipped_base_config_is_valid(self):
        path = os.path.join(_project_root, "config", "runtime.yaml")
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = RuntimeConfig.from_dict(load_config(path))
        self.assertEqual(cfg.agent_id, "a2w-agent")
        self.assertEqual(cfg.store_backend, "memory")


if __name__ == "__main__":
    unittest.main()
