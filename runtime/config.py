"""
A2W Runtime: Configuration Loader

Layered configuration loading:
  1. Base YAML file (config/runtime.yaml)
  2. Per-environment overlay file (config/{A2W_ENV}.yaml merged over base)
  3. Environment variable overrides (A2W_ prefixed)

Usage:
    from runtime.config import load_config, RuntimeConfig

    raw = load_config(base_path="config/runtime.yaml", env="prod")
    cfg = RuntimeConfig.from_dict(raw)

Environment variables:
    A2W_ENV             active profile (dev, staging, prod)
    A2W_CONFIG          base config path (default: config/runtime.yaml)
    A2W_CONFIG_DIR      directory for overlay files (default: config/)
    A2W_SECTION_KEY     overrides, split at the first underscore:
                        A2W_AGENT_WEIGHT=70           → agent.weight
                        A2W_SCHEDULER_MAX_CONCURRENT=8 → scheduler.max_concurrent
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from a2w.errors import ConfigError
from a2w.types import is_int_in_range

logger = logging.getLogger("a2w_runtime.config")

DEFAULT_CONFIG_PATH = "config/runtime.yaml"
ENV_PREFIX = "A2W_"
_META_VARS = {"A2W_ENV", "A2W_CONFIG", "A2W_CONFIG_DIR", "A2W_VERSION"}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _parse_scalar(value: str) -> Any:
    """YAML-parse an env value so numbers, booleans and lists come through typed."""
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


# ═══════════════════════════════════════════════════════════════════
# Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """
    Load the per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then beside the base file.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("A2W_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("A2W_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in overlay {path}: {e}")
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load A2W_ prefixed environment variables as config overrides.

    A2W_SECTION_KEY=value → {"section": {"key": value}}
    Key names keep their underscores (A2W_AGENT_AGENT_ID → agent.agent_id).
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        section, _, name = key[len(prefix):].lower().partition("_")
        if not section or not name:
            continue
        _set_nested(overrides, [section, name], _parse_scalar(value))

    if overrides:
        logger.debug("Loaded %d env var override sections", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with layered merging.

    Priority (highest wins):
      1. Environment variable overrides (A2W_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (config/runtime.yaml)
    """
    base_path = base_path or os.environ.get("A2W_CONFIG", DEFAULT_CONFIG_PATH)
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        try:
            with open(base_path) as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {base_path}: {e}")
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("A2W_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(path: str, config: dict[str, Any] | None = None, default: Any = None) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("scheduler.interrupt_threshold", cfg, 20)
    """
    if config is None:
        config = load_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed Runtime Config
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RuntimeConfig:
    """Validated runtime settings. Build with from_dict()."""
    agent_id: str
    weight: int = 50
    allowed_callers: list[str] = field(default_factory=list)
    allowed_callees: list[str] = field(default_factory=list)
    weight_authorities: list[str] | None = None

    alpha: float = 1.0
    beta: float = 1.0
    interrupt_threshold: int = 20
    max_concurrent: int = 4
    queue_warning_depth: int = 100

    dispatch_mode: str = "thread"
    stop_grace_seconds: float = 30.0
    deadline_sweep_seconds: float = 1.0

    insight_policy: str = "strict"
    buffer_size: int = 256

    store_backend: str = "memory"
    store_path: str = ""

    log_level: str = "INFO"
    abilities: list[dict[str, Any]] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.agent_id or not isinstance(self.agent_id, str):
            errors.append("agent.agent_id is required")
        if not is_int_in_range(self.weight):
            errors.append("agent.weight must be an integer between 0 and 100")
        for name in ("allowed_callers", "allowed_callees"):
            value = getattr(self, name)
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                errors.append(f"agent.{name} must be a list of agent ids")
        if self.weight_authorities is not None and not isinstance(self.weight_authorities, list):
            errors.append("agent.weight_authorities must be a list of agent ids")
        for name in ("alpha", "beta"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"scheduler.{name} must be a number")
        if not is_int_in_range(self.interrupt_threshold):
            errors.append("scheduler.interrupt_threshold must be an integer between 0 and 100")
        if not isinstance(self.max_concurrent, int) or self.max_concurrent < 1:
            errors.append("scheduler.max_concurrent must be a positive integer")
        if not isinstance(self.queue_warning_depth, int) or self.queue_warning_depth < 1:
            errors.append("scheduler.queue_warning_depth must be a positive integer")
        if self.dispatch_mode not in ("inline", "thread"):
            errors.append("execution.dispatch_mode must be 'inline' or 'thread'")
        if not isinstance(self.stop_grace_seconds, (int, float)) or self.stop_grace_seconds < 0:
            errors.append("execution.stop_grace_seconds must be a non-negative number")
        if not isinstance(self.deadline_sweep_seconds, (int, float)) or self.deadline_sweep_seconds <= 0:
            errors.append("execution.deadline_sweep_seconds must be a positive number")
        if self.insight_policy not in ("strict", "optimistic"):
            errors.append("exchange.insight_policy must be 'strict' or 'optimistic'")
        if not isinstance(self.buffer_size, int) or self.buffer_size < 1:
            errors.append("broadcast.buffer_size must be a positive integer")
        if self.store_backend not in ("memory", "sqlite"):
            errors.append("store.backend must be 'memory' or 'sqlite'")
        if not isinstance(self.abilities, list):
            errors.append("abilities must be a list")
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuntimeConfig:
        """Build from a merged config mapping. Raises ConfigError when invalid."""
        agent = data.get("agent") or {}
        scheduler = data.get("scheduler") or {}
        execution = data.get("execution") or {}
        exchange = data.get("exchange") or {}
        broadcast = data.get("broadcast") or {}
        store = data.get("store") or {}
        log = data.get("logging") or {}

        cfg = cls(
            agent_id=str(agent.get("agent_id") or ""),
            weight=agent.get("weight", 50),
            allowed_callers=_as_list(agent.get("allowed_callers")),
            allowed_callees=_as_list(agent.get("allowed_callees")),
            weight_authorities=(
                _as_list(agent["weight_authorities"])
                if agent.get("weight_authorities") is not None else None
            ),
            alpha=scheduler.get("alpha", 1.0),
            beta=scheduler.get("beta", 1.0),
            interrupt_threshold=scheduler.get("interrupt_threshold", 20),
            max_concurrent=scheduler.get("max_concurrent", 4),
            queue_warning_depth=scheduler.get("queue_warning_depth", 100),
            dispatch_mode=str(execution.get("dispatch_mode", "thread")),
            stop_grace_seconds=execution.get("stop_grace_seconds", 30.0),
            deadline_sweep_seconds=execution.get("deadline_sweep_seconds", 1.0),
            insight_policy=str(exchange.get("insight_policy", "strict")),
            buffer_size=broadcast.get("buffer_size", 256),
            store_backend=str(store.get("backend", "memory")),
            store_path=str(store.get("path") or ""),
            log_level=str(log.get("level", "INFO")),
            abilities=data.get("abilities") or [],
        )
        errors = cfg.validate()
        if errors:
            raise ConfigError("Invalid runtime configuration: " + "; ".join(errors), errors=errors)
        return cfg

    @classmethod
    def load(cls, base_path: str = "", env: str = "") -> RuntimeConfig:
        return cls.from_dict(load_config(base_path=base_path, env=env))


def _as_list(value: Any) -> list[str]:
    """Accept a list or a comma-separated string (env overrides)."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value]
    return value
