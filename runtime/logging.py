"""
A2W Runtime: Structured Logging

JSON log lines for every observable runtime action, under the
a2w_runtime logger namespace. Field names follow OpenTelemetry
conventions (service.name, service.version) so the output can be
shipped as-is.

Usage:
    from runtime.logging import RuntimeEventLogger, configure_logging

    configure_logging(level="INFO", agent_id="agent-a")
    events = RuntimeEventLogger(agent_id="agent-a")
    events.on_transition("T1", "idle", "initializing", reason="admitted")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "a2w_runtime"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Every line names the agent it came from. A `task_id` passed through
    `extra` becomes a top-level field, and structured fields attached to a
    record under `structured` are merged into the top-level object.
    """

    def __init__(self, service_name: str = ROOT_LOGGER, agent_id: str | None = None):
        super().__init__()
        self.service_name = service_name
        self.agent_id = agent_id
        self.service_version = os.environ.get("A2W_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }
        if self.agent_id:
            entry["agent_id"] = self.agent_id
        task_id = getattr(record, "task_id", None)
        if task_id is not None:
            entry["task_id"] = task_id

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
    agent_id: str | None = None,
) -> logging.Logger:
    """
    Configure the a2w_runtime logger with JSON output.

    Safe to call repeatedly: existing handlers are replaced, and child
    loggers are reset to inherit from the root.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name, agent_id=agent_id))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger under the a2w_runtime namespace."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


# ═══════════════════════════════════════════════════════════════════
# Runtime Event Logger
# ═══════════════════════════════════════════════════════════════════

class RuntimeEventLogger:
    """
    One structured entry per runtime action. Every entry carries the
    agent id, the action name and (where there is one) the task id.
    """

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        self._logger = get_logger("events")

    def _emit(self, level: int, action: str, task_id: str | None = None, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {"agent_id": self.agent_id, "action": action, **fields}
        if task_id is not None:
            structured["task_id"] = task_id
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Task lifecycle ──────────────────────────────────────────

    def on_submit(self, task_id: str, handle: str, created: bool, score: float) -> None:
        self._emit(
            logging.INFO, "task_submitted", task_id,
            handle=handle, created=created, score=score,
        )

    def on_transition(self, task_id: str, source: str, target: str, reason: str = "") -> None:
        self._emit(
            logging.INFO, "transition", task_id,
            source=source, target=target, reason=reason[:500],
        )

    def on_progress(self, task_id: str, progress: float) -> None:
        self._emit(logging.DEBUG, "progress", task_id, progress=progress)

    # ── Need / insight ──────────────────────────────────────────

    def on_need(self, task_id: str, required: list[str], urgency: str) -> None:
        self._emit(logging.INFO, "need_raised", task_id, required=required, urgency=urgency)

    def on_insight(self, task_id: str, keys: list[str], resumed: bool, missing: list[str]) -> None:
        self._emit(
            logging.INFO, "insight_received", task_id,
            keys=keys, resumed=resumed, missing=missing,
        )

    # ── Delegation ──────────────────────────────────────────────

    def on_delegation_start(self, task_id: str, delegate_to: str, chain: list[str]) -> None:
        self._emit(
            logging.INFO, "delegation_start", task_id,
            delegate_to=delegate_to, delegation_chain=chain,
        )

    def on_delegation_finish(self, task_id: str, delegate_to: str, outcome: str) -> None:
        self._emit(
            logging.INFO, "delegation_finish", task_id,
            delegate_to=delegate_to, outcome=outcome,
        )

    # ── Agent / errors ──────────────────────────────────────────

    def on_weight_update(self, old: int, new: int, requested_by: str) -> None:
        self._emit(
            logging.INFO, "weight_update",
            old_weight=old, new_weight=new, requested_by=requested_by,
        )

    def on_error(self, task_id: str | None, code: str, message: str, recoverable: bool) -> None:
        self._emit(
            logging.WARNING, "error", task_id,
            code=code, error=message[:500], recoverable=recoverable,
        )
