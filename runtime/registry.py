"""
A2W Runtime: Task Registry

Owns every task's execution context, keyed by task_id. One RLock per
entry guards that entry's Execution State; a separate registry-wide
lock guards only the mapping itself, so a long-running task never
blocks unrelated submits or lookups.

Lock order is registry -> nothing, entry -> registry (remove only).
Nothing holds two entry locks at once.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from a2w.errors import TaskActive, TaskNotFound
from a2w.types import TaskContext, TaskState

logger = logging.getLogger("a2w_runtime.registry")

# States that end a task's current lifecycle.
ENDED_STATES = frozenset({TaskState.FINISHED, TaskState.STOPPED, TaskState.TERMINATED})


@dataclass
class ExecutionState:
    """Per-task mutable state. Mutated only under the entry lock."""
    state: TaskState = TaskState.IDLE
    progress: float = 0.0
    telemetry: dict[str, Any] = field(default_factory=dict)
    suspension: Any = None          # exchange.Continuation while waiting
    delegation: Any = None          # delegation.DelegationRecord while delegating
    history: list[dict[str, Any]] = field(default_factory=list)
    error: dict[str, Any] | None = None
    # Incremented per dispatch and on terminate; stale executions compare
    # their token against it and discard their results.
    run_token: int = 0
    in_flight: bool = False
    stop_requested: bool = False
    timed_out: bool = False
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "progress": self.progress,
            "telemetry": copy.deepcopy(self.telemetry),
            "suspension": self.suspension.to_dict() if self.suspension else None,
            "delegation": self.delegation.to_dict() if self.delegation else None,
            "error": self.error,
            "stop_requested": self.stop_requested,
            "history": list(self.history),
            "updated_at": self.updated_at,
        }


@dataclass
class TaskEntry:
    """Registry entry: context, execution state and the entry lock."""
    context: TaskContext
    handle: str
    submitted_at: float
    sequence: int
    execution: ExecutionState = field(default_factory=ExecutionState)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def task_id(self) -> str:
        return self.context.task_id


@dataclass
class SubmitResult:
    handle: str
    created: bool
    entry: TaskEntry


class TaskRegistry:
    """Thread-safe registry of task entries with idempotent submit."""

    def __init__(self):
        self._entries: dict[str, TaskEntry] = {}
        self._lock = threading.Lock()
        self._sequence = itertools.count()

    def submit(self, context: TaskContext) -> SubmitResult:
        """
        Register a task. A second submit for the same task_id returns the
        first entry's handle and never creates a new execution; the first
        submission wins regardless of payload differences.
        """
        with self._lock:
            existing = self._entries.get(context.task_id)
            if existing is not None:
                logger.info("Duplicate submit for %s, returning existing handle", context.task_id)
                return SubmitResult(handle=existing.handle, created=False, entry=existing)
            now = time.time()
            entry = TaskEntry(
                context=copy.deepcopy(context),
                handle=f"h_{uuid.uuid4().hex[:12]}",
                submitted_at=now,
                sequence=next(self._sequence),
            )
            entry.execution.updated_at = now
            self._entries[context.task_id] = entry
        return SubmitResult(handle=entry.handle, created=True, entry=entry)

    def entry(self, task_id: str) -> TaskEntry:
        """Internal access to the entry. Callers must take entry.lock to mutate."""
        with self._lock:
            entry = self._entries.get(task_id)
        if entry is None:
            raise TaskNotFound(task_id)
        return entry

    def lookup(self, task_id: str) -> ExecutionState:
        """Snapshot of the Execution State; never a writable reference."""
        entry = self.entry(task_id)
        with entry.lock:
            return copy.deepcopy(entry.execution)

    def state_of(self, task_id: str) -> TaskState:
        entry = self.entry(task_id)
        with entry.lock:
            return entry.execution.state

    def remove(self, task_id: str) -> None:
        """Delete an entry. Only allowed once its lifecycle has ended."""
        entry = self.entry(task_id)
        with entry.lock:
            if entry.execution.state not in ENDED_STATES:
                raise TaskActive(
                    f"Task {task_id} is {entry.execution.state.value}; "
                    f"only ended tasks can be removed",
                    task_id=task_id,
                )
            with self._lock:
                self._entries.pop(task_id, None)
        logger.info("Removed task %s", task_id)

    def entries(self) -> list[TaskEntry]:
        """Registry-wide read path: the current entries, in submission order."""
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.sequence)

    def __contains__(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, int]:
        counts = {s.value: 0 for s in TaskState}
        for entry in self.entries():
            # Attribute read without the entry lock; a stale count is fine here.
            counts[entry.execution.state.value] += 1
        return counts
