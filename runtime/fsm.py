"""
A2W Runtime: FSM Engine

The per-task state machine. Transitions are applied under the task's
entry lock; an illegal request raises IllegalTransition and leaves the
state untouched. Every successful transition is handed to the
registered listeners (status broadcast, log store, slot accounting)
while the lock is still held, so observers see transitions in order.

Graceful stop and immediate terminate are not special here: STOPPED is
reachable from every non-ended state and TERMINATED from every state.
The checkpoint semantics of stop live in the runtime facade.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from a2w.errors import IllegalTransition
from a2w.types import TaskState
from runtime.registry import ENDED_STATES, TaskEntry, TaskRegistry

logger = logging.getLogger("a2w_runtime.fsm")

S = TaskState

# Allowed transitions: source → set of valid targets (stop/terminate added below)
TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    S.IDLE:         frozenset({S.INITIALIZING}),
    S.INITIALIZING: frozenset({S.IDLE, S.RUNNING, S.TERMINATED}),
    S.RUNNING:      frozenset({S.WAITING, S.BLOCKED, S.DELEGATING, S.FINISHING, S.TERMINATED}),
    S.WAITING:      frozenset({S.RUNNING, S.BLOCKED, S.TERMINATED}),
    S.BLOCKED:      frozenset({S.WAITING, S.TERMINATED}),
    S.DELEGATING:   frozenset({S.RUNNING, S.WAITING, S.TERMINATED}),
    S.FINISHING:    frozenset({S.FINISHED, S.TERMINATED}),
    S.FINISHED:     frozenset({S.IDLE}),
    S.STOPPED:      frozenset(),
    S.TERMINATED:   frozenset(),
}

# Maximum history entries kept per task
HISTORY_LIMIT = 200

TransitionListener = Callable[[TaskEntry, TaskState, TaskState, str], None]


def allowed_targets(source: TaskState) -> frozenset[TaskState]:
    """Targets reachable from source, including stop and terminate."""
    targets = set(TRANSITIONS[source])
    if source not in ENDED_STATES:
        targets.add(S.STOPPED)
    if source != S.TERMINATED:
        targets.add(S.TERMINATED)
    return frozenset(targets)


def is_legal(source: TaskState, target: TaskState) -> bool:
    return target in allowed_targets(source)


class FSMEngine:
    """Applies legal transitions to registry entries."""

    def __init__(self, registry: TaskRegistry):
        self.registry = registry
        self._listeners: list[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def transition(self, task_id: str, target: TaskState | str, reason: str = "") -> TaskState:
        """Transition a task by id. Returns the previous state."""
        entry = self.registry.entry(task_id)
        with entry.lock:
            return self.apply(entry, target, reason)

    def check(self, entry: TaskEntry, target: TaskState) -> None:
        """Raise IllegalTransition unless target is legal from the entry's state."""
        source = entry.execution.state
        if not is_legal(source, target):
            raise IllegalTransition(
                entry.task_id,
                source.value,
                target.value,
                sorted(t.value for t in allowed_targets(source)),
            )

    def apply(self, entry: TaskEntry, target: TaskState | str, reason: str = "") -> TaskState:
        """
        Transition an entry. The caller must hold entry.lock.
        Raises IllegalTransition without mutating anything.
        """
        target = TaskState(target)
        self.check(entry, target)
        execution = entry.execution
        source = execution.state
        now = time.time()

        execution.state = target
        execution.updated_at = now
        execution.history.append({
            "from": source.value,
            "to": target.value,
            "at": now,
            "reason": reason,
        })
        if len(execution.history) > HISTORY_LIMIT:
            del execution.history[: len(execution.history) - HISTORY_LIMIT]

        logger.debug("Task %s: %s -> %s", entry.task_id, source.value, target.value)
        for listener in self._listeners:
            try:
                listener(entry, source, target, reason)
            except Exception:
                # A failing observer must not undo a committed transition.
                logger.exception("Transition listener failed for task %s", entry.task_id)
        return source
