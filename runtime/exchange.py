"""
A2W Runtime: Need/Insight Exchange

Suspends a running task awaiting external data and resumes it when the
data arrives. The suspension is an explicit Continuation record (task,
reason, required keys, insights gathered so far) stored on the task's
Execution State, not a parked call stack, so any process invocation
holding the record can resume the work.

Insight policy (compliance profile) decides what a partial insight does:
  strict      stay waiting until every required key is present
  optimistic  resume on the first insight
"""

from __future__ import annotations

import copy
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from a2w.errors import IllegalTransition, InvalidInput, TaskNotWaiting
from a2w.types import NeedData, TaskState, Urgency
from runtime.fsm import FSMEngine, allowed_targets
from runtime.registry import TaskEntry, TaskRegistry

logger = logging.getLogger("a2w_runtime.exchange")


class InsightPolicy(str, enum.Enum):
    STRICT = "strict"
    OPTIMISTIC = "optimistic"


@dataclass
class Continuation:
    """Everything needed to resume a suspended task."""
    task_id: str
    reason: str
    required: list[str]
    urgency: str = Urgency.NORMAL.value
    description: str = ""
    raised_at: float = 0.0
    insights: dict[str, Any] = field(default_factory=dict)
    ratings: list[float] = field(default_factory=list)
    delegation_result: dict[str, Any] | None = None

    def missing(self) -> list[str]:
        return sorted(k for k in self.required if k not in self.insights)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "reason": self.reason,
            "required": list(self.required),
            "missing": self.missing(),
            "urgency": self.urgency,
            "description": self.description,
            "raised_at": self.raised_at,
            "insights": copy.deepcopy(self.insights),
            "ratings": list(self.ratings),
            "delegation_result": copy.deepcopy(self.delegation_result),
        }


@dataclass
class InsightResult:
    task_id: str
    resumed: bool
    missing: list[str]
    state: TaskState


def normalize_required(required: Any) -> list[str]:
    if isinstance(required, str) or not hasattr(required, "__iter__"):
        raise InvalidInput("required must be a collection of keys")
    keys = list(dict.fromkeys(required))
    if not keys or not all(isinstance(k, str) and k for k in keys):
        raise InvalidInput("required must be a non-empty set of non-empty strings")
    return keys


def normalize_urgency(urgency: Any) -> str:
    try:
        return Urgency(urgency).value
    except ValueError:
        raise InvalidInput(
            f"urgency must be one of {[u.value for u in Urgency]}", urgency=str(urgency)
        )


class NeedInsightExchange:
    """raise_need / provide_insight over registry entries."""

    def __init__(
        self,
        registry: TaskRegistry,
        fsm: FSMEngine,
        policy: InsightPolicy = InsightPolicy.STRICT,
        publish_need: Callable[[NeedData], Any] | None = None,
    ):
        self.registry = registry
        self.fsm = fsm
        self.policy = InsightPolicy(policy)
        self._publish_need = publish_need

    def raise_need(
        self,
        task_id: str,
        required: Any,
        urgency: str = Urgency.NORMAL.value,
        description: str = "",
    ) -> Continuation:
        """Suspend a running task. Atomically moves it to waiting and emits need_data."""
        keys = normalize_required(required)
        level = normalize_urgency(urgency)
        entry = self.registry.entry(task_id)
        with entry.lock:
            return self.suspend(entry, keys, level, description, sources={TaskState.RUNNING})

    def reopen(
        self,
        task_id: str,
        required: Any,
        urgency: str = Urgency.NORMAL.value,
        description: str = "",
    ) -> Continuation:
        """Turn a blocked task back into a waiting one with a fresh need."""
        keys = normalize_required(required)
        level = normalize_urgency(urgency)
        entry = self.registry.entry(task_id)
        with entry.lock:
            return self.suspend(entry, keys, level, description, sources={TaskState.BLOCKED})

    def suspend(
        self,
        entry: TaskEntry,
        required: list[str],
        urgency: str,
        description: str,
        sources: set[TaskState],
        delegation_result: dict[str, Any] | None = None,
    ) -> Continuation:
        """
        Park an entry in waiting. The caller must hold entry.lock.
        Insights from an earlier suspension carry over.
        """
        execution = entry.execution
        source = execution.state
        if source not in sources:
            raise IllegalTransition(
                entry.task_id, source.value, TaskState.WAITING.value,
                sorted(t.value for t in allowed_targets(source)),
            )
        previous = execution.suspension
        continuation = Continuation(
            task_id=entry.task_id,
            reason="need_data",
            required=list(required),
            urgency=urgency,
            description=description,
            raised_at=time.time(),
            insights=dict(previous.insights) if previous else {},
            ratings=list(previous.ratings) if previous else [],
            delegation_result=delegation_result,
        )
        execution.suspension = continuation
        self.fsm.apply(entry, TaskState.WAITING, reason=description or "need_data")
        if self._publish_need is not None:
            self._publish_need(NeedData(
                task_id=entry.task_id,
                required=list(required),
                urgency=urgency,
                description=description,
            ))
        logger.info("Task %s waiting on %s", entry.task_id, continuation.missing())
        return continuation

    def provide_insight(
        self,
        task_id: str,
        payload: dict[str, Any],
        rating: float | None = None,
    ) -> InsightResult:
        """
        Deliver data to a waiting task. Fails with TaskNotWaiting rather
        than queueing when the task is in any other state.
        """
        if not isinstance(payload, dict):
            raise InvalidInput("insight payload must be an object")
        if rating is not None and (
            isinstance(rating, bool)
            or not isinstance(rating, (int, float))
            or not 0.0 <= rating <= 1.0
        ):
            raise InvalidInput("rating must be a number between 0 and 1")

        entry = self.registry.entry(task_id)
        with entry.lock:
            execution = entry.execution
            if execution.state != TaskState.WAITING or execution.suspension is None:
                raise TaskNotWaiting(
                    f"Task {task_id} is {execution.state.value}, not waiting",
                    task_id=task_id,
                    state=execution.state.value,
                )
            continuation = execution.suspension
            continuation.insights.update(copy.deepcopy(payload))
            if rating is not None:
                continuation.ratings.append(float(rating))
            missing = continuation.missing()

            if missing and self.policy == InsightPolicy.STRICT:
                logger.info("Task %s still missing %s", task_id, missing)
                return InsightResult(task_id, False, missing, execution.state)

            self.fsm.apply(entry, TaskState.RUNNING, reason="insight")
            return InsightResult(task_id, True, missing, execution.state)
