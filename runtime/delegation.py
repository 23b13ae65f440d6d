"""
A2W Runtime: Delegation Manager

Hands a running task off to another agent. The delegation chain is plain
data carried in TaskContext.metadata, so cycle detection needs no live
references between agent processes:

  - delegating to an agent already in the chain fails with CycleDetected
  - this agent appearing in the chain other than as its last element
    means the task already came back around; also CycleDetected
  - an inbound task whose chain contains this agent is refused

Authorization (allowed_callees) is checked before the chain is touched.
"""

from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from a2w.errors import CycleDetected, IllegalTransition, InvalidInput, PermissionDenied
from a2w.types import DELEGATION_CHAIN_KEY, EventKind, TaskContext, TaskState, Urgency
from runtime.agent import AgentRecord
from runtime.exchange import (
    Continuation,
    NeedInsightExchange,
    normalize_required,
    normalize_urgency,
)
from runtime.fsm import FSMEngine
from runtime.registry import TaskRegistry

logger = logging.getLogger("a2w_runtime.delegation")


class DelegationOutcome(str, enum.Enum):
    """What the delegate reported back."""
    COMPLETED = "completed"      # result returned, continue locally
    REJECTED = "rejected"        # delegate declined, continue locally
    NEEDS_INPUT = "needs_input"  # delegate needs data, wait for insight
    FAILED = "failed"            # delegate failed, lifecycle cannot continue


_OUTCOME_TARGET = {
    DelegationOutcome.COMPLETED: TaskState.RUNNING,
    DelegationOutcome.REJECTED: TaskState.RUNNING,
    DelegationOutcome.NEEDS_INPUT: TaskState.WAITING,
    DelegationOutcome.FAILED: TaskState.TERMINATED,
}


@dataclass
class DelegationRequest:
    """The handoff message sent to the delegate."""
    request_id: str
    task_id: str
    delegating_agent: str
    delegate_to: str
    reason: str
    task: TaskContext
    created_at: float = 0.0

    @property
    def chain(self) -> list[str]:
        return self.task.delegation_chain

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "task_id": self.task_id,
            "delegating_agent": self.delegating_agent,
            "delegate_to": self.delegate_to,
            "reason": self.reason,
            "delegation_chain": self.chain,
            "task": self.task.to_dict(),
            "created_at": self.created_at,
        }


@dataclass
class DelegationRecord:
    """Delegation bookkeeping on the local Execution State."""
    request_id: str
    delegate_to: str
    reason: str
    started_at: float
    outcome: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "delegate_to": self.delegate_to,
            "reason": self.reason,
            "started_at": self.started_at,
            "outcome": self.outcome,
            "result": self.result,
            "finished_at": self.finished_at,
        }


def check_chain(chain: list[str], agent_id: str, delegate_to: str) -> None:
    """Raise CycleDetected if forwarding along this chain would loop."""
    if delegate_to == agent_id or delegate_to in chain:
        raise CycleDetected(
            f"Delegation to {delegate_to} would form a cycle: {' -> '.join(chain + [agent_id])}",
            chain=chain,
            delegate_to=delegate_to,
        )
    if agent_id in chain[:-1]:
        raise CycleDetected(
            f"Agent {agent_id} already appears in the delegation chain {chain}",
            chain=chain,
            delegate_to=delegate_to,
        )


class DelegationManager:
    """Builds delegation requests and applies delegate outcomes."""

    def __init__(
        self,
        agent: AgentRecord,
        registry: TaskRegistry,
        fsm: FSMEngine,
        exchange: NeedInsightExchange,
        publish_event: Callable[[EventKind, str, dict[str, Any]], Any] | None = None,
    ):
        self.agent = agent
        self.registry = registry
        self.fsm = fsm
        self.exchange = exchange
        self._publish_event = publish_event

    def check_inbound(self, context: TaskContext) -> None:
        """Refuse an inbound task whose chain already contains this agent."""
        chain = context.delegation_chain
        if self.agent.agent_id in chain:
            raise CycleDetected(
                f"Agent {self.agent.agent_id} already handled task {context.task_id} "
                f"(chain: {chain})",
                task_id=context.task_id,
                chain=chain,
            )

    def delegate(self, task_id: str, delegate_to: str, reason: str = "") -> DelegationRequest:
        """
        Hand a running task to delegate_to. On success the local task is
        in delegating and the returned request carries the extended chain.
        """
        if not delegate_to or not isinstance(delegate_to, str):
            raise InvalidInput("delegate_to is required and must be a string")
        agent_id = self.agent.agent_id
        if not self.agent.can_delegate_to(delegate_to):
            raise PermissionDenied(
                f"{agent_id} is not allowed to delegate to {delegate_to}",
                task_id=task_id,
                delegate_to=delegate_to,
            )

        entry = self.registry.entry(task_id)
        with entry.lock:
            chain = entry.context.delegation_chain
            check_chain(chain, agent_id, delegate_to)
            self.fsm.check(entry, TaskState.DELEGATING)

            new_chain = chain if chain and chain[-1] == agent_id else chain + [agent_id]
            metadata = dict(entry.context.metadata)
            metadata[DELEGATION_CHAIN_KEY] = new_chain
            forwarded = entry.context.copy(
                caller_agent=agent_id,
                weight_caller=self.agent.weight,
                metadata=metadata,
            )
            request = DelegationRequest(
                request_id=f"dlg_{uuid.uuid4().hex[:12]}",
                task_id=task_id,
                delegating_agent=agent_id,
                delegate_to=delegate_to,
                reason=reason,
                task=forwarded,
                created_at=time.time(),
            )
            entry.context.metadata[DELEGATION_CHAIN_KEY] = list(new_chain)
            entry.execution.delegation = DelegationRecord(
                request_id=request.request_id,
                delegate_to=delegate_to,
                reason=reason,
                started_at=request.created_at,
            )
            self.fsm.apply(entry, TaskState.DELEGATING, reason=reason or f"delegated to {delegate_to}")

        logger.info("Task %s delegated to %s (chain %s)", task_id, delegate_to, new_chain)
        self._emit(EventKind.DELEGATION_STARTED, task_id, {
            "request_id": request.request_id,
            "delegate_to": delegate_to,
            "reason": reason,
            "delegation_chain": new_chain,
        })
        return request

    def complete(
        self,
        task_id: str,
        outcome: DelegationOutcome | str,
        result: dict[str, Any] | None = None,
    ) -> TaskState:
        """Apply the delegate's outcome. Returns the task's new state."""
        try:
            outcome = DelegationOutcome(outcome)
        except ValueError:
            raise InvalidInput(
                f"outcome must be one of {[o.value for o in DelegationOutcome]}",
                task_id=task_id,
            )
        result = dict(result or {})
        if outcome == DelegationOutcome.NEEDS_INPUT:
            required = result.get("required") or ["delegation_input"]
            if isinstance(required, str):
                required = [required]
            required = normalize_required(required)
            urgency = normalize_urgency(result.get("urgency", Urgency.NORMAL.value))
        entry = self.registry.entry(task_id)
        with entry.lock:
            execution = entry.execution
            if execution.state != TaskState.DELEGATING or execution.delegation is None:
                raise IllegalTransition(
                    task_id, execution.state.value, _OUTCOME_TARGET[outcome].value,
                    [TaskState.DELEGATING.value],
                )
            record = execution.delegation
            record.outcome = outcome.value
            record.result = result
            record.finished_at = time.time()
            reason = f"delegation {outcome.value}"

            if outcome == DelegationOutcome.NEEDS_INPUT:
                self.exchange.suspend(
                    entry,
                    required,
                    urgency,
                    str(result.get("description", reason)),
                    sources={TaskState.DELEGATING},
                    delegation_result=result,
                )
            else:
                if _OUTCOME_TARGET[outcome] == TaskState.RUNNING:
                    # The local handler resumes with whatever the delegate sent back.
                    returned = {**result, "outcome": outcome.value}
                    if execution.suspension is not None:
                        execution.suspension.delegation_result = returned
                    else:
                        execution.suspension = Continuation(
                            task_id=task_id, reason="delegation", required=[],
                            raised_at=record.started_at, delegation_result=returned,
                        )
                self.fsm.apply(entry, _OUTCOME_TARGET[outcome], reason=reason)
            new_state = execution.state

        logger.info("Delegation of %s to %s %s", task_id, record.delegate_to, outcome.value)
        self._emit(EventKind.DELEGATION_FINISHED, task_id, {
            "request_id": record.request_id,
            "delegate_to": record.delegate_to,
            "outcome": outcome.value,
        })
        return new_state

    def _emit(self, kind: EventKind, task_id: str, data: dict[str, Any]) -> None:
        if self._publish_event is not None:
            self._publish_event(kind, task_id, data)
