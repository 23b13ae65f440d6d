"""
A2W Runtime: Agent Runtime Kernel

Per-task FSM, task registry, weighted admission, need/insight exchange,
delegation with cycle detection and best-effort status fan-out, wired
together by AgentRuntime.

Usage:
    from runtime import AgentRuntime, AgentRecord

    runtime = AgentRuntime(AgentRecord("agent-a", weight=60))
    runtime.start({"task_id": "T1", "priority": 70})
"""

from runtime.agent import AgentRecord
from runtime.core import AgentRuntime
from runtime.delegation import DelegationOutcome, DelegationRequest
from runtime.exchange import Continuation, InsightPolicy
from runtime.executor import (
    Completed,
    NeedData,
    Delegate,
    ExecutionControl,
    TaskHandler,
    StopRequested,
    Discarded,
)
from runtime.config import RuntimeConfig, load_config

__all__ = [
    "AgentRuntime",
    "AgentRecord",
    "DelegationOutcome",
    "DelegationRequest",
    "Continuation",
    "InsightPolicy",
    "Completed",
    "NeedData",
    "Delegate",
    "ExecutionControl",
    "TaskHandler",
    "StopRequested",
    "Discarded",
    "RuntimeConfig",
    "load_config",
]
