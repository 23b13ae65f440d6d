"""
A2W Runtime: Agent Record

The process-wide identity of this agent. agent_id is fixed for the
process lifetime; weight changes only through update_weight(), which
checks the requester against the configured authorities. All reads go
through this object rather than module globals.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable

from a2w.errors import InvalidInput, PermissionDenied
from a2w.types import is_int_in_range

logger = logging.getLogger("a2w_runtime.agent")


class AgentRecord:
    """Thread-safe owner of agent identity, weight and permissions."""

    def __init__(
        self,
        agent_id: str,
        weight: int = 50,
        allowed_callers: Iterable[str] = (),
        allowed_callees: Iterable[str] = (),
        weight_authorities: Iterable[str] | None = None,
    ):
        if not agent_id or not isinstance(agent_id, str):
            raise InvalidInput("agent_id is required and must be a string")
        if not is_int_in_range(weight):
            raise InvalidInput("weight must be an integer between 0 and 100", weight=weight)
        self._agent_id = agent_id
        self._weight = weight
        self._lock = threading.Lock()
        self.allowed_callers = frozenset(allowed_callers)
        self.allowed_callees = frozenset(allowed_callees)
        self.weight_authorities = (
            frozenset(weight_authorities) if weight_authorities is not None
            else self.allowed_callers
        )

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def weight(self) -> int:
        with self._lock:
            return self._weight

    def update_weight(self, weight: Any, requested_by: str) -> tuple[int, int]:
        """
        Change the weight. Returns (old, new).
        The requester must be a weight authority or the agent itself.
        """
        if not is_int_in_range(weight):
            raise InvalidInput("weight must be an integer between 0 and 100", weight=weight)
        if requested_by != self._agent_id and requested_by not in self.weight_authorities:
            raise PermissionDenied(
                f"{requested_by!r} is not authorized to change the weight of {self._agent_id}",
                requested_by=requested_by,
            )
        with self._lock:
            old, self._weight = self._weight, weight
        logger.info("Weight of %s changed %d -> %d by %s", self._agent_id, old, weight, requested_by)
        return old, weight

    def accepts_caller(self, caller: str) -> bool:
        """An empty allowed_callers set (or anonymous caller) accepts everyone."""
        if not caller or not self.allowed_callers:
            return True
        return caller in self.allowed_callers

    def can_delegate_to(self, callee: str) -> bool:
        return callee in self.allowed_callees

    def snapshot(self) -> dict[str, Any]:
        return {
            "agent_id": self._agent_id,
            "weight": self.weight,
            "allowed_callers": sorted(self.allowed_callers),
            "allowed_callees": sorted(self.allowed_callees),
        }
