"""
A2W Runtime: Protocol Type Definitions

Closed enumerations (message types, FSM states, event kinds), the Task
Context submitted to an agent, and the payload variants carried inside
an envelope. Payload classes are keyed by their message type so an
envelope can only pair a discriminant with its matching payload shape.
"""

from __future__ import annotations

import copy
import dataclasses
import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar


DELEGATION_CHAIN_KEY = "delegation_chain"


# ─── Enumerations ───────────────────────────────────────────────────

class MessageType(str, enum.Enum):
    """Discriminant of the envelope payload."""
    STATUS_UPDATE = "status_update"
    NEED_DATA = "need_data"
    ERROR = "error"
    EVENT = "event"
    PAYLOAD = "payload"


class TaskState(str, enum.Enum):
    """Execution lifecycle states of a task."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    WAITING = "waiting"
    BLOCKED = "blocked"
    DELEGATING = "delegating"
    FINISHING = "finishing"
    FINISHED = "finished"
    STOPPED = "stopped"
    TERMINATED = "terminated"


class EventKind(str, enum.Enum):
    """Events pushed on the events channel."""
    DELEGATION_STARTED = "delegation_started"
    DELEGATION_FINISHED = "delegation_finished"
    WEIGHT_UPDATE = "weight_update"
    TASK_RETRIED = "task_retried"
    HEALTH_WARNING = "health_warning"


class Urgency(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# ─── Helpers ────────────────────────────────────────────────────────

def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return to_iso(time.time())


def to_iso(ts: float) -> str:
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def parse_timestamp(value: Any) -> float:
    """
    Parse an ISO-8601 timestamp (or epoch seconds) into epoch seconds.
    Naive timestamps are taken as UTC. Raises ValueError on bad input.
    """
    if isinstance(value, bool):
        raise ValueError("timestamp must be a string or number")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value:
        raise ValueError("timestamp must be a string or number")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_int_in_range(value: Any, low: int = 0, high: int = 100) -> bool:
    """True for a real integer (not bool) within [low, high]."""
    return isinstance(value, int) and not isinstance(value, bool) and low <= value <= high


def known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    """Drop keys the dataclass does not declare (forward compatibility)."""
    names = {f.name for f in dataclasses.fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# ─── Task Context ───────────────────────────────────────────────────

@dataclass
class TaskContext:
    """
    A unit of work submitted to an agent.

    task_id is caller-supplied and used as the idempotency key.
    metadata is open; the delegation chain travels in it under
    DELEGATION_CHAIN_KEY.
    """
    task_id: str
    task_type: str = ""
    description: str = ""
    payload: Any = None
    priority: int = 50
    deadline: float | None = None
    caller_agent: str = ""
    weight_caller: int = 0
    parent_task_id: str | None = None
    retry_of: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def validate_dict(data: Any) -> list[str]:
        """Return list of validation errors for an inbound mapping (empty = valid)."""
        if not isinstance(data, dict):
            return ["task context must be an object"]
        errors = []
        task_id = data.get("task_id")
        if not task_id or not isinstance(task_id, str):
            errors.append("task_id is required and must be a string")
        if "priority" in data and not is_int_in_range(data["priority"]):
            errors.append("priority must be an integer between 0 and 100")
        if "weight_caller" in data and not is_int_in_range(data["weight_caller"]):
            errors.append("weight_caller must be an integer between 0 and 100")
        for key in ("task_type", "description", "caller_agent"):
            if key in data and data[key] is not None and not isinstance(data[key], str):
                errors.append(f"{key} must be a string")
        for key in ("parent_task_id", "retry_of"):
            if data.get(key) is not None and not isinstance(data[key], str):
                errors.append(f"{key} must be a string")
        if data.get("deadline") is not None:
            try:
                parse_timestamp(data["deadline"])
            except ValueError:
                errors.append("deadline must be an ISO-8601 timestamp")
        metadata = data.get("metadata")
        if metadata is not None:
            if not isinstance(metadata, dict):
                errors.append("metadata must be an object")
            else:
                chain = metadata.get(DELEGATION_CHAIN_KEY)
                if chain is not None and (
                    not isinstance(chain, list)
                    or not all(isinstance(a, str) and a for a in chain)
                ):
                    errors.append(f"metadata.{DELEGATION_CHAIN_KEY} must be a list of agent ids")
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskContext:
        """Build from a validated mapping. Unknown keys are ignored."""
        values = known_fields(cls, data)
        if values.get("deadline") is not None:
            values["deadline"] = parse_timestamp(values["deadline"])
        values["metadata"] = copy.deepcopy(values.get("metadata") or {})
        for key in ("task_type", "description", "caller_agent"):
            if values.get(key) is None:
                values.pop(key, None)
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        d = dataclasses.asdict(self)
        d["deadline"] = to_iso(self.deadline) if self.deadline is not None else None
        return d

    @property
    def delegation_chain(self) -> list[str]:
        return list(self.metadata.get(DELEGATION_CHAIN_KEY) or [])

    def copy(self, **changes: Any) -> TaskContext:
        """Deep copy with field overrides."""
        clone = copy.deepcopy(self)
        for key, value in changes.items():
            setattr(clone, key, value)
        return clone


# ─── Payload Variants ───────────────────────────────────────────────

class Payload:
    """Base for envelope payload variants."""
    message_type: ClassVar[MessageType]

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Payload:
        return cls(**known_fields(cls, data))


@dataclass
class StatusUpdate(Payload):
    """State or telemetry change of one task."""
    message_type: ClassVar[MessageType] = MessageType.STATUS_UPDATE

    task_id: str
    state: str
    progress: float = 0.0
    previous_state: str | None = None
    telemetry: dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class NeedData(Payload):
    """A running task is suspended pending externally supplied data."""
    message_type: ClassVar[MessageType] = MessageType.NEED_DATA

    task_id: str
    required: list[str]
    urgency: str = Urgency.NORMAL.value
    description: str = ""
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class ErrorPayload(Payload):
    message_type: ClassVar[MessageType] = MessageType.ERROR

    code: str
    http_status: int
    severity: str
    recoverable: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class EventPayload(Payload):
    message_type: ClassVar[MessageType] = MessageType.EVENT

    event: str
    task_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class DataPayload(Payload):
    """Free-form response or request body."""
    message_type: ClassVar[MessageType] = MessageType.PAYLOAD

    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataPayload:
        # The whole mapping is the data; there is no fixed shape to filter.
        inner = data.get("data") if set(data) == {"data"} else data
        return cls(data=dict(inner or {}))


PAYLOAD_TYPES: dict[MessageType, type[Payload]] = {
    MessageType.STATUS_UPDATE: StatusUpdate,
    MessageType.NEED_DATA: NeedData,
    MessageType.ERROR: ErrorPayload,
    MessageType.EVENT: EventPayload,
    MessageType.PAYLOAD: DataPayload,
}


# ─── Envelope ───────────────────────────────────────────────────────

@dataclass
class Envelope:
    """The uniform wrapper around every protocol message."""
    version: str
    agent_id: str
    payload: Payload

    @property
    def message_type(self) -> MessageType:
        return self.payload.message_type

    def to_dict(self) -> dict[str, Any]:
        return {
            "a2w_version": self.version,
            "agent_id": self.agent_id,
            "message_type": self.message_type.value,
            "payload": self.payload.to_dict(),
        }
