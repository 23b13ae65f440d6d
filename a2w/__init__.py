"""
A2W Runtime: Protocol Layer

Message envelope, task context, payload variants and the error
taxonomy shared by the runtime kernel and the HTTP surface.

Usage:
    from a2w import TaskContext, encode, decode

    ctx = TaskContext(task_id="T1", priority=70, weight_caller=90)
    env = decode(raw_bytes)
"""

from a2w.types import (
    DELEGATION_CHAIN_KEY,
    MessageType,
    TaskState,
    EventKind,
    Urgency,
    TaskContext,
    Payload,
    StatusUpdate,
    NeedData,
    ErrorPayload,
    EventPayload,
    DataPayload,
    Envelope,
)
from a2w.errors import (
    ErrorCode,
    Severity,
    A2WError,
    ErrorReporter,
)
from a2w.envelope import A2W_VERSION, encode, decode, wrap, to_bytes, to_json
