"""
A2W Runtime: Error Taxonomy and Reporter

Every failure the core detects maps to exactly one taxonomy code:

  E001_INTERNAL             500  not recoverable
  E010_INVALID_INPUT        400  recoverable
  E013_MISSING_DATA         400  recoverable (drives need_data)
  E020_PERMISSION_DENIED    403  not recoverable
  E030_LOW_WEIGHT           403  recoverable (caller may seek an override)
  E040_TIMEOUT              504  recoverable
  E050_EXTERNAL_DEPENDENCY  502  recoverable

Each exception carries its code, severity and recoverable flag; the HTTP
status defaults from the taxonomy and may be narrowed per class (404 for
unknown tasks, 409 for state conflicts).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable

from a2w.types import Envelope, ErrorPayload

logger = logging.getLogger("a2w_runtime.errors")


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode(str, Enum):
    INTERNAL = "E001_INTERNAL"
    INVALID_INPUT = "E010_INVALID_INPUT"
    MISSING_DATA = "E013_MISSING_DATA"
    PERMISSION_DENIED = "E020_PERMISSION_DENIED"
    LOW_WEIGHT = "E030_LOW_WEIGHT"
    TIMEOUT = "E040_TIMEOUT"
    EXTERNAL_DEPENDENCY = "E050_EXTERNAL_DEPENDENCY"


# code → (default HTTP status, recoverable)
TAXONOMY: dict[ErrorCode, tuple[int, bool]] = {
    ErrorCode.INTERNAL: (500, False),
    ErrorCode.INVALID_INPUT: (400, True),
    ErrorCode.MISSING_DATA: (400, True),
    ErrorCode.PERMISSION_DENIED: (403, False),
    ErrorCode.LOW_WEIGHT: (403, True),
    ErrorCode.TIMEOUT: (504, True),
    ErrorCode.EXTERNAL_DEPENDENCY: (502, True),
}


# ═══════════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════════

class A2WError(Exception):
    """Base exception for all failures the runtime reports."""
    code: ErrorCode = ErrorCode.INTERNAL
    severity: Severity = Severity.MEDIUM
    http_status: int | None = None

    def __init__(
        self,
        message: str = "",
        *,
        http_status: int | None = None,
        recoverable: bool | None = None,
        task_id: str | None = None,
        **details: Any,
    ):
        self.message = message or self.__class__.__name__
        self.details = details
        self.task_id = task_id
        if http_status is not None:
            self.http_status = http_status
        self._recoverable = recoverable
        super().__init__(self.message)

    @property
    def status(self) -> int:
        return self.http_status or TAXONOMY[self.code][0]

    @property
    def recoverable(self) -> bool:
        if self._recoverable is not None:
            return self._recoverable
        return TAXONOMY[self.code][1]


# ═══════════════════════════════════════════════════════════════════
# E010: Invalid input and local state conflicts
# ═══════════════════════════════════════════════════════════════════

class InvalidInput(A2WError):
    code = ErrorCode.INVALID_INPUT
    severity = Severity.LOW


class MalformedEnvelope(InvalidInput):
    """Body is not valid JSON or lacks the envelope fields."""


class UnsupportedVersion(InvalidInput):
    """Envelope MAJOR version is newer than this runtime speaks."""


class IllegalTransition(InvalidInput):
    """Requested FSM target is not allowed from the current state."""
    http_status = 409

    def __init__(self, task_id: str, source: str, target: str, allowed: list[str]):
        super().__init__(
            f"Task {task_id}: {source} -> {target} is not allowed. "
            f"Valid transitions: {allowed}",
            task_id=task_id,
            source=source,
            target=target,
            allowed=allowed,
        )


class CycleDetected(InvalidInput):
    """Delegation target (or this agent) already handled the task."""
    http_status = 409


class TaskNotFound(InvalidInput):
    http_status = 404

    def __init__(self, task_id: str, message: str = ""):
        super().__init__(message or f"Task not found: {task_id}", task_id=task_id)


class TaskActive(InvalidInput):
    """Registry conflict: the task has not reached an ended state."""
    http_status = 409


class TaskNotWaiting(InvalidInput):
    """Insight arrived for a task that is not suspended on a need."""
    http_status = 409


class ReportUnavailable(InvalidInput):
    http_status = 409


# ═══════════════════════════════════════════════════════════════════
# Other taxonomy entries
# ═══════════════════════════════════════════════════════════════════

class MissingData(A2WError):
    """Input the handler needs is absent.

    Raised with ``required`` keys it becomes a need_data request and the
    task waits for them. Without keys nothing can resolve it and the task
    is escalated.
    """
    code = ErrorCode.MISSING_DATA

    def __init__(
        self,
        message: str = "",
        *,
        required: list[str] | None = None,
        urgency: str = "normal",
        **kwargs: Any,
    ):
        super().__init__(message, required=list(required or []), **kwargs)
        self.required = list(required or [])
        self.urgency = urgency


class PermissionDenied(A2WError):
    code = ErrorCode.PERMISSION_DENIED
    severity = Severity.HIGH


class LowWeightInterrupt(A2WError):
    code = ErrorCode.LOW_WEIGHT


class DeadlineExceeded(A2WError):
    code = ErrorCode.TIMEOUT


class ExternalDependencyError(A2WError):
    code = ErrorCode.EXTERNAL_DEPENDENCY


class InternalError(A2WError):
    code = ErrorCode.INTERNAL
    severity = Severity.CRITICAL


class ConfigError(InternalError):
    """Invalid runtime configuration (raised at startup only)."""


# ═══════════════════════════════════════════════════════════════════
# Error Reporter
# ═══════════════════════════════════════════════════════════════════

class ErrorReporter:
    """
    Converts failures into error envelopes and routes them.

    report() builds the envelope returned synchronously to a caller;
    push() additionally sends it to the errors channel for failures
    that affect a task's viability.
    """

    def __init__(
        self,
        agent_id: str,
        version: str,
        publish: Callable[[Envelope], Any] | None = None,
    ):
        self.agent_id = agent_id
        self.version = version
        self._publish = publish

    def report(
        self,
        kind: ErrorCode,
        http_status: int | None = None,
        severity: Severity = Severity.MEDIUM,
        recoverable: bool | None = None,
        message: str = "",
        details: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> Envelope:
        default_status, default_recoverable = TAXONOMY[ErrorCode(kind)]
        payload = ErrorPayload(
            code=ErrorCode(kind).value,
            http_status=http_status or default_status,
            severity=Severity(severity).value,
            recoverable=default_recoverable if recoverable is None else recoverable,
            message=message,
            details=details or {},
            task_id=task_id,
        )
        return Envelope(version=self.version, agent_id=self.agent_id, payload=payload)

    def report_exception(self, exc: BaseException, task_id: str | None = None) -> Envelope:
        """Map any exception to its taxonomy entry. Unknown ones are E001."""
        if not isinstance(exc, A2WError):
            logger.error("Unclassified failure: %s", exc, exc_info=exc)
            exc = InternalError(str(exc) or exc.__class__.__name__)
        return self.report(
            exc.code,
            http_status=exc.status,
            severity=exc.severity,
            recoverable=exc.recoverable,
            message=exc.message,
            details=_jsonable(exc.details),
            task_id=task_id or exc.task_id,
        )

    def push(self, envelope: Envelope) -> None:
        if self._publish is not None:
            self._publish(envelope)


def _jsonable(details: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for key, value in details.items():
        if isinstance(value, (str, int, float, bool, type(None), list, dict)):
            out[key] = value
        else:
            out[key] = str(value)
    return out
