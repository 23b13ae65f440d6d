"""
A2W Runtime: API Models

Request dataclasses for the HTTP surface. No FastAPI dependency; used
by the server and tests. Every body is read leniently (unknown keys are
ignored) and checked with validate() before it reaches the runtime.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from a2w.errors import InvalidInput
from a2w.types import Urgency, is_int_in_range, known_fields


class RequestModel:
    """Base for request bodies: parse() builds, validates and raises InvalidInput."""

    def validate(self) -> list[str]:
        return []

    @classmethod
    def parse(cls, body: dict[str, Any]):
        if not isinstance(body, dict):
            raise InvalidInput("request body must be an object")
        request = cls(**known_fields(cls, body))
        errors = request.validate()
        if errors:
            raise InvalidInput("; ".join(errors), errors=errors)
        return request

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _require_task_id(value: Any) -> list[str]:
    if not value or not isinstance(value, str):
        return ["task_id is required and must be a string"]
    return []


@dataclass
class StopRequest(RequestModel):
    """POST /a2w/v1/stop body."""
    task_id: str = ""
    override: bool = False
    reason: str = ""

    def validate(self) -> list[str]:
        errors = _require_task_id(self.task_id)
        if not isinstance(self.override, bool):
            errors.append("override must be a boolean")
        if not isinstance(self.reason, str):
            errors.append("reason must be a string")
        return errors


@dataclass
class TerminateRequest(StopRequest):
    """POST /a2w/v1/terminate body."""


@dataclass
class InsightRequest(RequestModel):
    """POST /a2w/v1/insights body."""
    task_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    rating: float | None = None

    def validate(self) -> list[str]:
        errors = _require_task_id(self.task_id)
        if not isinstance(self.payload, dict):
            errors.append("payload must be an object")
        if self.rating is not None and (
            isinstance(self.rating, bool)
            or not isinstance(self.rating, (int, float))
            or not 0.0 <= self.rating <= 1.0
        ):
            errors.append("rating must be a number between 0 and 1")
        return errors


@dataclass
class WeightRequest(RequestModel):
    """POST /a2w/v1/weight body."""
    weight: Any = None
    requested_by: str = ""

    def validate(self) -> list[str]:
        errors = []
        if not is_int_in_range(self.weight):
            errors.append("weight must be an integer between 0 and 100")
        if not self.requested_by or not isinstance(self.requested_by, str):
            errors.append("requested_by is required and must be a string")
        return errors


@dataclass
class UnblockRequest(RequestModel):
    """POST /a2w/v1/unblock body."""
    task_id: str = ""
    required: list[str] = field(default_factory=list)
    urgency: str = Urgency.NORMAL.value
    description: str = ""

    def validate(self) -> list[str]:
        errors = _require_task_id(self.task_id)
        if not isinstance(self.required, list) or not self.required:
            errors.append("required must be a non-empty list of keys")
        if self.urgency not in {u.value for u in Urgency}:
            errors.append(f"urgency must be one of {[u.value for u in Urgency]}")
        return errors


@dataclass
class RetryRequest(RequestModel):
    """POST /a2w/v1/retry body."""
    task_id: str = ""
    new_task_id: str | None = None

    def validate(self) -> list[str]:
        errors = _require_task_id(self.task_id)
        if self.new_task_id is not None and (
            not isinstance(self.new_task_id, str) or not self.new_task_id
        ):
            errors.append("new_task_id must be a non-empty string")
        return errors


@dataclass
class DelegateRequest(RequestModel):
    """POST /a2w/v1/delegate body."""
    task_id: str = ""
    delegate_to: str = ""
    reason: str = ""

    def validate(self) -> list[str]:
        errors = _require_task_id(self.task_id)
        if not self.delegate_to or not isinstance(self.delegate_to, str):
            errors.append("delegate_to is required and must be a string")
        return errors


@dataclass
class DelegationCompleteRequest(RequestModel):
    """POST /a2w/v1/delegation/complete body."""
    task_id: str = ""
    outcome: str = ""
    result: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        errors = _require_task_id(self.task_id)
        if not self.outcome or not isinstance(self.outcome, str):
            errors.append("outcome is required and must be a string")
        if not isinstance(self.result, dict):
            errors.append("result must be an object")
        return errors
