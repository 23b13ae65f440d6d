"""
A2W Runtime: Envelope Codec

Pure transformation between Envelope objects and their UTF-8 JSON wire
form. Version rule: a MAJOR component newer than SUPPORTED_MAJOR is
refused; MINOR differences and unknown fields are ignored.

Usage:
    from a2w.envelope import encode, decode, to_bytes

    env = encode("agent-a", MessageType.EVENT, {"event": "weight_update"})
    raw = to_bytes(env)
    same = decode(raw)
"""

from __future__ import annotations

import json
from typing import Any

from a2w.errors import InvalidInput, MalformedEnvelope, UnsupportedVersion
from a2w.types import PAYLOAD_TYPES, Envelope, MessageType, Payload

A2W_VERSION = "1.0"
SUPPORTED_MAJOR = 1


def parse_version(version: Any) -> tuple[int, int]:
    """Split a MAJOR.MINOR string. A missing MINOR counts as 0."""
    if not isinstance(version, str):
        raise MalformedEnvelope("a2w_version must be a string")
    parts = version.strip().split(".")
    try:
        major = int(parts[0])
        minor = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        raise MalformedEnvelope(f"a2w_version is not MAJOR.MINOR: {version!r}")
    if major < 0 or minor < 0:
        raise MalformedEnvelope(f"a2w_version is not MAJOR.MINOR: {version!r}")
    return major, minor


def check_version(version: str) -> None:
    major, _ = parse_version(version)
    if major > SUPPORTED_MAJOR:
        raise UnsupportedVersion(
            f"a2w_version {version} is newer than supported major {SUPPORTED_MAJOR}",
            version=version,
        )


def encode(
    agent_id: str,
    message_type: MessageType | str,
    payload: Payload | dict[str, Any],
    version: str = A2W_VERSION,
) -> Envelope:
    """Wrap a payload in exactly one envelope."""
    try:
        mtype = MessageType(message_type)
    except ValueError:
        raise InvalidInput(f"Unknown message_type: {message_type!r}")
    cls = PAYLOAD_TYPES[mtype]
    if isinstance(payload, Payload):
        if not isinstance(payload, cls):
            raise InvalidInput(
                f"Payload {type(payload).__name__} does not match message_type {mtype.value}"
            )
        variant = payload
    elif isinstance(payload, dict):
        variant = _build_payload(cls, payload)
    else:
        raise InvalidInput("payload must be a mapping or a payload variant")
    return Envelope(version=version, agent_id=agent_id, payload=variant)


def wrap(agent_id: str, payload: Payload, version: str = A2W_VERSION) -> Envelope:
    """Envelope for a payload variant; the message type follows the variant."""
    return Envelope(version=version, agent_id=agent_id, payload=payload)


def decode(data: bytes | str | dict[str, Any]) -> Envelope:
    """
    Parse a wire message.

    Raises MalformedEnvelope for non-JSON bodies and missing fields,
    UnsupportedVersion for a newer MAJOR version.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedEnvelope("body is not valid UTF-8")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise MalformedEnvelope(f"body is not valid JSON: {e.msg}")
    if not isinstance(data, dict):
        raise MalformedEnvelope("envelope must be a JSON object")

    version = data.get("a2w_version", data.get("version"))
    if version is None:
        raise MalformedEnvelope("a2w_version is required")
    check_version(version)

    agent_id = data.get("agent_id")
    if not isinstance(agent_id, str) or not agent_id:
        raise MalformedEnvelope("agent_id is required and must be a string")

    try:
        mtype = MessageType(data.get("message_type"))
    except ValueError:
        raise MalformedEnvelope(f"Unknown message_type: {data.get('message_type')!r}")

    payload = data.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedEnvelope("payload must be a JSON object")

    try:
        variant = _build_payload(PAYLOAD_TYPES[mtype], payload)
    except InvalidInput as e:
        raise MalformedEnvelope(e.message)
    return Envelope(version=version, agent_id=agent_id, payload=variant)


def to_json(envelope: Envelope) -> str:
    return json.dumps(envelope.to_dict(), default=str, ensure_ascii=False)


def to_bytes(envelope: Envelope) -> bytes:
    return to_json(envelope).encode("utf-8")


def _build_payload(cls: type[Payload], data: dict[str, Any]) -> Payload:
    try:
        return cls.from_dict(data)
    except TypeError as e:
        raise InvalidInput(f"{cls.__name__} payload is missing required fields: {e}")
