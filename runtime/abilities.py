"""
A2W Runtime: Capability Listing

The abilities an agent exposes are defined outside the core. The runtime
only surfaces their existence through GET /capabilities, from whatever
source the host registers (configuration by default).
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable


@dataclass
class Ability:
    name: str
    description: str = ""
    version: str = "1.0"
    input_schema: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AbilityRegistry:
    """Thread-safe name → Ability listing."""

    def __init__(self, abilities: Iterable[Ability] = ()):
        self._abilities: dict[str, Ability] = {}
        self._lock = threading.Lock()
        for ability in abilities:
            self.register(ability)

    @classmethod
    def from_config(cls, entries: list[dict[str, Any]] | None) -> AbilityRegistry:
        abilities = []
        for raw in entries or []:
            if isinstance(raw, str):
                abilities.append(Ability(name=raw))
            elif isinstance(raw, dict) and raw.get("name"):
                abilities.append(Ability(
                    name=str(raw["name"]),
                    description=str(raw.get("description", "")),
                    version=str(raw.get("version", "1.0")),
                    input_schema=dict(raw.get("input_schema") or {}),
                ))
            else:
                raise ValueError(f"Invalid ability entry: {raw!r}")
        return cls(abilities)

    def register(self, ability: Ability) -> None:
        with self._lock:
            self._abilities[ability.name] = ability

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            return [a.to_dict() for a in sorted(self._abilities.values(), key=lambda a: a.name)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._abilities)
