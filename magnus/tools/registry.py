"""Capability registry: name -> description, parameter schema, executor.

Registries are constructed explicitly and injected wherever they are
needed (dispatcher, prompt builder, REST app), so tests can build
isolated registries with mock capabilities.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from magnus.tools.schemas import ParamSpec

logger = logging.getLogger(__name__)

CapabilityExecutor = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class Capability:
    """A named, independently executable tool exposed to the model."""

    name: str
    description: str
    execute: CapabilityExecutor
    parameters: dict[str, ParamSpec] = field(default_factory=dict)

    def definition(self) -> dict[str, Any]:
        """Serializable description of the capability (no executor)."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                key: {
                    "type": spec.type.label(),
                    "required": spec.required,
                    "default": spec.default,
                    "description": spec.description,
                }
                for key, spec in self.parameters.items()
            },
        }


class CapabilityRegistry:
    """Static lookup of capabilities by unique name, in registration order."""

    def __init__(self, capabilities: list[Capability] | None = None) -> None:
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities or []:
            self.register(capability)

    def register(self, capability: Capability) -> None:
        """Register a capability. Names must be unique."""
        if capability.name in self._capabilities:
            raise ValueError(f"Capability '{capability.name}' is already registered")
        self._capabilities[capability.name] = capability
        logger.debug("Registered capability: %s", capability.name)

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def names(self) -> list[str]:
        return list(self._capabilities)

    def all(self) -> list[Capability]:
        return list(self._capabilities.values())

    def definitions(self) -> list[dict[str, Any]]:
        return [capability.definition() for capability in self._capabilities.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
