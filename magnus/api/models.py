"""Shared data models for the API layer.

Kept free of runtime dependencies so history, protocol, tools and runner
can all import them without cycles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "system", "user" or "assistant"
    content: str


@dataclass
class ToolCallRequest:
    """A parsed, not yet type-checked request to invoke a capability."""

    name: str
    raw_parameters: dict[str, str | list[str]] = field(default_factory=dict)
    raw: str = ""  # verbatim source text of the call


@dataclass
class ToolExecutionOutcome:
    """Result of running one capability."""

    tool_name: str
    success: bool
    result: str | None = None  # serialized return value
    error: str | None = None


@dataclass
class ParallelExecutionOutcome:
    """Aggregate of several concurrently executed capabilities."""

    success: bool
    results: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    outcomes: list[ToolExecutionOutcome] = field(default_factory=list)


@dataclass
class ParsedResponse:
    """Structured view of one assistant response."""

    reasoning: str | None = None
    actions: list[ToolCallRequest] = field(default_factory=list)
    final_answer: str | None = None

    @property
    def action(self) -> ToolCallRequest | list[ToolCallRequest] | None:
        """None for no calls, the call itself for one, the list for several."""
        if not self.actions:
            return None
        if len(self.actions) == 1:
            return self.actions[0]
        return list(self.actions)

    @property
    def has_action(self) -> bool:
        return bool(self.actions)


class TurnStatus(StrEnum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class TurnResult:
    """Outcome of one user turn through the orchestration loop."""

    status: TurnStatus
    text: str
    iterations: int
    tool_outcomes: list[ToolExecutionOutcome] = field(default_factory=list)


@dataclass
class StreamEvent:
    """A single event emitted while a turn is running."""

    type: str  # text_delta, tool_start, tool_end, done
    text: str = ""
    tool_name: str = ""
    success: bool | None = None
    result: TurnResult | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "text": self.text}
        if self.tool_name:
            data["tool_name"] = self.tool_name
        if self.success is not None:
            data["success"] = self.success
        if self.result is not None:
            data["status"] = str(self.result.status)
            data["iterations"] = self.result.iterations
        return data
