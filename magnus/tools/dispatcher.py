"""Tool dispatcher: runs capabilities on behalf of the orchestration loop.

The dispatcher never raises for tool-level problems. An unknown tool or a
capability exception becomes a failed ToolExecutionOutcome whose message
is fed back to the model so it can correct itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from magnus.api.models import (
    ParallelExecutionOutcome,
    ToolCallRequest,
    ToolExecutionOutcome,
)
from magnus.tools.coercion import coerce_parameters
from magnus.tools.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


def serialize_result(result: Any) -> str:
    """Render a capability's return value as text for the model."""
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, default=str, ensure_ascii=False)


def batch_keys(names: list[str]) -> list[str]:
    """Unique keys for a batch of calls: grep, grep#2, read, grep#3."""
    seen: dict[str, int] = {}
    keys = []
    for name in names:
        seen[name] = seen.get(name, 0) + 1
        keys.append(name if seen[name] == 1 else f"{name}#{seen[name]}")
    return keys


class ToolDispatcher:
    """Executes tool calls against an injected CapabilityRegistry."""

    def __init__(self, registry: CapabilityRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    async def execute(self, call: ToolCallRequest) -> ToolExecutionOutcome:
        """Run a single tool call and capture its outcome."""
        capability = self._registry.get(call.name)
        if capability is None:
            available = ", ".join(self._registry.names()) or "(none)"
            logger.error("Tool not found: %s", call.name)
            return ToolExecutionOutcome(
                tool_name=call.name,
                success=False,
                error=f"Tool '{call.name}' not found. Available tools: {available}",
            )

        typed_params = coerce_parameters(call.raw_parameters, capability.parameters)
        logger.debug("Executing tool %s with parameters: %s", call.name, typed_params)

        try:
            result = await capability.execute(typed_params)
        except Exception as e:
            logger.exception("Tool execution failed: %s", call.name)
            return ToolExecutionOutcome(
                tool_name=call.name,
                success=False,
                error=str(e) or type(e).__name__,
            )

        text = serialize_result(result)
        logger.info("Tool %s executed successfully, result size: %d chars", call.name, len(text))
        return ToolExecutionOutcome(tool_name=call.name, success=True, result=text)

    async def execute_parallel(self, calls: list[ToolCallRequest]) -> ParallelExecutionOutcome:
        """Run several tool calls concurrently and join on all of them.

        One failure never cancels siblings: execute() already converts
        every capability exception into an outcome.
        """
        outcomes = await asyncio.gather(*(self.execute(call) for call in calls))

        results: dict[str, str] = {}
        errors: dict[str, str] = {}
        for key, outcome in zip(batch_keys([o.tool_name for o in outcomes]), outcomes):
            if outcome.success:
                results[key] = outcome.result or ""
            else:
                errors[key] = outcome.error or "Unknown error"

        logger.info(
            "Parallel execution finished: %d succeeded, %d failed",
            len(results), len(errors),
        )
        return ParallelExecutionOutcome(
            success=not errors,
            results=results,
            errors=errors,
            outcomes=list(outcomes),
        )
