"""Shared fixtures: settings, a registry of fake tools and a scripted model."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from magnus.api.history import ConversationHistory
from magnus.api.protocol import ResponseParser, TagToolCallParser
from magnus.api.runner import AgentRunner
from magnus.api.transport import CancellationToken
from magnus.config import Settings
from magnus.tools.dispatcher import ToolDispatcher
from magnus.tools.registry import Capability, CapabilityRegistry
from magnus.tools.schemas import ParamSpec, ParamType

# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """Stands in for StreamingTransport, replaying canned responses.

    Each script entry is one model call: a string (streamed in small
    fragments), a list of fragments, or an exception to raise. on_fragment
    is called as (call_index, fragment_index, token) before each fragment
    is yielded, which lets tests cancel mid-stream.
    """

    def __init__(self, script: list[Any], fragment_size: int = 8) -> None:
        self.script = list(script)
        self.fragment_size = fragment_size
        self.calls: list[list[dict[str, Any]]] = []
        self.complete_calls: list[dict[str, Any]] = []
        self.on_fragment: Callable[[int, int, CancellationToken | None], None] | None = None
        self.summary = "Summary of earlier conversation."

    def _fragments(self, entry: Any) -> list[str]:
        if isinstance(entry, list):
            return entry
        return [entry[i:i + self.fragment_size] for i in range(0, len(entry), self.fragment_size)]

    async def stream(self, messages, cancel=None, max_tokens=None, temperature=None):
        index = len(self.calls)
        self.calls.append([dict(m) for m in messages])
        if index >= len(self.script):
            raise AssertionError(f"Unexpected model call #{index + 1}")
        entry = self.script[index]
        if isinstance(entry, Exception):
            raise entry

        for i, fragment in enumerate(self._fragments(entry)):
            if self.on_fragment:
                self.on_fragment(index, i, cancel)
            if cancel:
                cancel.raise_if_cancelled()
            yield fragment

    async def complete(self, messages, max_tokens=None, temperature=None) -> str:
        self.complete_calls.append({
            "messages": messages, "max_tokens": max_tokens, "temperature": temperature,
        })
        return self.summary


def action(*calls: str, thinking: str = "Using a tool.") -> str:
    """Model response with an action section."""
    return f"### THINKING\n{thinking}\n\n### ACTION\n" + "\n".join(calls)


def answer(text: str, thinking: str = "Done.") -> str:
    """Model response with a final answer."""
    return f"### THINKING\n{thinking}\n\n### RESPONSE\n{text}"


# ---------------------------------------------------------------------------
# Fake tools
# ---------------------------------------------------------------------------


class ToolRecorder:
    """Collects the typed parameters each fake tool received."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []


@pytest.fixture
def recorder() -> ToolRecorder:
    return ToolRecorder()


@pytest.fixture
def registry(recorder) -> CapabilityRegistry:
    """grep / read / count / flaky fakes covering every parameter type."""
    reg = CapabilityRegistry()
    attempts: dict[str, int] = {}

    async def _grep(params: dict[str, Any]) -> dict[str, Any]:
        recorder.calls.append(("grep", params))
        return {"matches": [f"{params['pattern']} in src/app.py:3"]}

    async def _read(params: dict[str, Any]) -> str:
        recorder.calls.append(("read", params))
        if params["path"].startswith("missing"):
            raise FileNotFoundError(f"file not found: {params['path']}")
        return f"contents of {params['path']}"

    async def _count(params: dict[str, Any]) -> dict[str, Any]:
        recorder.calls.append(("count", params))
        return {"total": sum(params.get("values", [])), "verbose": params.get("verbose", False)}

    async def _flaky(params: dict[str, Any]) -> str:
        recorder.calls.append(("flaky", params))
        attempts["flaky"] = attempts.get("flaky", 0) + 1
        if attempts["flaky"] == 1:
            raise RuntimeError("file not found")
        return "recovered"

    reg.register(Capability(
        name="grep",
        description="Search files",
        execute=_grep,
        parameters={
            "pattern": ParamSpec(type=ParamType.string(), description="Regex"),
            "path": ParamSpec(type=ParamType.optional(ParamType.string()), required=False, default="."),
        },
    ))
    reg.register(Capability(
        name="read",
        description="Read a file",
        execute=_read,
        parameters={
            "path": ParamSpec(type=ParamType.string()),
            "limit": ParamSpec(type=ParamType.optional(ParamType.number()), required=False),
        },
    ))
    reg.register(Capability(
        name="count",
        description="Sum numbers",
        execute=_count,
        parameters={
            "values": ParamSpec(type=ParamType.array(ParamType.number())),
            "verbose": ParamSpec(type=ParamType.optional(ParamType.boolean()), required=False),
        },
    ))
    reg.register(Capability(
        name="flaky",
        description="Fails on first use",
        execute=_flaky,
        parameters={"target": ParamSpec(type=ParamType.string())},
    ))
    return reg


# ---------------------------------------------------------------------------
# Core components
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        OPENAI_API_KEY="test-key",
        OPENAI_API_BASE="http://llm.test/v1",
        OPENAI_MODEL="test-model",
        max_iterations=5,
        workspace_dir=".",
    )


@pytest.fixture
def history() -> ConversationHistory:
    return ConversationHistory(system_prompt="You are a test agent.")


def make_runner(
    transport: ScriptedTransport,
    registry: CapabilityRegistry,
    settings: Settings,
) -> AgentRunner:
    return AgentRunner(
        transport=transport,
        dispatcher=ToolDispatcher(registry),
        parser=ResponseParser(TagToolCallParser()),
        settings=settings,
    )
