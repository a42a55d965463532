"""Tests for the capability registry and the tool dispatcher."""

import asyncio

import pytest

from magnus.api.models import ToolCallRequest
from magnus.tools.dispatcher import ToolDispatcher, batch_keys, serialize_result
from magnus.tools.registry import Capability, CapabilityRegistry
from magnus.tools.schemas import ParamSpec, ParamType


async def _noop(params):
    return None


class TestRegistry:
    def test_register_and_lookup(self, registry):
        assert "grep" in registry
        assert registry.get("grep").description == "Search files"
        assert registry.get("nope") is None
        assert registry.names() == ["grep", "read", "count", "flaky"]
        assert len(registry) == 4

    def test_duplicate_name_rejected(self):
        registry = CapabilityRegistry([Capability(name="a", description="", execute=_noop)])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(Capability(name="a", description="", execute=_noop))

    def test_definitions_exclude_executor(self, registry):
        definition = registry.definitions()[1]
        assert definition == {
            "name": "read",
            "description": "Read a file",
            "parameters": {
                "path": {"type": "string", "required": True, "default": None, "description": ""},
                "limit": {"type": "optional<number>", "required": False, "default": None, "description": ""},
            },
        }


def test_serialize_result():
    assert serialize_result("plain") == "plain"
    assert serialize_result({"a": [1, 2]}) == '{\n  "a": [\n    1,\n    2\n  ]\n}'


def test_batch_keys():
    assert batch_keys(["grep", "read", "grep", "grep"]) == ["grep", "read", "grep#2", "grep#3"]


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_coerces_and_serializes(self, registry, recorder):
        dispatcher = ToolDispatcher(registry)
        outcome = await dispatcher.execute(
            ToolCallRequest(name="count", raw_parameters={"values": ["1", "2", "3"], "verbose": "true"})
        )
        assert outcome.success
        assert recorder.calls == [("count", {"values": [1, 2, 3], "verbose": True})]
        assert outcome.result == '{\n  "total": 6,\n  "verbose": true\n}'

    @pytest.mark.asyncio
    async def test_unknown_tool_lists_available(self, registry):
        outcome = await ToolDispatcher(registry).execute(ToolCallRequest(name="delete"))
        assert not outcome.success
        assert outcome.error == "Tool 'delete' not found. Available tools: grep, read, count, flaky"

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self, registry):
        outcome = await ToolDispatcher(registry).execute(
            ToolCallRequest(name="read", raw_parameters={"path": "missing.txt"})
        )
        assert not outcome.success
        assert outcome.error == "file not found: missing.txt"
        assert outcome.result is None

    @pytest.mark.asyncio
    async def test_empty_exception_message_uses_class_name(self):
        async def _boom(params):
            raise KeyError

        registry = CapabilityRegistry([Capability(name="boom", description="", execute=_boom)])
        outcome = await ToolDispatcher(registry).execute(ToolCallRequest(name="boom"))
        assert outcome.error == "KeyError"


class TestExecuteParallel:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_siblings(self, registry, recorder):
        calls = [
            ToolCallRequest(name="grep", raw_parameters={"pattern": "auth"}),
            ToolCallRequest(name="read", raw_parameters={"path": "missing.py"}),
            ToolCallRequest(name="read", raw_parameters={"path": "ok.py"}),
        ]
        outcome = await ToolDispatcher(registry).execute_parallel(calls)

        assert outcome.success is False
        assert set(outcome.results) == {"grep", "read#2"}
        assert outcome.results["read#2"] == "contents of ok.py"
        assert outcome.errors == {"read": "file not found: missing.py"}
        assert len(outcome.outcomes) == 3
        assert len(recorder.calls) == 3

    @pytest.mark.asyncio
    async def test_all_succeed(self, registry):
        calls = [
            ToolCallRequest(name="grep", raw_parameters={"pattern": "a"}),
            ToolCallRequest(name="read", raw_parameters={"path": "b.py"}),
        ]
        outcome = await ToolDispatcher(registry).execute_parallel(calls)
        assert outcome.success is True
        assert outcome.errors == {}

    @pytest.mark.asyncio
    async def test_runs_concurrently(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def _first(params):
            started.set()
            await release.wait()
            return "first"

        async def _second(params):
            await started.wait()
            release.set()
            return "second"

        registry = CapabilityRegistry([
            Capability(name="first", description="", execute=_first),
            Capability(name="second", description="", execute=_second),
        ])
        outcome = await asyncio.wait_for(
            ToolDispatcher(registry).execute_parallel(
                [ToolCallRequest(name="first"), ToolCallRequest(name="second")]
            ),
            timeout=2,
        )
        assert outcome.results == {"first": "first", "second": "second"}

    @pytest.mark.asyncio
    async def test_coercion_per_capability(self):
        seen = {}

        async def _numeric(params):
            seen["numeric"] = params
            return "ok"

        async def _textual(params):
            seen["textual"] = params
            return "ok"

        registry = CapabilityRegistry([
            Capability(name="numeric", description="", execute=_numeric,
                       parameters={"n": ParamSpec(type=ParamType.number())}),
            Capability(name="textual", description="", execute=_textual,
                       parameters={"n": ParamSpec(type=ParamType.string())}),
        ])
        await ToolDispatcher(registry).execute_parallel([
            ToolCallRequest(name="numeric", raw_parameters={"n": "5"}),
            ToolCallRequest(name="textual", raw_parameters={"n": "5"}),
        ])
        assert seen == {"numeric": {"n": 5}, "textual": {"n": "5"}}
