"""Tests for ChatSession, the presentation-facing contract."""

import asyncio

import pytest

from magnus.api.errors import ProgrammingError
from magnus.api.models import TurnStatus
from magnus.api.session import ChatSession

from tests.conftest import ScriptedTransport, action, answer, make_runner


def _session(script, registry, settings, history) -> tuple[ChatSession, ScriptedTransport]:
    transport = ScriptedTransport(script)
    return ChatSession(make_runner(transport, registry, settings), history), transport


class TestSnapshot:
    def test_idle_snapshot(self, registry, settings, history):
        session, _ = _session([], registry, settings, history)
        snap = session.snapshot()
        assert [m.role for m in snap.messages] == ["system"]
        assert isinstance(snap.messages, tuple)
        assert snap.streaming_text == ""
        assert not snap.is_streaming
        assert not snap.is_cancellable
        assert not snap.cancel_requested

    @pytest.mark.asyncio
    async def test_snapshot_while_streaming(self, registry, settings, history):
        session, transport = _session([answer("hello there")], registry, settings, history)
        snapshots = []
        transport.on_fragment = lambda call, i, token: snapshots.append(session.snapshot())

        await session.submit("hi")

        mid = snapshots[2]
        assert mid.is_streaming
        assert mid.is_cancellable
        assert mid.streaming_text == answer("hello there")[:16]
        # Uncommitted text is not part of the message list
        assert [m.role for m in mid.messages] == ["system", "user"]

        after = session.snapshot()
        assert not after.is_streaming
        assert [m.role for m in after.messages] == ["system", "user", "assistant"]

    def test_snapshot_to_dict(self, registry, settings, history):
        session, _ = _session([], registry, settings, history)
        data = session.snapshot().to_dict()
        assert data["messages"] == [{"role": "system", "content": "You are a test agent."}]
        assert data["is_streaming"] is False


class TestTurns:
    @pytest.mark.asyncio
    async def test_submit_returns_result(self, registry, settings, history):
        session, _ = _session([answer("42")], registry, settings, history)
        result = await session.submit("question")
        assert result.status == TurnStatus.COMPLETED
        assert result.text == "42"
        assert not session.busy

    @pytest.mark.asyncio
    async def test_stream_yields_events(self, registry, settings, history):
        session, _ = _session(
            [action("<grep><pattern>x</pattern></grep>"), answer("found")],
            registry, settings, history,
        )
        types = [e.type async for e in session.stream("find x")]
        assert types[-1] == "done"
        assert "tool_start" in types
        assert "tool_end" in types
        assert not session.busy

    @pytest.mark.asyncio
    async def test_concurrent_turn_rejected(self, registry, settings, history):
        session, transport = _session([answer("slow answer")], registry, settings, history)
        gate = asyncio.Event()
        original_stream = transport.stream

        async def gated_stream(messages, cancel=None, **kwargs):
            await gate.wait()
            async for fragment in original_stream(messages, cancel=cancel, **kwargs):
                yield fragment

        transport.stream = gated_stream
        first = asyncio.create_task(session.submit("first"))
        await asyncio.sleep(0)
        assert session.busy

        with pytest.raises(ProgrammingError):
            await session.submit("second")

        gate.set()
        result = await first
        assert result.text == "slow answer"

    @pytest.mark.asyncio
    async def test_request_cancel(self, registry, settings, history):
        session, transport = _session([answer("a long answer that gets cut off")], registry, settings, history)
        states = []

        def cancel_on_second_fragment(call, i, token):
            if i == 1:
                assert session.request_cancel() is True
                states.append(session.snapshot())

        transport.on_fragment = cancel_on_second_fragment
        result = await session.submit("go")

        assert result.status == TurnStatus.CANCELLED
        assert states[0].cancel_requested
        assert not states[0].is_cancellable
        assert [m.role for m in session.snapshot().messages] == ["system", "user"]

    def test_request_cancel_when_idle(self, registry, settings, history):
        session, _ = _session([], registry, settings, history)
        assert session.request_cancel() is False

    @pytest.mark.asyncio
    async def test_reset(self, registry, settings, history):
        session, _ = _session([answer("ok")], registry, settings, history)
        await session.submit("hi")
        session.reset()
        assert [m.role for m in session.snapshot().messages] == ["system"]
