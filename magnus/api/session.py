"""Chat session -- the contract between the loop and a presentation layer.

A presentation layer (terminal UI, HTTP surface) reads an immutable
snapshot of the conversation plus a few flags, and supplies user input and
a cancel signal. One session serves one conversation and runs at most one
turn at a time.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass

from magnus.api.errors import ProgrammingError
from magnus.api.history import ConversationHistory
from magnus.api.models import Message, StreamEvent, TurnResult
from magnus.api.runner import AgentRunner
from magnus.api.transport import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the session for rendering."""

    messages: tuple[Message, ...]
    streaming_text: str
    is_streaming: bool
    is_cancellable: bool
    cancel_requested: bool

    def to_dict(self) -> dict:
        return {
            "messages": [{"role": m.role, "content": m.content} for m in self.messages],
            "streaming_text": self.streaming_text,
            "is_streaming": self.is_streaming,
            "is_cancellable": self.is_cancellable,
            "cancel_requested": self.cancel_requested,
        }


class ChatSession:
    """Owns one ConversationHistory and the cancel token of the running turn."""

    def __init__(self, runner: AgentRunner, history: ConversationHistory) -> None:
        self._runner = runner
        self._history = history
        self._cancel: CancellationToken | None = None

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def busy(self) -> bool:
        return self._cancel is not None

    def snapshot(self) -> SessionSnapshot:
        cancel_requested = self._cancel is not None and self._cancel.cancelled
        return SessionSnapshot(
            messages=tuple(self._history.get_history()),
            streaming_text=self._history.pending_text,
            is_streaming=self._history.is_streaming,
            is_cancellable=self.busy and not cancel_requested,
            cancel_requested=cancel_requested,
        )

    def _begin(self) -> CancellationToken:
        if self._cancel is not None:
            raise ProgrammingError("A turn is already running in this session")
        self._cancel = CancellationToken()
        return self._cancel

    async def submit(self, user_text: str) -> TurnResult:
        """Run one turn to completion."""
        cancel = self._begin()
        try:
            return await self._runner.run_turn(self._history, user_text, cancel)
        finally:
            self._cancel = None

    async def stream(self, user_text: str) -> AsyncGenerator[StreamEvent, None]:
        """Run one turn, yielding events as they happen."""
        cancel = self._begin()
        try:
            async with aclosing(self._runner.stream_turn(self._history, user_text, cancel)) as events:
                async for event in events:
                    yield event
        finally:
            self._cancel = None

    def request_cancel(self) -> bool:
        """Ask the running turn to stop. Returns False when nothing is running."""
        if self._cancel is None:
            return False
        if not self._cancel.cancelled:
            logger.info("Cancellation requested")
            self._cancel.cancel()
        return True

    def reset(self) -> None:
        """Clear the conversation, keeping the system prompt."""
        if self.busy:
            raise ProgrammingError("Cannot reset the session while a turn is running")
        self._history.clear()
        logger.info("Session reset")
