"""Conversation history -- the context store of the orchestration loop.

Owns the ordered message log, the single in-flight streaming transaction
and the size-triggered summarization of older turns.

History is append-only except through:
  - the streaming transaction (commit extends/creates the trailing
    assistant message, cancel leaves history untouched)
  - summarization, which collapses the oldest messages into one
  - clear(), which keeps only the system message
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from magnus.api.compaction import Summarizer, TokenEstimator, serialize_for_summary
from magnus.api.errors import ProgrammingError
from magnus.api.models import Message

logger = logging.getLogger(__name__)

DEFAULT_COMPACTION_THRESHOLD = 24000
DEFAULT_SPLIT_RATIO = 0.75

_CONVERSATION_ROLES = frozenset({"user", "assistant"})


@dataclass
class StreamingTransaction:
    """Uncommitted model output for the current iteration."""

    active: bool = False
    buffer: str = ""


class ConversationHistory:
    """Ordered message log with streaming transactions and auto-summarization."""

    def __init__(
        self,
        system_prompt: str | None = None,
        summarizer: Summarizer | None = None,
        estimator: TokenEstimator | None = None,
        compaction_threshold: int = DEFAULT_COMPACTION_THRESHOLD,
        split_ratio: float = DEFAULT_SPLIT_RATIO,
        compaction_enabled: bool = True,
    ) -> None:
        self._messages: list[Message] = []
        self._transaction = StreamingTransaction()
        self._summarizer = summarizer
        self.estimator = estimator or TokenEstimator()
        self._compaction_threshold = compaction_threshold
        self._split_ratio = split_ratio
        self._compaction_enabled = compaction_enabled
        self.compaction_count = 0
        if system_prompt:
            self._messages.append(Message(role="system", content=system_prompt))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(self, role: str, content: str) -> None:
        if role not in _CONVERSATION_ROLES:
            raise ProgrammingError(f"add_message() accepts user/assistant roles, got {role!r}")
        self._messages.append(Message(role=role, content=content))

    async def append_message(self, role: str, content: str) -> None:
        """Append a message, then summarize if the context grew too large."""
        self.add_message(role, content)
        await self.compact_if_needed()

    def add_system_message(self, content: str) -> None:
        """Insert the system message at the head, or replace it if present."""
        if self._messages and self._messages[0].role == "system":
            self._messages[0].content = content
        else:
            self._messages.insert(0, Message(role="system", content=content))

    def get_history(self) -> list[Message]:
        """Return a copy of the log; mutating it does not affect history."""
        return [Message(role=m.role, content=m.content) for m in self._messages]

    def get_history_for_llm(self) -> list[dict[str, str]]:
        return [{"role": m.role, "content": m.content} for m in self._messages]

    def get_last_message(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def get_last_user_message(self) -> Message | None:
        return self._last_with_role("user")

    def get_last_assistant_message(self) -> Message | None:
        return self._last_with_role("assistant")

    def _last_with_role(self, role: str) -> Message | None:
        for message in reversed(self._messages):
            if message.role == role:
                return message
        return None

    def clear(self) -> None:
        """Drop everything except the system message."""
        self._messages = [m for m in self._messages[:1] if m.role == "system"]
        self._transaction = StreamingTransaction()

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # Streaming transaction
    # ------------------------------------------------------------------

    @property
    def is_streaming(self) -> bool:
        return self._transaction.active

    @property
    def pending_text(self) -> str:
        """Text appended to the active transaction so far."""
        return self._transaction.buffer

    def start_append_token(self) -> None:
        if self._transaction.active:
            raise ProgrammingError("A streaming transaction is already active")
        self._transaction = StreamingTransaction(active=True)

    def append_token(self, fragment: str) -> None:
        if not self._transaction.active:
            raise ProgrammingError("append_token() called before start_append_token()")
        self._transaction.buffer += fragment

    def commit_append_token(self) -> str:
        """Move the buffer into history and close the transaction.

        Extends a trailing assistant message, otherwise creates one when
        the buffer is non-empty. Returns the committed text.
        """
        if not self._transaction.active:
            raise ProgrammingError("commit_append_token() called without an active transaction")
        text = self._transaction.buffer
        last = self.get_last_message()
        if last is not None and last.role == "assistant":
            last.content += text
        elif text:
            self._messages.append(Message(role="assistant", content=text))
        self._transaction = StreamingTransaction()
        return text

    def cancel_append_token(self) -> None:
        """Discard the buffer without touching history."""
        if not self._transaction.active:
            raise ProgrammingError("cancel_append_token() called without an active transaction")
        discarded = len(self._transaction.buffer)
        self._transaction = StreamingTransaction()
        logger.debug("Discarded streaming transaction (%d chars)", discarded)

    # ------------------------------------------------------------------
    # Context-size management
    # ------------------------------------------------------------------

    def estimate_tokens(self) -> int:
        return self.estimator.estimate_messages(self.get_history_for_llm())

    def should_compact(self) -> bool:
        if not self._compaction_enabled or self._summarizer is None:
            return False
        return self.estimate_tokens() > self._compaction_threshold

    async def compact_if_needed(self) -> bool:
        """Summarize older messages when over the threshold. Never raises."""
        if self._transaction.active or not self.should_compact():
            return False
        return await self.compact()

    async def compact(self) -> bool:
        """Collapse the oldest share of the conversation into one summary message.

        Returns True when history was rebuilt. On any summarizer failure the
        history is left exactly as it was.
        """
        if self._summarizer is None:
            return False

        system = self._messages[0] if self._messages and self._messages[0].role == "system" else None
        rest = self._messages[1:] if system else list(self._messages)
        if len(rest) < 2:
            return False

        split = min(max(1, int(len(rest) * self._split_ratio)), len(rest) - 1)
        older, recent = rest[:split], rest[split:]
        before_tokens = self.estimate_tokens()

        try:
            summary = await self._summarizer.summarize(
                serialize_for_summary([{"role": m.role, "content": m.content} for m in older])
            )
        except Exception as e:
            logger.error("History summarization failed, continuing unsummarized: %s", e)
            return False

        if not summary or not summary.strip():
            logger.error("History summarization returned nothing, continuing unsummarized")
            return False

        compressed = Message(role="user", content=f"[{len(older)} messages compressed]: {summary.strip()}")
        self._messages = ([system] if system else []) + [compressed] + recent
        self.compaction_count += 1

        logger.info(
            "Compacted history: %d messages -> summary + %d recent (~%d -> ~%d tokens, compaction #%d)",
            len(older), len(recent), before_tokens, self.estimate_tokens(), self.compaction_count,
        )
        return True
