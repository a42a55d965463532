"""Context-size estimation and history summarization.

The estimator is a cheap length heuristic used to decide when the
conversation must be compressed. The summarizer is a nested model call
that turns older turns into one compact text block. Both are independent
of ConversationHistory so they can be swapped or mocked in tests.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Protocol

from magnus.api.errors import SummarizationError
from magnus.config import Settings

logger = logging.getLogger(__name__)

# Target length as a fraction of the input, per compression level
COMPRESSION_RATIOS: dict[str, float] = {
    "light": 0.7,
    "medium": 0.4,
    "heavy": 0.2,
}

_MAX_SUMMARY_INPUT_CHARS = 100_000

SUMMARY_SYSTEM_PROMPT = """\
You are an expert at creating context-aware summaries that preserve critical \
information while reducing length.

CONTEXT TYPE: conversation
COMPRESSION LEVEL: {compression}
TARGET LENGTH: ~{target_length} characters

SUMMARIZATION GUIDELINES:
- Preserve user requests, assistant responses, key decisions and action items
- Always preserve technical specifications, file paths and tool names
- Keep error messages and the solutions applied to them
- Maintain decision rationale and implementation choices
- Preserve sequential order and causality relationships
- Retain specific values, IDs and configuration details

FORMAT YOUR RESPONSE AS A CLEAR, READABLE SUMMARY WITHOUT METADATA OR EXPLANATIONS."""


class Summarizer(Protocol):
    """Anything that can compress serialized conversation text."""

    async def summarize(self, content: str) -> str: ...


class TokenEstimator:
    """Estimates token counts with the chars/4 heuristic.

    Role and content are estimated separately, plus a fixed per-message
    overhead for chat formatting.
    """

    CHARS_PER_TOKEN = 4
    MESSAGE_OVERHEAD = 4

    def estimate(self, text: str) -> int:
        """Estimate token count for text content."""
        return math.ceil(len(text) / self.CHARS_PER_TOKEN)

    def estimate_messages(self, messages: list[dict[str, Any]]) -> int:
        """Estimate total tokens for a message list."""
        return sum(
            self.estimate(m.get("role", ""))
            + self.estimate(str(m.get("content", "")))
            + self.MESSAGE_OVERHEAD
            for m in messages
        )


class HistorySummarizer:
    """Summarizes conversation text through a nested, non-streaming model call.

    The call is not cancellable. Failures raise SummarizationError, which
    ConversationHistory catches and logs.
    """

    def __init__(self, transport: Any, settings: Settings) -> None:
        self._transport = transport
        self._settings = settings

    def target_length(self, content: str) -> int:
        ratio = COMPRESSION_RATIOS.get(self._settings.compression_ratio, COMPRESSION_RATIOS["medium"])
        return max(1, min(self._settings.summary_max_chars, math.floor(len(content) * ratio)))

    async def summarize(self, content: str) -> str:
        if len(content) > _MAX_SUMMARY_INPUT_CHARS:
            logger.warning(
                "Summary input too large (%d chars), keeping newest %d",
                len(content), _MAX_SUMMARY_INPUT_CHARS,
            )
            content = content[-_MAX_SUMMARY_INPUT_CHARS:]

        target_length = self.target_length(content)
        messages = [
            {
                "role": "system",
                "content": SUMMARY_SYSTEM_PROMPT.format(
                    compression=self._settings.compression_ratio,
                    target_length=target_length,
                ),
            },
            {
                "role": "user",
                "content": f"Please summarize the following conversation content:\n\n{content}",
            },
        ]

        start_time = time.monotonic()
        try:
            summary = await self._transport.complete(
                messages,
                max_tokens=math.ceil(target_length / 4),
                temperature=self._settings.summary_temperature,
            )
        except Exception as e:
            raise SummarizationError(f"Failed to generate summary: {e}") from e

        summary = summary.strip()
        if not summary:
            raise SummarizationError("Summarizer returned an empty summary")

        logger.info(
            "Generated summary: %d -> %d chars (%d ms)",
            len(content), len(summary), int((time.monotonic() - start_time) * 1000),
        )
        return summary


def serialize_for_summary(messages: list[dict[str, Any]]) -> str:
    """Serialize messages as role-prefixed text blocks."""
    return "\n\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in messages)
