"""Orchestration loop -- drives one user turn to a terminal state.

Each iteration performs exactly one streaming model call. Fragments are
accumulated for parsing and appended to the history's streaming
transaction so observers see them live; the transaction is committed once
the call completes. Parsed tool calls are dispatched (sequentially for one,
in parallel for several) and their results fed back as a user message.

Exits: a final answer (completed), cancellation (cancelled) or the
iteration ceiling (max_iterations). Transport and programming errors
propagate to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing

from magnus.api.errors import ProgrammingError, TurnCancelled
from magnus.api.history import ConversationHistory
from magnus.api.models import (
    ParallelExecutionOutcome,
    StreamEvent,
    ToolCallRequest,
    ToolExecutionOutcome,
    TurnResult,
    TurnStatus,
)
from magnus.api.protocol import ResponseParser
from magnus.api.transport import CancellationToken, StreamingTransport
from magnus.config import Settings
from magnus.tools.dispatcher import ToolDispatcher, batch_keys

logger = logging.getLogger(__name__)

MAX_ITERATIONS_MESSAGE = "Maximum iteration limit reached. Please try a more specific query."

_RETRY_INSTRUCTION = (
    "Please retry the same tool with corrected parameters. If the tool is "
    "fundamentally unsuitable for this task, choose a different tool instead."
)
_PARALLEL_RETRY_INSTRUCTION = (
    "Please retry the failed tools with corrected parameters. If a tool is "
    "fundamentally unsuitable for this task, choose a different tool instead."
)


def _render_call(call: ToolCallRequest) -> str:
    """Source text of a call, rebuilt in tag form when none was captured."""
    if call.raw:
        return call.raw
    lines = [f"<{call.name}>"]
    for key, value in call.raw_parameters.items():
        for item in value if isinstance(value, list) else [value]:
            lines.append(f"<{key}>{item}</{key}>")
    lines.append(f"</{call.name}>")
    return "\n".join(lines)


def format_tool_result(name: str, result: str) -> str:
    return f"Tool execution result ({name}):\n```json\n{result}\n```"


def format_tool_failure(call: ToolCallRequest, error: str) -> str:
    return (
        f"Tool '{call.name}' failed with error: {error}\n\n"
        f"{_RETRY_INSTRUCTION}\n\n"
        f"Original tool call:\n```\n{_render_call(call)}\n```"
    )


def format_parallel_results(
    calls: list[ToolCallRequest],
    outcome: ParallelExecutionOutcome,
) -> str:
    """One feedback message covering every call in a parallel batch."""
    keys = batch_keys([c.name for c in calls])
    total = len(calls)

    if outcome.success:
        blocks = [format_tool_result(key, outcome.results[key]) for key in keys]
        return f"Executed {total} tools in parallel, all succeeded.\n\n" + "\n\n".join(blocks)

    parts = [
        f"Executed {total} tools in parallel: "
        f"{len(outcome.results)} succeeded, {len(outcome.errors)} failed."
    ]
    if outcome.results:
        parts.append("Successful results:")
        parts.extend(format_tool_result(key, outcome.results[key]) for key in keys if key in outcome.results)
    parts.append("Failed tools:")
    failed_calls = []
    for key, call in zip(keys, calls):
        if key in outcome.errors:
            parts.append(f"- {key}: {outcome.errors[key]}")
            failed_calls.append(_render_call(call))
    parts.append(_PARALLEL_RETRY_INSTRUCTION)
    parts.append("Original failed tool calls:\n```\n" + "\n".join(failed_calls) + "\n```")
    return "\n\n".join(parts)


class AgentRunner:
    """Runs user turns against a model, a response parser and a dispatcher.

    Stateless between turns; all conversation state lives in the
    ConversationHistory passed to each call.
    """

    def __init__(
        self,
        transport: StreamingTransport,
        dispatcher: ToolDispatcher,
        parser: ResponseParser,
        settings: Settings,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._parser = parser
        self._settings = settings

    @property
    def max_iterations(self) -> int:
        return self._settings.max_iterations

    async def run_turn(
        self,
        history: ConversationHistory,
        user_text: str,
        cancel: CancellationToken | None = None,
    ) -> TurnResult:
        """Run a turn to completion and return its result."""
        result: TurnResult | None = None
        async with aclosing(self.stream_turn(history, user_text, cancel)) as events:
            async for event in events:
                if event.type == "done":
                    result = event.result
        if result is None:
            raise ProgrammingError("Turn ended without a result")
        return result

    async def stream_turn(
        self,
        history: ConversationHistory,
        user_text: str,
        cancel: CancellationToken | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Run a turn, yielding StreamEvents as they happen.

        The last event is always ``done`` carrying the TurnResult, unless an
        exception propagates.
        """
        cancel = cancel or CancellationToken()
        outcomes: list[ToolExecutionOutcome] = []

        await history.append_message("user", user_text)

        try:
            for iteration in range(1, self.max_iterations + 1):
                logger.info("Starting iteration %d/%d", iteration, self.max_iterations)

                # Stream one model call into the transaction
                parts: list[str] = []
                try:
                    cancel.raise_if_cancelled()
                    history.start_append_token()
                    stream = self._transport.stream(history.get_history_for_llm(), cancel=cancel)
                    async with aclosing(stream) as fragments:
                        async for fragment in fragments:
                            parts.append(fragment)
                            history.append_token(fragment)
                            yield StreamEvent(type="text_delta", text=fragment)
                    cancel.raise_if_cancelled()
                except TurnCancelled as e:
                    if history.is_streaming:
                        history.cancel_append_token()
                    logger.info("Turn cancelled in iteration %d: %s", iteration, e.reason)
                    yield self._done(TurnStatus.CANCELLED, e.reason, iteration, outcomes)
                    return

                text = "".join(parts)
                history.commit_append_token()
                await history.compact_if_needed()

                parsed = self._parser.parse(text)
                if parsed is None or not parsed.has_action:
                    final = text if parsed is None or parsed.final_answer is None else parsed.final_answer
                    logger.info("Final answer after %d iteration(s)", iteration)
                    yield self._done(TurnStatus.COMPLETED, final, iteration, outcomes)
                    return

                calls = parsed.actions
                logger.info("Detected %d tool call(s): %s", len(calls), ", ".join(c.name for c in calls))

                for call in calls:
                    yield StreamEvent(type="tool_start", tool_name=call.name)

                if len(calls) == 1:
                    call = calls[0]
                    outcome = await self._dispatcher.execute(call)
                    batch = [outcome]
                    if outcome.success:
                        feedback = format_tool_result(call.name, outcome.result or "")
                    else:
                        feedback = format_tool_failure(call, outcome.error or "Unknown error")
                else:
                    parallel = await self._dispatcher.execute_parallel(calls)
                    batch = parallel.outcomes
                    feedback = format_parallel_results(calls, parallel)

                for outcome in batch:
                    logger.info(
                        "Tool %s %s: %s",
                        outcome.tool_name,
                        "succeeded" if outcome.success else "failed",
                        ((outcome.result if outcome.success else outcome.error) or "")[:500],
                    )
                    yield StreamEvent(type="tool_end", tool_name=outcome.tool_name, success=outcome.success)
                outcomes.extend(batch)

                await history.append_message("user", feedback)

            logger.warning("Reached maximum iteration limit of %d", self.max_iterations)
            yield self._done(TurnStatus.MAX_ITERATIONS, MAX_ITERATIONS_MESSAGE, self.max_iterations, outcomes)
        finally:
            # Transport errors and abandoned consumers leave no partial output
            if history.is_streaming:
                history.cancel_append_token()

    @staticmethod
    def _done(
        status: TurnStatus,
        text: str,
        iterations: int,
        outcomes: list[ToolExecutionOutcome],
    ) -> StreamEvent:
        return StreamEvent(
            type="done",
            text=text,
            result=TurnResult(status=status, text=text, iterations=iterations, tool_outcomes=list(outcomes)),
        )
