"""Error types shared by the orchestration core.

Only transport and programming errors end a turn as failures. Cancellation
ends it with a "cancelled" result. Tool failures are never raised past the
dispatcher; they become feedback for the model.
"""

from __future__ import annotations


class ProgrammingError(RuntimeError):
    """Misuse of an API contract (e.g. append before start). Not recoverable."""


class TransportError(RuntimeError):
    """The model call failed at the HTTP/stream level."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TurnCancelled(Exception):
    """Cooperative cancellation was observed during a turn."""

    def __init__(self, reason: str = "Cancelled by user") -> None:
        super().__init__(reason)
        self.reason = reason


class SummarizationError(RuntimeError):
    """History summarization failed. Caught inside the context store."""
