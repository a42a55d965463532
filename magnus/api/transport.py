"""Streaming transport -- OpenAI-compatible chat completions over httpx.

Yields raw text fragments as they arrive. Three outcomes are kept
distinct so the loop can branch on them:
  - normal completion: the iterator ends
  - cancellation: TurnCancelled is raised
  - transport failure: TransportError is raised
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from magnus.api.errors import TransportError, TurnCancelled
from magnus.config import Settings

logger = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"


class CancellationToken:
    """Cooperative cancellation flag that can also be awaited.

    Checked synchronously at every suspension point (each network read,
    between loop iterations). wait() lets a pending read be raced against
    the cancel request so it cannot block cancellation.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "Cancelled by user") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self._reason or "Cancelled by user")


@dataclass
class SSERecord:
    """One decoded server-sent event record."""

    text: str = ""
    done: bool = False


class SSEDecoder:
    """Incremental decoder for chat-completion SSE streams.

    Buffers partial lines across chunk boundaries, decodes only complete
    "data:" lines and silently skips malformed JSON or non-data lines.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[SSERecord]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        # Keep the last incomplete line in the buffer
        self._buffer = lines.pop()
        return [record for line in lines if (record := _decode_line(line)) is not None]

    def flush(self) -> list[SSERecord]:
        """Decode whatever is left once the stream closes."""
        line, self._buffer = self._buffer, ""
        record = _decode_line(line)
        return [record] if record is not None else []


def _decode_line(line: str) -> SSERecord | None:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if payload == _DONE_SENTINEL:
        return SSERecord(done=True)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE record: %s", payload[:200])
        return None
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if not isinstance(content, str) or not content:
        return None
    return SSERecord(text=content)


class StreamingTransport:
    """Issues model calls and streams the textual response.

    One instance is shared by the orchestration loop and the history
    summarizer. Call start() before use and close() on shutdown.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {"content-type": "application/json"}
        if settings.api_key:
            headers["authorization"] = f"Bearer {settings.api_key}"
        else:
            logger.warning("OPENAI_API_KEY is not set -- API calls may fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        kwargs: dict[str, Any] = {
            "base_url": settings.api_base_url.rstrip("/"),
            "headers": headers,
            "timeout": timeout,
            "limits": limits,
        }
        if transport is not None:
            kwargs["transport"] = transport
        self._http = httpx.AsyncClient(**kwargs)
        logger.info("httpx client initialized (base url: %s)", settings.api_base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        max_tokens: int | None,
        temperature: float | None,
    ) -> dict[str, Any]:
        return {
            "model": self._settings.model,
            "messages": messages,
            "stream": True,
            "max_tokens": max_tokens if max_tokens is not None else self._settings.max_tokens,
            "temperature": temperature if temperature is not None else self._settings.temperature,
        }

    async def stream(
        self,
        messages: list[dict[str, Any]],
        cancel: CancellationToken | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        """Send one chat request and yield text fragments as they arrive."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        if cancel:
            cancel.raise_if_cancelled()

        payload = self._build_payload(messages, max_tokens, temperature)
        decoder = SSEDecoder()

        try:
            async with self._http.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise TransportError(
                        f"HTTP error {response.status_code}: "
                        f"{body.decode('utf-8', errors='replace')[:500]}",
                        status_code=response.status_code,
                    )

                chunks = response.aiter_text()
                while True:
                    if cancel:
                        cancel.raise_if_cancelled()
                    chunk = await _next_chunk(chunks, cancel)
                    if cancel:
                        cancel.raise_if_cancelled()
                    if chunk is None:
                        break
                    for record in decoder.feed(chunk):
                        if record.done:
                            return
                        if cancel:
                            cancel.raise_if_cancelled()
                        yield record.text

                for record in decoder.flush():
                    if record.done:
                        return
                    yield record.text
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP error: {e}") from e

    async def complete(
        self,
        messages: list[dict[str, Any]],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """Collect a whole streamed response into one string."""
        parts = [
            fragment
            async for fragment in self.stream(
                messages, max_tokens=max_tokens, temperature=temperature
            )
        ]
        return "".join(parts)


async def _next_chunk(
    chunks: AsyncIterator[str],
    cancel: CancellationToken | None,
) -> str | None:
    """Read the next chunk, or None at end of stream.

    With a token, the read is raced against cancellation so an idle
    connection cannot hold the turn hostage.
    """

    async def _read() -> str | None:
        try:
            return await chunks.__anext__()
        except StopAsyncIteration:
            return None

    if cancel is None:
        return await _read()

    read_task = asyncio.ensure_future(_read())
    cancel_task = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        cancel_task.cancel()

    if read_task in done:
        return read_task.result()

    read_task.cancel()
    try:
        await read_task
    except asyncio.CancelledError:
        pass
    raise TurnCancelled(cancel.reason or "Cancelled by user")
