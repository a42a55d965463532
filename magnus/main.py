"""Magnus entry point.

Initializes all components and starts the server:
  Settings -> Registry -> Transport -> History -> Runner -> Session -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
import os
import platform
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from magnus.api.compaction import HistorySummarizer
from magnus.api.history import ConversationHistory
from magnus.api.protocol import ResponseParser, make_parser
from magnus.api.runner import AgentRunner
from magnus.api.session import ChatSession
from magnus.api.transport import StreamingTransport
from magnus.config import Settings
from magnus.prompts import build_system_prompt
from magnus.tools.builtin import register_builtin_tools
from magnus.tools.dispatcher import ToolDispatcher
from magnus.tools.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


async def create_components(
    settings: Settings,
    http_transport: httpx.AsyncBaseTransport | None = None,
    registry: CapabilityRegistry | None = None,
) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. CapabilityRegistry - built-in tools unless a registry is injected
    2. StreamingTransport - shared by the loop and the summarizer
    3. ConversationHistory - seeded with the generated system prompt
    4. AgentRunner - orchestration loop
    5. ChatSession - presentation contract
    """
    if registry is None:
        registry = CapabilityRegistry()
        register_builtin_tools(registry, settings)

    transport = StreamingTransport(settings)
    await transport.start(http_transport)

    current_dir = os.path.abspath(settings.workspace_dir)
    system_prompt = build_system_prompt(
        registry,
        tool_call_format=settings.tool_call_format,
        current_dir=current_dir,
        os_name=platform.system(),
        rules_file=settings.rules_file,
    )

    history = ConversationHistory(
        system_prompt=system_prompt,
        summarizer=HistorySummarizer(transport, settings),
        compaction_threshold=settings.compaction_threshold,
        split_ratio=settings.compaction_split_ratio,
        compaction_enabled=settings.compaction_enabled,
    )

    runner = AgentRunner(
        transport=transport,
        dispatcher=ToolDispatcher(registry),
        parser=ResponseParser(make_parser(settings.tool_call_format)),
        settings=settings,
    )
    session = ChatSession(runner, history)

    return {
        "registry": registry,
        "transport": transport,
        "history": history,
        "runner": runner,
        "session": session,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Magnus...")

    session = components.get("session")
    if session and session.busy:
        session.request_cancel()

    transport = components.get("transport")
    if transport:
        await transport.close()

    logger.info("Magnus shutdown complete.")


def build_app(
    settings: Settings,
    http_transport: httpx.AsyncBaseTransport | None = None,
    registry: CapabilityRegistry | None = None,
) -> Starlette:
    """Build the Starlette app, with components created in the lifespan."""
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings, http_transport, registry))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Magnus started: model=%s, format=%s, max_iterations=%d, workspace=%s",
            settings.model,
            settings.tool_call_format,
            settings.max_iterations,
            settings.workspace_dir,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from magnus.api.rest import create_app

    return create_app(
        session=_lazy_component(components, "session"),
        registry=_lazy_component(components, "registry"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)

    def __len__(self):
        return len(self._resolve())


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Magnus")
    logger.info("Model: %s (%s)", settings.model, settings.api_base_url)

    if not settings.api_key:
        logger.warning("OPENAI_API_KEY is not set -- /chat endpoints will likely fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
