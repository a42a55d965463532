"""REST API for a Magnus chat session.

Endpoints:
  POST   /chat         - Send message, get the final response
  POST   /chat/stream  - Send message, stream turn events over SSE
  POST   /chat/cancel  - Ask the running turn to stop
  GET    /history      - Conversation snapshot
  DELETE /history      - Clear the conversation (system prompt kept)
  GET    /tools        - Tool catalogue
  GET    /health       - Health check
"""

from __future__ import annotations

import json
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from magnus.api.errors import ProgrammingError, TransportError
from magnus.api.session import ChatSession
from magnus.config import Settings
from magnus.tools.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

_BUSY_ERROR = "A turn is already running"


async def _read_message(request: Request) -> tuple[str | None, JSONResponse | None]:
    try:
        body = await request.json()
    except Exception:
        return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    message = body.get("message") if isinstance(body, dict) else None
    if not message or not isinstance(message, str):
        return None, JSONResponse({"error": "Missing required field: message"}, status_code=400)
    return message, None


def create_app(
    session: ChatSession,
    registry: CapabilityRegistry,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        message, error = await _read_message(request)
        if error:
            return error
        if session.busy:
            return JSONResponse({"error": _BUSY_ERROR}, status_code=409)

        try:
            result = await session.submit(message)
        except ProgrammingError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except TransportError as e:
            logger.error("Model call failed: %s", e)
            return JSONResponse(
                {"error": str(e), "upstream_status": e.status_code}, status_code=502
            )

        return JSONResponse({
            "status": str(result.status),
            "response": result.text,
            "iterations": result.iterations,
            "tools": [
                {"name": o.tool_name, "success": o.success, "error": o.error}
                for o in result.tool_outcomes
            ],
        })

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE streaming chat."""
        message, error = await _read_message(request)
        if error:
            return error
        if session.busy:
            return JSONResponse({"error": _BUSY_ERROR}, status_code=409)

        async def event_generator():
            try:
                async for event in session.stream(message):
                    yield f"data: {json.dumps(event.to_dict())}\n\n"
            except (TransportError, ProgrammingError) as e:
                logger.error("Stream error: %s", e)
                yield f"data: {json.dumps({'type': 'error', 'text': str(e)})}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def cancel(request: Request) -> JSONResponse:
        """POST /chat/cancel - Request cancellation of the running turn."""
        return JSONResponse({"cancel_requested": session.request_cancel()})

    async def get_history(request: Request) -> JSONResponse:
        """GET /history - Messages plus streaming flags."""
        return JSONResponse(session.snapshot().to_dict())

    async def clear_history(request: Request) -> JSONResponse:
        """DELETE /history - Clear the conversation."""
        try:
            session.reset()
        except ProgrammingError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse({"status": "cleared", "messages": len(session.history)})

    async def list_tools(request: Request) -> JSONResponse:
        """GET /tools - Registered tools and their parameters."""
        return JSONResponse({"tools": registry.definitions()})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Liveness plus basic session state."""
        return JSONResponse({
            "status": "healthy",
            "model": settings.model,
            "tools": len(registry),
            "busy": session.busy,
        })

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/cancel", cancel, methods=["POST"]),
        Route("/history", get_history, methods=["GET"]),
        Route("/history", clear_history, methods=["DELETE"]),
        Route("/tools", list_tools),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
