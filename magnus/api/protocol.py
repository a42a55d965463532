"""Response protocol -- structured intent from free-form model text.

A response is split by three line-start headers:

    ### THINKING   reasoning
    ### ACTION     zero or more tool calls
    ### RESPONSE   final answer

Tool calls inside the action section use one of two encodings, fixed per
deployment by the ``tool_call_format`` setting:

    xml   <grep><pattern>TODO</pattern><path>src</path></grep>
    json  {"name": "grep", "parameters": {"pattern": "TODO", "path": "src"}}
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from magnus.api.models import ParsedResponse, ToolCallRequest

logger = logging.getLogger(__name__)

SECTION_REASONING = "thinking"
SECTION_ACTION = "action"
SECTION_FINAL = "response"

_HEADER_RE = re.compile(
    r"^[ \t]*###[ \t]*(THINKING|ACTION|RESPONSE)[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)

_TAG_BLOCK_RE = re.compile(r"<([A-Za-z_][\w-]*)>(.*?)</\1\s*>", re.DOTALL)

_FENCE_RE = re.compile(r"^```[\w-]*[ \t]*\n?(.*?)\n?```$", re.DOTALL)


def parse_sections(text: str) -> dict[str, str] | None:
    """Split text into sections keyed by lowercased header name.

    Each section runs from its header line to the next header or the end
    of the text. Returns None when no header is present. A repeated header
    keeps its first occurrence.
    """
    matches = list(_HEADER_RE.finditer(text))
    if not matches:
        return None

    sections: dict[str, str] = {}
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        name = match.group(1).lower()
        if name not in sections:
            sections[name] = text[match.end():end].strip()
    return sections


# ---------------------------------------------------------------------------
# Tool-call encodings
# ---------------------------------------------------------------------------


class ToolCallParser(Protocol):
    """Extracts tool calls, in source order, from an action section."""

    def parse(self, section: str) -> list[ToolCallRequest]: ...


class TagToolCallParser:
    """Tag-delimited calls: ``<tool><param>value</param></tool>``.

    A parameter repeated inside one block collects into a list.
    """

    def parse(self, section: str) -> list[ToolCallRequest]:
        calls: list[ToolCallRequest] = []
        for block in _TAG_BLOCK_RE.finditer(section):
            name, body = block.group(1), block.group(2)
            params: dict[str, str | list[str]] = {}
            for param in _TAG_BLOCK_RE.finditer(body):
                key, value = param.group(1), param.group(2).strip()
                existing = params.get(key)
                if existing is None:
                    params[key] = value
                elif isinstance(existing, list):
                    existing.append(value)
                else:
                    params[key] = [existing, value]
            calls.append(ToolCallRequest(name=name, raw_parameters=params, raw=block.group(0)))
        return calls


class LiteralToolCallParser:
    """JSON calls: one ``{name, parameters}`` object or an array of them.

    The section may be wrapped in a code fence. Parameter values are
    rendered to text so both encodings feed the same coercion step.
    """

    def parse(self, section: str) -> list[ToolCallRequest]:
        body = section.strip()
        fenced = _FENCE_RE.match(body)
        if fenced:
            body = fenced.group(1).strip()
        if not body:
            return []

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in action section: %s", e)
            return []

        if isinstance(data, dict):
            return [call] if (call := _literal_call(data, raw=body)) else []
        if isinstance(data, list):
            calls = []
            for entry in data:
                call = _literal_call(entry, raw=json.dumps(entry, ensure_ascii=False))
                if call:
                    calls.append(call)
            return calls
        return []


def _literal_call(entry: Any, raw: str) -> ToolCallRequest | None:
    if not isinstance(entry, dict) or not isinstance(entry.get("name"), str) or not entry["name"]:
        logger.warning("Skipping tool call without a name: %s", raw[:200])
        return None
    parameters = entry.get("parameters") or {}
    if not isinstance(parameters, dict):
        logger.warning("Skipping tool call %s: parameters is not an object", entry["name"])
        return None

    params: dict[str, str | list[str]] = {}
    for key, value in parameters.items():
        if value is None:
            continue
        params[str(key)] = _render_value(value)
    return ToolCallRequest(name=entry["name"], raw_parameters=params, raw=raw)


def _render_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    return str(value)


def _render_value(value: Any) -> str | list[str]:
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, list):
        if all(not isinstance(v, (dict, list)) for v in value):
            return [_render_scalar(v) for v in value]
        return json.dumps(value, ensure_ascii=False)
    return _render_scalar(value)


def make_parser(tool_call_format: str) -> ToolCallParser:
    """Select the tool-call encoding for a deployment."""
    if tool_call_format == "xml":
        return TagToolCallParser()
    if tool_call_format == "json":
        return LiteralToolCallParser()
    raise ValueError(f"Unknown tool call format: {tool_call_format!r}")


# ---------------------------------------------------------------------------
# Response parser
# ---------------------------------------------------------------------------


class ResponseParser:
    """Turns one iteration's accumulated text into a ParsedResponse."""

    def __init__(self, tool_parser: ToolCallParser | None = None) -> None:
        self._tool_parser = tool_parser or TagToolCallParser()

    def parse(self, text: str) -> ParsedResponse | None:
        """Return the parsed response, or None when the text has no headers."""
        sections = parse_sections(text)
        if sections is None:
            return None

        actions: list[ToolCallRequest] = []
        action_section = sections.get(SECTION_ACTION)
        if action_section:
            actions = self._tool_parser.parse(action_section)
            if not actions:
                logger.warning("Action section contained no well-formed tool calls")
            else:
                logger.debug("Parsed %d tool call(s): %s", len(actions), [a.name for a in actions])

        return ParsedResponse(
            reasoning=sections.get(SECTION_REASONING),
            actions=actions,
            final_answer=sections.get(SECTION_FINAL),
        )
