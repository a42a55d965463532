"""System prompt generation.

The prompt tells the model how to structure responses (section headers),
how to encode tool calls for the configured format and which tools exist.
Project-specific rules are appended from a rules file in the working
directory when one is present.
"""

from __future__ import annotations

import logging
from pathlib import Path

from magnus.tools.registry import Capability, CapabilityRegistry

logger = logging.getLogger(__name__)

_PREAMBLE = (
    "You are a highly skilled software engineer with extensive knowledge of many "
    "programming languages, frameworks, design patterns and best practices. You "
    "have access to tools that are executed on your request and help you give "
    "accurate, well-informed answers."
)

_RESPONSE_FORMAT = """\
## RESPONSE FORMAT
Every response MUST use these section headers, each on its own line:

### THINKING
[Your reasoning: what you know, what you still need and which tool helps.]

### ACTION
[Tool call(s), ONLY when a tool is needed. Nothing else goes here.]

### RESPONSE
[Your final answer, ONLY when no tool is needed.]

Rules:
1. Always start with THINKING.
2. Include ACTION when you need a tool and then do NOT include RESPONSE.
3. Include RESPONSE only when you are done and no further tool is needed.
4. Tool results arrive in the next message. Never assume a tool succeeded."""

_XML_INSTRUCTIONS = """\
## TOOL CALL FORMAT
Write each tool call as an XML-style block named after the tool, with one
tag per parameter:

<tool_name>
<parameter1>value1</parameter1>
<parameter2>value2</parameter2>
</tool_name>

Repeat a parameter tag to pass several values to an array parameter:

<cli>
<command>git</command>
<args>log</args>
<args>--oneline</args>
</cli>

Example:

### THINKING
I need to find where authentication is handled.

### ACTION
<grep>
<pattern>(auth|login)</pattern>
<path>.</path>
<include>*.py</include>
</grep>"""

_JSON_INSTRUCTIONS = """\
## TOOL CALL FORMAT
Write the ACTION section as one JSON object with "name" and "parameters",
or as a JSON array of such objects for several calls:

{"name": "tool_name", "parameters": {"parameter1": "value1"}}

Example:

### THINKING
I need to find where authentication is handled.

### ACTION
```json
{"name": "grep", "parameters": {"pattern": "(auth|login)", "path": ".", "include": "*.py"}}
```"""

_PARALLEL_GUIDANCE = """\
## PARALLEL TOOL CALLING
You may put several tool calls in one ACTION section when they are
independent of each other. They run concurrently and you receive all
results in the next message. Use one call at a time when a call depends on
the output of another, or when you need to verify a result before going on."""

_DIRECT_ANSWER_EXAMPLE = """\
## DIRECT ANSWER EXAMPLE
User: What is 2+2?

### THINKING
This is simple arithmetic and needs no tools.

### RESPONSE
The answer is 4."""


def describe_capability(capability: Capability) -> str:
    """Catalogue entry for one tool."""
    lines = [f"TOOL: {capability.name}", f"DESCRIPTION: {capability.description}", "PARAMETERS:"]
    if not capability.parameters:
        lines.append("  (none)")
    for key, spec in capability.parameters.items():
        flags = "required" if spec.required else "optional"
        if spec.default is not None:
            flags += f", default: {spec.default}"
        lines.append(f"  - {key} ({spec.type.label()}, {flags}): {spec.description}")
    return "\n".join(lines)


def load_rules(current_dir: str, rules_file: str) -> str | None:
    """Read project rules from the working directory, or None when absent."""
    path = Path(current_dir) / rules_file
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read rules file %s: %s", path, e)
        return None


def build_system_prompt(
    registry: CapabilityRegistry,
    tool_call_format: str = "xml",
    current_dir: str = ".",
    os_name: str = "",
    rules_file: str = "MAGNUS.md",
) -> str:
    """Assemble the system prompt for a session."""
    sections = [_PREAMBLE]

    rules = load_rules(current_dir, rules_file)
    if rules:
        sections.append(f"## PROJECT-SPECIFIC RULES (from {rules_file})\n{rules.strip()}")
        logger.info("Loaded project rules from %s", rules_file)

    sections.append(
        "## CONTEXT INFORMATION\n"
        f'- Current Directory: "{current_dir}"\n'
        f'- Operating System: "{os_name}"'
    )
    sections.append(_RESPONSE_FORMAT)
    sections.append(_JSON_INSTRUCTIONS if tool_call_format == "json" else _XML_INSTRUCTIONS)
    sections.append(_PARALLEL_GUIDANCE)

    catalogue = "\n\n".join(describe_capability(c) for c in registry.all())
    sections.append(f"## AVAILABLE TOOLS\n\n{catalogue or '(no tools available)'}")
    sections.append(_DIRECT_ANSWER_EXAMPLE)

    prompt = "\n\n".join(sections)
    logger.debug("System prompt built: %d chars, %d tools", len(prompt), len(registry))
    return prompt
