"""Built-in capabilities: read, glob, grep, tree, cli.

Each capability receives its already-coerced parameters as a dict and
either returns a JSON-serializable result or raises. The dispatcher turns
exceptions into feedback for the model. Relative paths resolve against
the configured workspace directory.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import Any

from magnus.config import Settings
from magnus.tools.registry import Capability, CapabilityRegistry
from magnus.tools.schemas import ParamSpec, ParamType

logger = logging.getLogger(__name__)

# Limits
_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
_MAX_READ_LINES = 10000
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_GREP_MATCHES = 200
_MAX_GLOB_RESULTS = 500
_MAX_TREE_DEPTH = 10
_SKIPPED_DIRS = frozenset({"node_modules", ".git", "dist", "build", "coverage", "__pycache__", ".venv"})


def _resolve(path_str: str, workspace_dir: str) -> Path:
    path = Path(path_str).expanduser()
    if not path.is_absolute():
        path = Path(workspace_dir) / path
    return path.resolve()


def _walk_files(root: Path) -> list[Path]:
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIPPED_DIRS)
        for name in sorted(filenames):
            files.append(Path(dirpath) / name)
    return files


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_tool(
    path: str,
    offset: int = 0,
    limit: int = 2000,
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Read a text file and return its lines numbered from 1.

    Args:
        path: File path (absolute or relative to the workspace)
        offset: 0-based line to start from
        limit: Maximum number of lines (capped at 10000)
        _workspace_dir: Internal param set by registration closure
    """
    target = _resolve(path, _workspace_dir)
    if not target.exists():
        raise FileNotFoundError(f"File not found: {target}")
    if not target.is_file():
        raise IsADirectoryError(f"Path is not a file: {target}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        raise ValueError(f"File too large: {target} ({file_size:,} bytes)")

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    lines = content.split("\n")

    limit = max(1, min(int(limit), _MAX_READ_LINES))
    start = max(0, min(int(offset), len(lines)))
    end = min(start + limit, len(lines))

    return {
        "file": str(target),
        "total_lines": len(lines),
        "start_line": start + 1,
        "end_line": end,
        "content": "\n".join(f"{start + i + 1:>6}\t{line}" for i, line in enumerate(lines[start:end])),
        "truncated": end < len(lines),
    }


async def glob_tool(
    pattern: str,
    path: str = ".",
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Find files whose workspace-relative path matches a glob pattern."""
    root = _resolve(path, _workspace_dir)
    if not root.is_dir():
        raise NotADirectoryError(f"Directory not found: {root}")

    def _match() -> list[str]:
        matches = sorted(str(p) for p in root.glob(pattern) if p.is_file())
        return [m for m in matches if not any(part in _SKIPPED_DIRS for part in Path(m).parts)]

    matches = await asyncio.to_thread(_match)
    return {
        "pattern": pattern,
        "path": str(root),
        "count": len(matches),
        "files": matches[:_MAX_GLOB_RESULTS],
        "truncated": len(matches) > _MAX_GLOB_RESULTS,
    }


async def grep_tool(
    pattern: str,
    path: str = ".",
    include: str | None = None,
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Search file contents with a regular expression.

    Args:
        pattern: Python regular expression
        path: File or directory to search
        include: Optional filename glob (e.g. "*.py") restricting the files
        _workspace_dir: Internal param set by registration closure
    """
    try:
        regex = re.compile(pattern)
    except re.error as e:
        raise ValueError(f"Invalid regular expression '{pattern}': {e}") from e

    root = _resolve(path, _workspace_dir)
    if not root.exists():
        raise FileNotFoundError(f"Path not found: {root}")

    def _search() -> tuple[list[dict[str, Any]], bool]:
        files = [root] if root.is_file() else _walk_files(root)
        found: list[dict[str, Any]] = []
        for file in files:
            if include and not fnmatch.fnmatch(file.name, include):
                continue
            try:
                text = file.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    found.append({"file": str(file), "line": number, "text": line.strip()[:500]})
                    if len(found) >= _MAX_GREP_MATCHES:
                        return found, True
        return found, False

    matches, truncated = await asyncio.to_thread(_search)
    return {"pattern": pattern, "count": len(matches), "matches": matches, "truncated": truncated}


async def tree_tool(
    path: str = ".",
    max_depth: int = 3,
    include_hidden: bool = False,
    *,
    _workspace_dir: str = ".",
) -> str:
    """Render an indented directory tree."""
    root = _resolve(path, _workspace_dir)
    if not root.is_dir():
        raise NotADirectoryError(f"Directory not found: {root}")
    depth_limit = max(1, min(int(max_depth), _MAX_TREE_DEPTH))

    def _render(directory: Path, depth: int, lines: list[str]) -> None:
        if depth >= depth_limit:
            return
        try:
            entries = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        except OSError:
            return
        for entry in entries:
            if not include_hidden and entry.name.startswith("."):
                continue
            indent = "  " * depth
            if entry.is_dir():
                if entry.name in _SKIPPED_DIRS:
                    continue
                lines.append(f"{indent}{entry.name}/")
                _render(entry, depth + 1, lines)
            else:
                lines.append(f"{indent}{entry.name}")

    lines = [f"{root}/"]
    await asyncio.to_thread(_render, root, 0, lines)
    return "\n".join(lines)


async def cli_tool(
    command: str,
    args: list[str] | None = None,
    cwd: str | None = None,
    timeout: int = 30,
    *,
    _workspace_dir: str = ".",
) -> dict[str, Any]:
    """Execute a shell command and capture its output.

    A non-zero exit code is reported in the result, not raised. A timeout
    kills the process and raises.
    """
    full_command = " ".join([command, *(args or [])])
    workdir = _resolve(cwd, _workspace_dir) if cwd else _resolve(".", _workspace_dir)

    proc = await asyncio.create_subprocess_shell(
        full_command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workdir),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=max(1, timeout))
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise TimeoutError(f"Command timed out after {timeout}s: {full_command}") from None

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")
    if len(stdout_text) > _MAX_OUTPUT_CHARS:
        stdout_text = stdout_text[:_MAX_OUTPUT_CHARS] + "\n... [output truncated at 100KB]"
    if len(stderr_text) > _MAX_OUTPUT_CHARS:
        stderr_text = stderr_text[:_MAX_OUTPUT_CHARS] + "\n... [stderr truncated at 100KB]"

    return {"exit_code": proc.returncode, "stdout": stdout_text, "stderr": stderr_text}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: CapabilityRegistry, settings: Settings) -> None:
    """Register read, glob, grep, tree and cli with the registry.

    Creates closure wrappers that inject workspace_dir from settings.
    """
    workspace = settings.workspace_dir

    async def _read(params: dict[str, Any]) -> dict[str, Any]:
        return await read_tool(**params, _workspace_dir=workspace)

    async def _glob(params: dict[str, Any]) -> dict[str, Any]:
        return await glob_tool(**params, _workspace_dir=workspace)

    async def _grep(params: dict[str, Any]) -> dict[str, Any]:
        return await grep_tool(**params, _workspace_dir=workspace)

    async def _tree(params: dict[str, Any]) -> str:
        return await tree_tool(**params, _workspace_dir=workspace)

    async def _cli(params: dict[str, Any]) -> dict[str, Any]:
        params = {"timeout": settings.shell_timeout, **params}
        return await cli_tool(**params, _workspace_dir=workspace)

    registry.register(Capability(
        name="read",
        description="Read the contents of a file with line numbers",
        execute=_read,
        parameters={
            "path": ParamSpec(type=ParamType.string(), description="File path to read"),
            "offset": ParamSpec(
                type=ParamType.optional(ParamType.number()), required=False, default=0,
                description="Line to start reading from (0-based)",
            ),
            "limit": ParamSpec(
                type=ParamType.optional(ParamType.number()), required=False, default=2000,
                description="Maximum number of lines to read (max 10000)",
            ),
        },
    ))
    registry.register(Capability(
        name="glob",
        description="Find files by name using glob patterns such as '**/*.py'",
        execute=_glob,
        parameters={
            "pattern": ParamSpec(type=ParamType.string(), description="Glob pattern to match"),
            "path": ParamSpec(
                type=ParamType.optional(ParamType.string()), required=False, default=".",
                description="Directory to search in",
            ),
        },
    ))
    registry.register(Capability(
        name="grep",
        description="Search file contents with a regular expression",
        execute=_grep,
        parameters={
            "pattern": ParamSpec(type=ParamType.string(), description="Regular expression to search for"),
            "path": ParamSpec(
                type=ParamType.optional(ParamType.string()), required=False, default=".",
                description="File or directory to search",
            ),
            "include": ParamSpec(
                type=ParamType.optional(ParamType.string()), required=False,
                description="Filename glob restricting which files are searched (e.g. '*.py')",
            ),
        },
    ))
    registry.register(Capability(
        name="tree",
        description="Show the directory hierarchy of the project",
        execute=_tree,
        parameters={
            "path": ParamSpec(
                type=ParamType.optional(ParamType.string()), required=False, default=".",
                description="Directory to render",
            ),
            "max_depth": ParamSpec(
                type=ParamType.optional(ParamType.number()), required=False, default=3,
                description="Maximum depth to traverse (1-10)",
            ),
            "include_hidden": ParamSpec(
                type=ParamType.optional(ParamType.boolean()), required=False, default=False,
                description="Include hidden files and directories",
            ),
        },
    ))
    registry.register(Capability(
        name="cli",
        description="Execute a command-line command and return stdout, stderr and exit code",
        execute=_cli,
        parameters={
            "command": ParamSpec(type=ParamType.string(), description="Command to execute"),
            "args": ParamSpec(
                type=ParamType.optional(ParamType.array(ParamType.string())), required=False,
                default=[], description="Additional arguments appended to the command",
            ),
            "cwd": ParamSpec(
                type=ParamType.optional(ParamType.string()), required=False,
                description="Working directory for the command",
            ),
            "timeout": ParamSpec(
                type=ParamType.optional(ParamType.number()), required=False,
                default=settings.shell_timeout, description="Timeout in seconds",
            ),
        },
    ))
    logger.info("Registered built-in tools in workspace %s", workspace)
