"""Built-in tools: bash, read_file, write_file.

All three are confined to the configured workspace directory.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from palaver.config import Settings
from palaver.core.abort import AbortSignal
from palaver.tools.base import RiskClass, ToolHandler, ToolKind, ToolResult
from palaver.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve path_str inside workspace_dir.

    Raises ValueError if the path escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    path = Path(path_str)
    target = path.resolve() if path.is_absolute() else (workspace / path).resolve()
    if not target.is_relative_to(workspace):
        raise ValueError(f"Path '{path_str}' is outside workspace '{workspace_dir}'")
    return target


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(command: str, timeout: int = 30, *, workspace_dir: str) -> ToolResult:
    """Run a shell command in the workspace; the process is killed on cancellation."""
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))
    workspace = Path(workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ToolResult.fail(
            f"Command timed out after {effective_timeout}s: {command}", "timeout"
        )
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")
    return ToolResult.ok(
        {
            "stdout": stdout_text,
            "stderr": stderr_text,
            "exit_code": proc.returncode,
        }
    )


async def read_file_tool(
    path: str, offset: int = 0, limit: int = 0, *, workspace_dir: str
) -> ToolResult:
    try:
        target = _validate_path(path, workspace_dir)
    except ValueError as e:
        return ToolResult.fail(str(e), "path_not_in_workspace")

    if not target.exists():
        return ToolResult.fail(f"File not found: {path}", "file_not_found")
    if not target.is_file():
        return ToolResult.fail(f"Not a file: {path}", "target_is_directory")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        return ToolResult.fail(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions.",
            "file_too_large",
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)
    return ToolResult.ok(content)


async def write_file_tool(path: str, content: str, *, workspace_dir: str) -> ToolResult:
    try:
        target = _validate_path(path, workspace_dir)
    except ValueError as e:
        return ToolResult.fail(str(e), "path_not_in_workspace")

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    return ToolResult.ok(f"File written: {target} ({len(content):,} bytes)")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": 300,
        },
    },
    "required": ["command"],
}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "offset": {
            "type": "integer",
            "description": "Line offset to start reading from (0-indexed)",
            "default": 0,
            "minimum": 0,
        },
        "limit": {
            "type": "integer",
            "description": "Number of lines to read (0 = all)",
            "default": 0,
            "minimum": 0,
        },
    },
    "required": ["path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["path", "content"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: ToolRegistry, settings: Settings) -> None:
    """Register bash, read_file and write_file bound to settings.workspace_dir."""
    workspace = settings.workspace_dir

    async def _bash(args: dict[str, Any], signal: AbortSignal | None) -> ToolResult:
        return await bash_tool(args["command"], int(args.get("timeout", 30)), workspace_dir=workspace)

    async def _read_file(args: dict[str, Any], signal: AbortSignal | None) -> ToolResult:
        return await read_file_tool(
            args["path"],
            int(args.get("offset", 0)),
            int(args.get("limit", 0)),
            workspace_dir=workspace,
        )

    async def _write_file(args: dict[str, Any], signal: AbortSignal | None) -> ToolResult:
        return await write_file_tool(args["path"], args["content"], workspace_dir=workspace)

    registry.register(
        ToolHandler(
            name="bash",
            description="Execute a shell command in the workspace directory",
            schema=_BASH_SCHEMA,
            execute=_bash,
            kind=ToolKind.EXECUTE,
            risk=RiskClass.DESTRUCTIVE,
        )
    )
    registry.register(
        ToolHandler(
            name="read_file",
            description="Read a file from the workspace directory",
            schema=_READ_FILE_SCHEMA,
            execute=_read_file,
            kind=ToolKind.READ,
            risk=RiskClass.NONE,
        )
    )
    registry.register(
        ToolHandler(
            name="write_file",
            description="Write content to a file in the workspace directory",
            schema=_WRITE_FILE_SCHEMA,
            execute=_write_file,
            kind=ToolKind.EDIT,
            risk=RiskClass.EDIT,
        )
    )
