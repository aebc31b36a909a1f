"""Built-in tools: bash, read_file, write_file, list_files.

All file paths are confined to the workspace directory. Permission
behaviour:
  - read_file / list_files are read-only and always allowed
  - write_file asks (unless accept_edits/bypass mode or a remembered decision)
  - bash asks only for commands that match a dangerous pattern
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any

from loom.api.models import PermissionDecision, ToolData, ToolResult
from loom.api.tools import Tool, ToolContext, ToolDispatcher
from loom.errors import ErrorKind

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 600  # seconds
_MAX_OUTPUT_CHARS = 512 * 1024  # 512KB per stream
_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
_MAX_LIST_ENTRIES = 1000

_DANGEROUS_BASH_PATTERNS = [
    re.compile(r"(^|[;&|]\s*)rm\s"),
    re.compile(r"\bsudo\b"),
    re.compile(r"\bchmod\b"),
    re.compile(r"\bchown\b"),
    re.compile(r"\bmv\s+\S+\s+/"),
    re.compile(r"(^|[;&|]\s*)dd\s"),
    re.compile(r"\bmkfs"),
    re.compile(r"(^|[;&|]\s*)format\s"),
    re.compile(r">\s*/dev/"),
]


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve a path and check it stays under workspace_dir.

    Raises ValueError if the path escapes the workspace.
    """
    workspace = Path(workspace_dir).expanduser().resolve()
    candidate = Path(path_str).expanduser()
    target = candidate.resolve() if candidate.is_absolute() else (workspace / candidate).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def dangerous_pattern(command: str) -> str | None:
    """Return the first dangerous pattern the command matches, if any."""
    for pattern in _DANGEROUS_BASH_PATTERNS:
        if pattern.search(command):
            return pattern.pattern
    return None


# ---------------------------------------------------------------------------
# bash
# ---------------------------------------------------------------------------


class BashTool(Tool):
    name = "bash"
    description = "Execute a shell command in the workspace directory"
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to execute"},
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (default 120, max 600)",
                "default": 120,
                "minimum": 1,
                "maximum": _MAX_BASH_TIMEOUT,
            },
        },
        "required": ["command"],
    }

    async def check_permissions(self, tool_input: dict[str, Any], context: ToolContext) -> PermissionDecision:
        command = str(tool_input.get("command", ""))
        pattern = dangerous_pattern(command)
        if pattern:
            return PermissionDecision.ask(reason=f"Command matches a potentially destructive pattern: {command}")
        return PermissionDecision.allow()

    def permission_key(self, tool_input: dict[str, Any]) -> str:
        command = " ".join(str(tool_input.get("command", "")).split())
        pattern = dangerous_pattern(command)
        if pattern:
            return f"bash:{pattern}:{command}"
        return f"bash:{command}"

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        command = tool_input.get("command")
        if not command:
            return ToolResult.fail("Missing required parameter: command")
        effective_timeout = max(1, min(int(tool_input.get("timeout", 120)), _MAX_BASH_TIMEOUT))

        workspace = Path(context.workspace_dir).expanduser()
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
            return ToolResult.fail(f"Command timed out after {effective_timeout}s.\nCommand: {command}")
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")
        if len(stdout_text) > _MAX_OUTPUT_CHARS:
            stdout_text = stdout_text[:_MAX_OUTPUT_CHARS] + "\n... [output truncated at 512KB]"
        if len(stderr_text) > _MAX_OUTPUT_CHARS:
            stderr_text = stderr_text[:_MAX_OUTPUT_CHARS] + "\n... [stderr truncated at 512KB]"

        parts = []
        if stdout_text:
            parts.append(stdout_text)
        if stderr_text:
            parts.append(f"STDERR:\n{stderr_text}")
        if proc.returncode != 0:
            parts.append(f"Exit code: {proc.returncode}")
        output = "\n".join(parts) if parts else "(no output)"

        data = ToolData("bash", {"exit_code": proc.returncode, "command": command})
        if proc.returncode != 0:
            return ToolResult(
                success=False,
                output=output,
                error=output,
                error_kind=ErrorKind.TOOL_EXECUTION_FAILED,
                data=data,
            )
        return ToolResult.ok(output, data=data)


# ---------------------------------------------------------------------------
# read_file
# ---------------------------------------------------------------------------


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a file from the workspace directory"
    read_only = True
    input_schema: dict[str, Any] = {
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

    async def check_permissions(self, tool_input: dict[str, Any], context: ToolContext) -> PermissionDecision:
        try:
            target = _validate_path(str(tool_input.get("path", "")), context.workspace_dir)
        except ValueError as e:
            return PermissionDecision.deny(str(e))
        return PermissionDecision.allow(updated_input={**tool_input, "path": str(target)})

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = str(tool_input.get("path", ""))
        offset = int(tool_input.get("offset", 0))
        limit = int(tool_input.get("limit", 0))
        try:
            target = _validate_path(path, context.workspace_dir)
        except ValueError as e:
            return ToolResult.fail(str(e))

        if not target.exists():
            return ToolResult.fail(f"File not found: {path}")
        if not target.is_file():
            return ToolResult.fail(f"Not a file: {path}")

        file_size = target.stat().st_size
        if file_size > _MAX_FILE_SIZE:
            return ToolResult.fail(
                f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
                f"Use offset/limit to read portions."
            )

        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        total_lines = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        if offset > 0 or limit > 0:
            lines = content.splitlines(keepends=True)
            if offset > 0:
                lines = lines[offset:]
            if limit > 0:
                lines = lines[:limit]
            content = "".join(lines)

        context.runtime.read_tracker.record(context.session.id, target)
        return ToolResult.ok(
            content if content else "(empty file)",
            data=ToolData("read_file", {"path": str(target), "total_lines": total_lines}),
        )


# ---------------------------------------------------------------------------
# write_file
# ---------------------------------------------------------------------------


class WriteFileTool(Tool):
    name = "write_file"
    description = (
        "Write content to a file in the workspace directory. "
        "Existing files must be read with read_file first."
    )
    edits_files = True
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
            "content": {"type": "string", "description": "Content to write to the file"},
        },
        "required": ["path", "content"],
    }

    async def check_permissions(self, tool_input: dict[str, Any], context: ToolContext) -> PermissionDecision:
        try:
            target = _validate_path(str(tool_input.get("path", "")), context.workspace_dir)
        except ValueError as e:
            return PermissionDecision.deny(str(e))
        size = len(str(tool_input.get("content", "")))
        return PermissionDecision.ask(
            reason=f"Write {size:,} chars to {target}",
            updated_input={**tool_input, "path": str(target)},
        )

    def permission_key(self, tool_input: dict[str, Any]) -> str:
        return f"write_file:{tool_input.get('path', '')}"

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = str(tool_input.get("path", ""))
        content = tool_input.get("content")
        if content is None:
            return ToolResult.fail("Missing required parameter: content")
        try:
            target = _validate_path(path, context.workspace_dir)
        except ValueError as e:
            return ToolResult.fail(str(e))

        tracker = context.runtime.read_tracker
        session_id = context.session.id
        existed = target.exists()
        if existed:
            if not tracker.was_read(session_id, target):
                return ToolResult.fail(
                    f"File has not been read yet: {path}. Read it first before writing to it."
                )
            if tracker.is_stale(session_id, target):
                return ToolResult.fail(
                    f"File has been modified since it was read: {path}. Read it again before writing."
                )

        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        tracker.record(session_id, target)

        return ToolResult.ok(
            f"File written successfully: {target}\nSize: {len(content):,} bytes",
            data=ToolData("write_file", {"path": str(target), "bytes": len(content), "created": not existed}),
        )


# ---------------------------------------------------------------------------
# list_files
# ---------------------------------------------------------------------------


class ListFilesTool(Tool):
    name = "list_files"
    description = "List files in a workspace directory, optionally filtered by a glob pattern"
    read_only = True
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory to list (default: workspace root)", "default": "."},
            "pattern": {"type": "string", "description": "Glob pattern, e.g. '*.py' or '**/*.md'", "default": "*"},
        },
    }

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = str(tool_input.get("path") or ".")
        pattern = str(tool_input.get("pattern") or "*")
        try:
            directory = _validate_path(path, context.workspace_dir)
        except ValueError as e:
            return ToolResult.fail(str(e))
        if not directory.is_dir():
            return ToolResult.fail(f"Not a directory: {path}")

        entries = await asyncio.to_thread(lambda: sorted(directory.glob(pattern)))
        truncated = len(entries) > _MAX_LIST_ENTRIES
        lines = [
            f"{entry.relative_to(directory)}{'/' if entry.is_dir() else ''}"
            for entry in entries[:_MAX_LIST_ENTRIES]
        ]
        if truncated:
            lines.append(f"... ({len(entries) - _MAX_LIST_ENTRIES} more entries)")
        return ToolResult.ok(
            "\n".join(lines) if lines else "(no matches)",
            data=ToolData("list_files", {"path": str(directory), "count": len(entries)}),
        )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher) -> None:
    """Register bash, read_file, write_file and list_files with the dispatcher."""
    for tool in (BashTool(), ReadFileTool(), WriteFileTool(), ListFilesTool()):
        dispatcher.register(tool)
