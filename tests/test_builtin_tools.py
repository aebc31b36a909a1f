"""Tests for the built-in tools: bash, read_file, write_file, list_files."""

import sys
from pathlib import Path

import pytest

from loom.api.builtin_tools import (
    BashTool,
    ListFilesTool,
    ReadFileTool,
    WriteFileTool,
    _validate_path,
    dangerous_pattern,
    register_builtin_tools,
)
from loom.api.models import PermissionBehavior, ToolCallRequest
from loom.api.tools import ToolContext, ToolDispatcher
from loom.errors import ErrorKind
from tests.conftest import _make_settings, make_session


@pytest.fixture
def workspace(settings) -> Path:
    return Path(settings.workspace_dir)


@pytest.fixture
def context(settings, runtime) -> ToolContext:
    return ToolContext(session=make_session(settings), runtime=runtime, workspace_dir=settings.workspace_dir)


class TestValidatePath:
    def test_relative_path_resolves_inside(self, workspace):
        assert _validate_path("a/b.txt", str(workspace)) == (workspace / "a/b.txt").resolve()

    def test_escape_rejected(self, workspace):
        with pytest.raises(ValueError, match="outside workspace"):
            _validate_path("../etc/passwd", str(workspace))

    def test_absolute_outside_rejected(self, workspace):
        with pytest.raises(ValueError):
            _validate_path("/etc/passwd", str(workspace))


class TestBash:
    def test_dangerous_patterns(self):
        assert dangerous_pattern("rm -rf build")
        assert dangerous_pattern("ls && sudo reboot")
        assert dangerous_pattern("ls -la") is None
        assert dangerous_pattern("echo format") is None

    @pytest.mark.asyncio
    async def test_permission_asks_for_dangerous(self, context):
        tool = BashTool()
        assert (await tool.check_permissions({"command": "rm -rf x"}, context)).behavior == PermissionBehavior.ASK
        assert (await tool.check_permissions({"command": "ls"}, context)).behavior == PermissionBehavior.ALLOW
        assert tool.permission_key({"command": "rm  -rf x"}) == f"bash:{dangerous_pattern('rm -rf x')}:rm -rf x"

    def test_permission_key_distinguishes_arguments(self):
        tool = BashTool()
        narrow = tool.permission_key({"command": "rm -rf build"})

        assert tool.permission_key({"command": "rm -rf /"}) != narrow
        assert tool.permission_key({"command": "rm   -rf  build"}) == narrow
        assert tool.permission_key({"command": "git status"}) == "bash:git status"

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, context, workspace):
        result = await BashTool().execute({"command": "pwd"}, context)

        assert result.success
        assert Path(result.output.strip()).resolve() == workspace.resolve()
        assert result.data.tool == "bash"
        assert result.data.payload["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails(self, context):
        result = await BashTool().execute({"command": f"{sys.executable} -c 'import sys; sys.exit(3)'"}, context)

        assert not result.success
        assert result.error_kind == ErrorKind.TOOL_EXECUTION_FAILED
        assert "Exit code: 3" in result.error
        assert result.data.payload["exit_code"] == 3

    @pytest.mark.asyncio
    async def test_missing_command(self, context):
        result = await BashTool().execute({}, context)
        assert not result.success


class TestReadFile:
    @pytest.mark.asyncio
    async def test_reads_and_records(self, context, workspace, runtime):
        target = workspace / "notes.txt"
        target.write_text("one\ntwo\nthree\n")

        result = await ReadFileTool().execute({"path": "notes.txt"}, context)

        assert result.success
        assert result.output == "one\ntwo\nthree\n"
        assert result.data.payload["total_lines"] == 3
        assert runtime.read_tracker.was_read("s1", target.resolve())

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, context, workspace):
        (workspace / "notes.txt").write_text("one\ntwo\nthree\n")

        result = await ReadFileTool().execute({"path": "notes.txt", "offset": 1, "limit": 1}, context)

        assert result.output == "two\n"

    @pytest.mark.asyncio
    async def test_missing_file(self, context):
        result = await ReadFileTool().execute({"path": "missing.txt"}, context)
        assert not result.success
        assert "File not found" in result.error

    @pytest.mark.asyncio
    async def test_permission_normalizes_path(self, context, workspace):
        decision = await ReadFileTool().check_permissions({"path": "notes.txt"}, context)
        assert decision.behavior == PermissionBehavior.ALLOW
        assert decision.updated_input["path"] == str((workspace / "notes.txt").resolve())

    @pytest.mark.asyncio
    async def test_permission_denies_escape(self, context):
        decision = await ReadFileTool().check_permissions({"path": "../../secret"}, context)
        assert decision.behavior == PermissionBehavior.DENY


class TestWriteFile:
    @pytest.mark.asyncio
    async def test_creates_new_file(self, context, workspace):
        result = await WriteFileTool().execute({"path": "out/new.txt", "content": "hello"}, context)

        assert result.success
        assert (workspace / "out/new.txt").read_text() == "hello"
        assert result.data.payload["created"] is True

    @pytest.mark.asyncio
    async def test_refuses_unread_existing_file(self, context, workspace):
        (workspace / "existing.txt").write_text("original")

        result = await WriteFileTool().execute({"path": "existing.txt", "content": "new"}, context)

        assert not result.success
        assert "has not been read" in result.error
        assert (workspace / "existing.txt").read_text() == "original"

    @pytest.mark.asyncio
    async def test_overwrite_after_read(self, context, workspace):
        (workspace / "existing.txt").write_text("original")
        await ReadFileTool().execute({"path": "existing.txt"}, context)

        result = await WriteFileTool().execute({"path": "existing.txt", "content": "new"}, context)

        assert result.success
        assert result.data.payload["created"] is False
        assert (workspace / "existing.txt").read_text() == "new"

    @pytest.mark.asyncio
    async def test_refuses_stale_file(self, context, workspace, runtime):
        target = workspace / "existing.txt"
        target.write_text("original")
        await ReadFileTool().execute({"path": "existing.txt"}, context)
        # Simulate an external edit after the read
        recorded = runtime.read_tracker._reads["s1"]
        recorded[str(target.resolve())] -= 10

        result = await WriteFileTool().execute({"path": "existing.txt", "content": "new"}, context)

        assert not result.success
        assert "modified since it was read" in result.error

    @pytest.mark.asyncio
    async def test_permission_asks_with_normalized_path(self, context, workspace):
        tool = WriteFileTool()
        decision = await tool.check_permissions({"path": "a.txt", "content": "abc"}, context)

        assert decision.behavior == PermissionBehavior.ASK
        assert decision.updated_input["path"] == str((workspace / "a.txt").resolve())
        assert "Write 3 chars" in decision.reason
        assert tool.permission_key({"path": "a.txt"}) == "write_file:a.txt"


class TestListFiles:
    @pytest.mark.asyncio
    async def test_lists_with_pattern(self, context, workspace):
        (workspace / "a.py").write_text("")
        (workspace / "b.txt").write_text("")
        (workspace / "pkg").mkdir()

        result = await ListFilesTool().execute({"pattern": "*"}, context)
        only_py = await ListFilesTool().execute({"pattern": "*.py"}, context)

        assert result.output.splitlines() == ["a.py", "b.txt", "pkg/"]
        assert only_py.output == "a.py"
        assert result.data.payload["count"] == 3

    @pytest.mark.asyncio
    async def test_no_matches(self, context):
        result = await ListFilesTool().execute({"pattern": "*.nothing"}, context)
        assert result.output == "(no matches)"


class TestRegistration:
    @pytest.mark.asyncio
    async def test_write_without_transport_is_auto_allowed(self, tmp_path, runtime):
        settings = _make_settings(tmp_path)
        Path(settings.workspace_dir).mkdir()
        dispatcher = ToolDispatcher(settings, runtime)
        register_builtin_tools(dispatcher)

        result = await dispatcher.execute_tool(
            ToolCallRequest(id="t1", name="write_file", input={"path": "x.txt", "content": "hi"}),
            make_session(settings),
        )

        assert dispatcher.tool_names == ["bash", "read_file", "write_file", "list_files"]
        assert result.success
        assert (Path(settings.workspace_dir) / "x.txt").read_text() == "hi"
