"""Tool contract and dispatcher.

Provides:
- Tool: base class every concrete tool implements
- ToolContext: what a tool sees of the runtime while it executes
- ToolDispatcher: registry plus execute_tool(), which wraps each call in
  the permission gate and the hook dispatcher and normalizes the result

Orchestration tools (sub-agent spawn, interactive questions) are not
Tool subclasses: they are registered as interceptors and receive the
Session directly.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, ClassVar

from loom.api.hooks import HookDispatcher
from loom.api.models import (
    PermissionBehavior,
    PermissionDecision,
    Session,
    ToolCallRequest,
    ToolResult,
)
from loom.api.permissions import PermissionGate
from loom.config import Settings
from loom.errors import ErrorKind
from loom.state import RuntimeState

logger = logging.getLogger(__name__)

InterceptHandler = Callable[[dict[str, Any], Session], Awaitable[ToolResult]]


# ---------------------------------------------------------------------------
# Tool contract
# ---------------------------------------------------------------------------


@dataclass
class ToolContext:
    session: Session
    runtime: RuntimeState
    workspace_dir: str


class Tool(ABC):
    """A tool the model can call.

    Subclasses set name/description/input_schema and implement execute().
    check_permissions() defaults to allow; override it to ask or deny, or
    to rewrite the input (e.g. normalize a path) before execution.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    input_schema: ClassVar[dict[str, Any]]
    read_only: ClassVar[bool] = False
    edits_files: ClassVar[bool] = False

    async def check_permissions(
        self, tool_input: dict[str, Any], context: ToolContext
    ) -> PermissionDecision:
        return PermissionDecision.allow()

    @abstractmethod
    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult: ...

    def permission_key(self, tool_input: dict[str, Any]) -> str:
        """Fingerprint used to remember a decision for the rest of the session.

        Scoped to the exact input. Tools with a coarser natural scope
        override this.
        """
        return f"{self.name}:{json.dumps(tool_input, sort_keys=True, default=str)}"

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tools and executes tool calls for the Conversation Loop.

    execute_tool() never raises for expected failures: unknown tool,
    disabled tool, denial, hook veto and execution errors all come back
    as ToolResult(success=False) with an ErrorKind.
    """

    def __init__(
        self,
        settings: Settings,
        runtime: RuntimeState,
        gate: PermissionGate | None = None,
        hooks: HookDispatcher | None = None,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self.gate = gate or PermissionGate(settings, runtime)
        self.hooks = hooks or HookDispatcher()
        self._tools: dict[str, Tool] = {}
        self._interceptors: dict[str, InterceptHandler] = {}
        self._intercept_schemas: dict[str, dict[str, Any]] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool instance under its name."""
        self._tools[tool.name] = tool

    def register_interceptor(
        self, name: str, handler: InterceptHandler, schema: dict[str, Any]
    ) -> None:
        """Register an orchestration tool handled outside the Tool contract."""
        self._interceptors[name] = handler
        self._intercept_schemas[name] = schema

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def tool_names(self) -> list[str]:
        return [*self._tools, *self._interceptors]

    def is_enabled(self, name: str, session: Session) -> bool:
        if name in self._settings.disabled_tools:
            return False
        return session.tool_filter.permits(name)

    def tool_definitions(self, session: Session) -> list[dict[str, Any]]:
        """Tool definitions in Anthropic API format, filtered for the session."""
        definitions = [
            tool.definition()
            for name, tool in self._tools.items()
            if self.is_enabled(name, session)
        ]
        definitions.extend(
            {
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": schema,
            }
            for name, schema in self._intercept_schemas.items()
            if self.is_enabled(name, session)
        )
        return definitions

    async def execute_tool(self, request: ToolCallRequest, session: Session) -> ToolResult:
        """Run one tool call through permissions, hooks and execution."""
        name = request.name
        tool = self._tools.get(name)
        interceptor = self._interceptors.get(name)

        if tool is None and interceptor is None:
            return ToolResult.fail(f"Unknown tool: {name}", ErrorKind.UNKNOWN_TOOL)
        if not self.is_enabled(name, session):
            return ToolResult.fail(
                f"Tool {name} is disabled for this session", ErrorKind.TOOL_DISABLED
            )

        tool_input = request.input
        context = ToolContext(
            session=session,
            runtime=self._runtime,
            workspace_dir=self._settings.workspace_dir,
        )

        if tool is not None:
            decision = await self.gate.check(tool, tool_input, context)
            if decision.behavior != PermissionBehavior.ALLOW:
                logger.info("Tool %s denied: %s", name, decision.reason)
                return ToolResult.fail(
                    decision.reason or f"Permission denied for {name}",
                    decision.error_kind or ErrorKind.PERMISSION_DENIED,
                )
            if decision.updated_input is not None:
                tool_input = decision.updated_input

        outcome = await self.hooks.run_pre(name, tool_input, session.id)
        if not outcome.allowed:
            return ToolResult.fail(outcome.message or f"PreToolUse hook blocked {name}", ErrorKind.HOOK_REJECTED)

        try:
            if interceptor is not None:
                result = await interceptor(tool_input, session)
            else:
                result = await tool.execute(tool_input, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            result = ToolResult.fail(f"{type(e).__name__}: {e}")

        result = self._cap_output(result)

        if result.success:
            await self.hooks.run_post(name, tool_input, result, session.id)
        else:
            await self.hooks.run_failure(name, tool_input, result, session.id)
        return result

    def _cap_output(self, result: ToolResult) -> ToolResult:
        """Hard cap on raw tool text, applied to error text as well as output."""
        limit = self._settings.tool_output_max_chars
        changes: dict[str, str] = {}
        if len(result.output) > limit:
            logger.warning("Tool output truncated from %d to %d chars", len(result.output), limit)
            changes["output"] = result.output[:limit] + "\n... (output truncated)"
        if result.error is not None and len(result.error) > limit:
            logger.warning("Tool error truncated from %d to %d chars", len(result.error), limit)
            changes["error"] = result.error[:limit] + "\n... (output truncated)"
        return replace(result, **changes) if changes else result
