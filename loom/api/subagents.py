"""Sub-agents -- nested conversation loops run as supervised child tasks.

spawn_agent starts a child Session on its own asyncio.Task. The child's
CancelToken is derived from the parent's, so cancelling the parent stops
every child it spawned. The parent observes completion through the task
handle, either immediately (foreground, bounded by subagent_timeout) or
later through agent_output (run_in_background).

Children have no transport: permission "ask" decisions auto-allow with a
warning, and ask_user is disabled for them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loom.api.models import Message, Session, ToolData, ToolFilter, ToolResult, TurnResult
from loom.api.tools import ToolDispatcher
from loom.config import Settings
from loom.errors import ErrorKind
from loom.state import RuntimeState

if TYPE_CHECKING:
    from loom.api.runner import ConversationLoop

logger = logging.getLogger(__name__)

SPAWN_AGENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Launch a sub-agent that works on a self-contained task with the same tools "
        "and returns its final answer. Use for multi-step research or changes that "
        "do not need the user's input."
    ),
    "properties": {
        "prompt": {"type": "string", "description": "Complete task description for the sub-agent"},
        "description": {"type": "string", "description": "Short (3-5 word) label for the task"},
        "fork_history": {
            "type": "boolean",
            "description": "Start the sub-agent with a copy of this conversation's history",
            "default": False,
        },
        "run_in_background": {
            "type": "boolean",
            "description": "Return immediately; collect the result later with agent_output",
            "default": False,
        },
        "model": {"type": "string", "description": "Model override for the sub-agent"},
    },
    "required": ["prompt"],
}

AGENT_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Wait for a background sub-agent and return its result.",
    "properties": {
        "agent_id": {"type": "string", "description": "Id returned by spawn_agent"},
        "timeout": {"type": "number", "description": "Seconds to wait (default 60)", "default": 60},
    },
    "required": ["agent_id"],
}

ORCHESTRATION_TOOLS = frozenset({"spawn_agent", "agent_output"})


@dataclass
class SubAgentHandle:
    id: str
    parent_id: str
    description: str
    session: Session
    task: asyncio.Task[TurnResult]


class SubAgentSupervisor:
    """Owns every running child task and their handles."""

    def __init__(self, settings: Settings, runtime: RuntimeState) -> None:
        self._settings = settings
        self._runtime = runtime
        self._loop: ConversationLoop | None = None
        self._agents: dict[str, SubAgentHandle] = {}

    def bind(self, loop: ConversationLoop) -> None:
        """Attach the loop used to run children (created after the dispatcher)."""
        self._loop = loop

    def register(self, dispatcher: ToolDispatcher) -> None:
        dispatcher.register_interceptor("spawn_agent", self.spawn_agent, SPAWN_AGENT_SCHEMA)
        dispatcher.register_interceptor("agent_output", self.agent_output, AGENT_OUTPUT_SCHEMA)

    @property
    def running(self) -> list[str]:
        return [agent_id for agent_id, h in self._agents.items() if not h.task.done()]

    # ------------------------------------------------------------------
    # Tool handlers
    # ------------------------------------------------------------------

    async def spawn_agent(self, tool_input: dict[str, Any], parent: Session) -> ToolResult:
        loop = self._loop
        if loop is None:
            raise RuntimeError("SubAgentSupervisor.bind() was not called")
        prompt = str(tool_input.get("prompt") or "").strip()
        if not prompt:
            return ToolResult.fail("spawn_agent requires a non-empty prompt")
        if parent.depth >= self._settings.subagent_max_depth:
            return ToolResult.fail(
                f"Sub-agent nesting limit reached (max depth {self._settings.subagent_max_depth})",
                ErrorKind.TOOL_DISABLED,
            )

        child = self._make_child(parent, tool_input)
        description = str(tool_input.get("description") or prompt[:60])
        task = asyncio.create_task(self._run_child(loop, child, prompt), name=f"subagent-{child.id}")
        handle = SubAgentHandle(
            id=child.id,
            parent_id=parent.id,
            description=description,
            session=child,
            task=task,
        )
        self._agents[child.id] = handle
        logger.info("Spawned sub-agent %s for session %s: %s", child.id, parent.id, description)

        if tool_input.get("run_in_background"):
            return ToolResult.ok(
                f"Sub-agent {child.id} started in the background. "
                f"Use agent_output with agent_id={child.id} to collect its result.",
                data=ToolData("spawn_agent", {"agent_id": child.id, "background": True}),
            )
        return await self._collect(handle, self._settings.subagent_timeout, cancel_on_timeout=True)

    async def agent_output(self, tool_input: dict[str, Any], parent: Session) -> ToolResult:
        agent_id = str(tool_input.get("agent_id") or "")
        handle = self._agents.get(agent_id)
        if handle is None or handle.parent_id != parent.id:
            return ToolResult.fail(f"No sub-agent with id {agent_id}")
        timeout = float(tool_input.get("timeout") or 60)
        return await self._collect(handle, timeout, cancel_on_timeout=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _make_child(self, parent: Session, tool_input: dict[str, Any]) -> Session:
        depth = parent.depth + 1
        disabled = set(parent.tool_filter.disabled) | {"ask_user"}
        if depth >= self._settings.subagent_max_depth:
            disabled |= ORCHESTRATION_TOOLS
        messages = self._fork(parent) if tool_input.get("fork_history") else []
        return Session(
            id=self._runtime.next_id(f"{parent.id}:agent"),
            model=str(tool_input.get("model") or parent.model),
            messages=messages,
            system_prompt=parent.system_prompt,
            tool_filter=ToolFilter(allowed=parent.tool_filter.allowed, disabled=disabled),
            cancel_token=parent.cancel_token.child(),
            depth=depth,
        )

    @staticmethod
    def _fork(parent: Session) -> list[Message]:
        """Copy of the parent history without its in-flight assistant message."""
        messages = list(parent.messages)
        if messages and messages[-1].role == "assistant" and messages[-1].tool_uses():
            messages.pop()
        return messages

    @staticmethod
    async def _run_child(loop: ConversationLoop, child: Session, prompt: str) -> TurnResult:
        child.processing = True
        try:
            return await loop.run(child, prompt)
        finally:
            child.processing = False

    async def _collect(self, handle: SubAgentHandle, timeout: float, cancel_on_timeout: bool) -> ToolResult:
        try:
            result = await asyncio.wait_for(asyncio.shield(handle.task), timeout=timeout)
        except asyncio.TimeoutError:
            if not cancel_on_timeout:
                return ToolResult.ok(
                    f"Sub-agent {handle.id} is still running.",
                    data=ToolData("agent_output", {"agent_id": handle.id, "status": "running"}),
                )
            logger.warning("Sub-agent %s timed out after %ss; cancelling", handle.id, timeout)
            await self._stop(handle)
            return ToolResult.fail(f"Sub-agent {handle.id} timed out after {timeout:g}s")
        except asyncio.CancelledError:
            await self._stop(handle)
            raise
        except Exception as e:
            self._agents.pop(handle.id, None)
            logger.exception("Sub-agent %s crashed", handle.id)
            return ToolResult.fail(f"Sub-agent {handle.id} failed: {e}")

        self._agents.pop(handle.id, None)
        payload = {
            "agent_id": handle.id,
            "stop_reason": result.stop_reason,
            "usage": result.usage.to_dict(),
        }
        if result.error:
            return ToolResult(
                success=False,
                error=f"Sub-agent {handle.id} failed: {result.error}",
                error_kind=ErrorKind.TOOL_EXECUTION_FAILED,
                data=ToolData("spawn_agent", payload),
            )
        return ToolResult.ok(
            result.text or "(sub-agent finished without a text answer)",
            data=ToolData("spawn_agent", payload),
        )

    async def _stop(self, handle: SubAgentHandle) -> None:
        handle.session.cancel_token.cancel()
        handle.session.pending.cancel_all()
        handle.task.cancel()
        self._agents.pop(handle.id, None)
        try:
            await handle.task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.warning("Sub-agent %s raised while stopping", handle.id, exc_info=True)

    def _descendants(self, parent_id: str) -> list[SubAgentHandle]:
        found: list[SubAgentHandle] = []
        frontier = {parent_id}
        while frontier:
            level = [h for h in self._agents.values() if h.parent_id in frontier]
            found.extend(level)
            frontier = {h.id for h in level}
        return found

    async def release(self, parent_id: str, *, stop_running: bool = False) -> int:
        """Drop the handles a session's children left behind.

        Finished children whose result was never collected are always
        pruned. Running children are stopped only with stop_running, which
        is how a deleted session takes its whole sub-agent tree with it.
        Returns the number of handles removed.
        """
        removed = 0
        for handle in self._descendants(parent_id):
            if handle.id not in self._agents:
                continue
            if handle.task.done():
                self._agents.pop(handle.id, None)
                if not handle.task.cancelled() and handle.task.exception() is not None:
                    logger.warning("Uncollected sub-agent %s had failed: %s", handle.id, handle.task.exception())
                removed += 1
            elif stop_running:
                await self._stop(handle)
                removed += 1
        if removed:
            logger.info("Released %d sub-agent handles of %s", removed, parent_id)
        return removed

    async def shutdown(self) -> None:
        for handle in list(self._agents.values()):
            await self._stop(handle)
