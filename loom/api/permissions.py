"""Permission gate -- allow / deny / ask decisions for each tool call.

Resolution order for a call:
  1. always_deny_tools / always_allow_tools from settings
  2. the session's remembered decisions (keyed by Tool.permission_key)
  3. permission mode (bypass, plan, accept_edits)
  4. the tool's own check_permissions()
An "ask" becomes an interactive round trip over the session transport.
With no transport attached (background sub-agents) the call is allowed
and a warning is logged, rather than waiting on a reply that can never come.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loom.api.models import PermissionBehavior, PermissionDecision, Session
from loom.config import Settings
from loom.errors import ErrorKind
from loom.events import EventType
from loom.state import RuntimeState

if TYPE_CHECKING:
    from loom.api.tools import Tool, ToolContext

logger = logging.getLogger(__name__)


@dataclass
class PermissionReply:
    """The user's answer to a permission_request event."""

    approved: bool
    remember: bool = False


class PermissionGate:
    def __init__(self, settings: Settings, runtime: RuntimeState) -> None:
        self._settings = settings
        self._runtime = runtime

    async def check(
        self,
        tool: Tool,
        tool_input: dict[str, Any],
        context: ToolContext,
    ) -> PermissionDecision:
        """Return a final ALLOW or DENY decision for this call."""
        settings = self._settings
        session = context.session
        name = tool.name

        if name in settings.always_deny_tools:
            return PermissionDecision.deny(f"Tool {name} is denied by configuration")
        if name in settings.always_allow_tools:
            return PermissionDecision.allow()

        key = tool.permission_key(tool_input)
        cached = session.permission_cache.get(key)
        if cached == PermissionBehavior.ALLOW:
            return PermissionDecision.allow(reason="remembered for this session")
        if cached == PermissionBehavior.DENY:
            return PermissionDecision.deny(f"Permission for {name} was denied earlier in this session")

        mode = settings.permission_mode
        if mode == "bypass":
            return PermissionDecision.allow()
        if mode == "plan" and not tool.read_only:
            return PermissionDecision.deny(
                f"Plan mode is active: {name} may not run until the plan is approved"
            )

        decision = await tool.check_permissions(tool_input, context)
        if decision.behavior == PermissionBehavior.DENY:
            return PermissionDecision.deny(
                decision.reason or f"Permission denied for {name}",
                decision.error_kind or ErrorKind.PERMISSION_DENIED,
            )
        if decision.behavior == PermissionBehavior.ALLOW:
            return decision
        if mode == "accept_edits" and tool.edits_files:
            return PermissionDecision.allow(updated_input=decision.updated_input)
        return await self._ask(tool, tool_input, decision, session, key)

    async def _ask(
        self,
        tool: Tool,
        tool_input: dict[str, Any],
        decision: PermissionDecision,
        session: Session,
        key: str,
    ) -> PermissionDecision:
        effective_input = decision.updated_input if decision.updated_input is not None else tool_input
        if not session.transport.is_open:
            logger.warning(
                "No transport attached to session %s; auto-allowing %s",
                session.id,
                tool.name,
            )
            return PermissionDecision.allow(updated_input=decision.updated_input)

        request_id = self._runtime.next_id("perm")
        future = session.pending.create(request_id, "permission")
        timeout = self._settings.permission_timeout
        try:
            await session.emit(
                EventType.PERMISSION_REQUEST,
                request_id=request_id,
                tool_name=tool.name,
                input=effective_input,
                reason=decision.reason,
            )
            reply: PermissionReply | None = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Permission request %s for %s timed out", request_id, tool.name)
            return PermissionDecision.deny(
                f"Permission request for {tool.name} timed out after {timeout:g}s",
                ErrorKind.PERMISSION_TIMEOUT,
            )
        finally:
            session.pending.discard(request_id)

        if reply is None:
            return PermissionDecision.deny(f"Permission request for {tool.name} was cancelled")

        if reply.remember:
            session.permission_cache[key] = (
                PermissionBehavior.ALLOW if reply.approved else PermissionBehavior.DENY
            )
        if reply.approved:
            return PermissionDecision.allow(updated_input=decision.updated_input)
        return PermissionDecision.deny(f"User denied permission for {tool.name}")

    @staticmethod
    def respond(session: Session, request_id: str, approved: bool, remember: bool = False) -> bool:
        """Deliver the user's reply. False if no such request is pending."""
        return session.pending.resolve(
            request_id, PermissionReply(approved=approved, remember=remember), kind="permission"
        )
