"""Pre/post tool-use hooks with error isolation.

Hooks are plain async callables registered against a tool-name matcher
("*" or an fnmatch glob such as "write_*"). A pre-call hook may veto the
call by returning HookOutcome(allowed=False). A hook that raises is logged
and treated as if it had not run, so a broken hook never blocks or aborts
a tool call.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loom.api.models import ToolResult

logger = logging.getLogger(__name__)


@dataclass
class HookOutcome:
    allowed: bool = True
    message: str | None = None


PreToolHook = Callable[[str, dict[str, Any], str], Awaitable[HookOutcome | None]]
PostToolHook = Callable[[str, dict[str, Any], ToolResult, str], Awaitable[None]]


def _hook_name(hook: Callable[..., Any]) -> str:
    return getattr(hook, "__qualname__", repr(hook))


class HookDispatcher:
    """Runs registered hooks around tool execution."""

    def __init__(self) -> None:
        self._pre: list[tuple[str, PreToolHook]] = []
        self._post: list[tuple[str, PostToolHook]] = []
        self._failure: list[tuple[str, PostToolHook]] = []

    def register_pre(self, hook: PreToolHook, matcher: str = "*") -> None:
        self._pre.append((matcher, hook))

    def register_post(self, hook: PostToolHook, matcher: str = "*") -> None:
        self._post.append((matcher, hook))

    def register_failure(self, hook: PostToolHook, matcher: str = "*") -> None:
        self._failure.append((matcher, hook))

    @staticmethod
    def _matching(hooks: list[tuple[str, Any]], tool_name: str) -> list[Any]:
        return [h for matcher, h in hooks if matcher == "*" or fnmatch.fnmatchcase(tool_name, matcher)]

    async def run_pre(self, tool_name: str, tool_input: dict[str, Any], session_id: str) -> HookOutcome:
        """Run pre-call hooks in registration order. First veto wins."""
        for hook in self._matching(self._pre, tool_name):
            try:
                outcome = await hook(tool_name, tool_input, session_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Pre-tool hook %s failed for %s", _hook_name(hook), tool_name)
                continue
            if outcome is not None and not outcome.allowed:
                return HookOutcome(
                    allowed=False,
                    message=outcome.message or f"PreToolUse hook blocked {tool_name}",
                )
        return HookOutcome()

    async def run_post(
        self, tool_name: str, tool_input: dict[str, Any], result: ToolResult, session_id: str
    ) -> None:
        await self._run_all(self._post, tool_name, tool_input, result, session_id)

    async def run_failure(
        self, tool_name: str, tool_input: dict[str, Any], result: ToolResult, session_id: str
    ) -> None:
        await self._run_all(self._failure, tool_name, tool_input, result, session_id)

    async def _run_all(
        self,
        hooks: list[tuple[str, PostToolHook]],
        tool_name: str,
        tool_input: dict[str, Any],
        result: ToolResult,
        session_id: str,
    ) -> None:
        matching = self._matching(hooks, tool_name)
        if not matching:
            return
        await asyncio.gather(
            *(self._safe_run(h, tool_name, tool_input, result, session_id) for h in matching)
        )

    async def _safe_run(
        self,
        hook: PostToolHook,
        tool_name: str,
        tool_input: dict[str, Any],
        result: ToolResult,
        session_id: str,
    ) -> None:
        try:
            await hook(tool_name, tool_input, result, session_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Post-tool hook %s failed for %s", _hook_name(hook), tool_name)
