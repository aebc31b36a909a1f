"""Conversation loop -- executes one user turn against the provider.

run(session, user_input) drives a small state machine:

    streaming -> tool dispatch -> streaming ... -> done
        |             ^
        +-> retry-wait / compacting

Each iteration scrubs stale tool output, compacts if the context budget
is exceeded, streams one model response, and (when the model asked for
tools) executes the calls sequentially and feeds the results back.
Provider failures go through the RetryPolicy, which never retries once
output has reached the user.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from datetime import UTC, datetime
from typing import Any, Protocol

from loom.api.compaction import ConversationCompactor
from loom.api.formatting import format_tool_result, scrub_persisted_outputs
from loom.api.models import (
    ContentBlock,
    Message,
    RetryState,
    Session,
    TextBlock,
    ThinkingBlock,
    ToolCallRequest,
    ToolResultBlock,
    ToolUseBlock,
    TurnResult,
    Usage,
)
from loom.api.provider import Provider, StreamOptions
from loom.api.retry import RetryPolicy
from loom.api.tools import ToolDispatcher
from loom.config import Settings
from loom.errors import ErrorKind, ProviderError
from loom.events import EventType

logger = logging.getLogger(__name__)

INTERRUPTED_TOOL_RESULT = "Error: Tool call was interrupted before a result was recorded"
CANCELLED_TOOL_RESULT = "Error: Tool call was cancelled before it ran"


# ------------------------------------------------------------------
# System prompt
# ------------------------------------------------------------------


class PromptBuilder(Protocol):
    async def build(self, session: Session) -> str: ...


class DefaultPromptBuilder:
    """Session (or configured) system prompt plus workspace and date context."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def build(self, session: Session) -> str:
        parts = [
            session.system_prompt or self._settings.system_prompt,
            f"Working directory: {self._settings.workspace_dir}",
            f"Today's date: {datetime.now(UTC).date().isoformat()}",
        ]
        return "\n\n".join(parts)


# ------------------------------------------------------------------
# History repair
# ------------------------------------------------------------------


def repair_tool_pairs(messages: list[Message]) -> list[Message]:
    """Give every tool_use a matching tool_result in the next user message.

    A turn interrupted mid-dispatch (process crash, dropped connection)
    can leave tool_use blocks without results, which the provider
    rejects. Missing results are filled in as errors. Returns a new
    list; the input is not mutated.
    """
    repaired: list[Message] = []
    changed = False
    index = 0
    while index < len(messages):
        message = messages[index]
        repaired.append(message)
        index += 1
        if message.role != "assistant":
            continue
        tool_ids = [b.id for b in message.tool_uses()]
        if not tool_ids:
            continue

        following = messages[index] if index < len(messages) else None
        present = set()
        if following is not None and following.role == "user":
            present = {b.tool_use_id for b in following.tool_results()}
        missing = [
            ToolResultBlock(tool_use_id=tid, content=INTERRUPTED_TOOL_RESULT, success=False)
            for tid in tool_ids
            if tid not in present
        ]
        if not missing:
            continue

        changed = True
        if following is not None and following.role == "user":
            repaired.append(Message.user([*missing, *following.blocks]))
            index += 1
        else:
            repaired.append(Message.user(missing))

    if changed:
        logger.warning("Repaired orphaned tool_use blocks in history")
    return repaired if changed else list(messages)


# ------------------------------------------------------------------
# Stream assembly
# ------------------------------------------------------------------


class _SegmentAssembler:
    """Reassembles one streamed model response into content blocks."""

    def __init__(self) -> None:
        self.content: list[ContentBlock] = []
        self.stop_reason: str | None = None
        self._text: list[str] = []
        self._thinking: list[str] = []
        self._signature = ""
        self._tool: dict[str, Any] | None = None

    @property
    def in_thinking(self) -> bool:
        return bool(self._thinking)

    @property
    def current_tool_id(self) -> str | None:
        return self._tool["id"] if self._tool else None

    def add_text(self, text: str) -> None:
        self._text.append(text)

    def add_thinking(self, text: str) -> None:
        self._thinking.append(text)

    def add_signature(self, signature: str) -> None:
        self._signature += signature

    def start_tool(self, tool_id: str, name: str) -> None:
        self.flush_text()
        self.flush_tool()
        self._tool = {"id": tool_id, "name": name, "parts": []}

    def add_tool_delta(self, fragment: str) -> bool:
        if self._tool is None:
            return False
        self._tool["parts"].append(fragment)
        return True

    def flush_thinking(self) -> None:
        if self._thinking:
            self.content.append(ThinkingBlock("".join(self._thinking), self._signature))
            self._thinking = []
            self._signature = ""

    def flush_text(self) -> None:
        self.flush_thinking()
        if self._text:
            self.content.append(TextBlock("".join(self._text)))
            self._text = []

    def flush_tool(self) -> None:
        if self._tool is None:
            return
        raw = "".join(self._tool["parts"])
        try:
            tool_input = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning("Unparseable input for tool %s; using empty input", self._tool["name"])
            tool_input = {}
        if not isinstance(tool_input, dict):
            tool_input = {}
        self.content.append(ToolUseBlock(id=self._tool["id"], name=self._tool["name"], input=tool_input))
        self._tool = None

    def finish(self, stop_reason: str) -> None:
        self.flush_text()
        self.flush_tool()
        self.stop_reason = stop_reason

    def partial_content(self) -> list[ContentBlock]:
        """Text and thinking produced so far, without tool calls (which would lack results)."""
        self.flush_text()
        self._tool = None
        return [b for b in self.content if not isinstance(b, ToolUseBlock)]


# ------------------------------------------------------------------
# Conversation loop
# ------------------------------------------------------------------


class ConversationLoop:
    """Runs user turns for sessions. Stateless across sessions; safe to share."""

    def __init__(
        self,
        settings: Settings,
        provider: Provider,
        dispatcher: ToolDispatcher,
        compactor: ConversationCompactor,
        prompt_builder: PromptBuilder | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._dispatcher = dispatcher
        self._compactor = compactor
        self._prompt_builder = prompt_builder or DefaultPromptBuilder(settings)
        self._retry = retry_policy or RetryPolicy(
            max_retries=settings.network_max_retries,
            base_delay=settings.retry_base_delay,
        )
        self._sleep = sleep

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    @property
    def prompt_builder(self) -> PromptBuilder:
        return self._prompt_builder

    async def run(self, session: Session, user_input: str | list[ContentBlock]) -> TurnResult:
        """Execute one user turn. Caller must hold the session's processing flag."""
        result = TurnResult()
        if session.cancelled:
            result.stop_reason = "cancelled"
            return result

        session.messages.append(Message.user(user_input))
        state = RetryState()
        usage = result.usage
        rounds = 0

        while True:
            if session.cancelled:
                result.stop_reason = "cancelled"
                break

            system_prompt = await self._prompt_builder.build(session)
            tools = self._dispatcher.tool_definitions(session)
            session.messages = repair_tool_pairs(
                scrub_persisted_outputs(session.messages, self._settings.keep_recent_tool_outputs)
            )

            if self._compactor.should_compact(session.messages, session.model, session.last_input_tokens):
                await self._compact(session, reason="threshold")

            state.has_streamed = False
            segment = _SegmentAssembler()
            try:
                await self._stream_segment(session, segment, system_prompt, tools, state, usage)
            except asyncio.CancelledError:
                self._keep_partial(session, segment)
                raise
            except Exception as e:
                decision = self._retry.decide(e, state)
                if decision.action == "retry":
                    await self._sleep(decision.delay)
                    continue
                if decision.action == "compact":
                    if await self._compact(session, reason="prompt_too_long"):
                        continue
                    return await self._fail(
                        session, result, f"Context compaction failed: {e}", ErrorKind.COMPACTION_FAILED
                    )
                self._keep_partial(session, segment)
                return await self._fail(session, result, str(e), decision.kind)

            state.reset_after_success()
            if segment.content:
                session.messages.append(Message.assistant(segment.content))
            result.content = segment.content
            result.stop_reason = segment.stop_reason

            tool_uses = [b for b in segment.content if isinstance(b, ToolUseBlock)]
            if session.cancelled:
                if tool_uses:
                    self._append_unexecuted(session, tool_uses, CANCELLED_TOOL_RESULT)
                result.stop_reason = "cancelled"
                break
            if not tool_uses:
                break
            if segment.stop_reason != "tool_use":
                # Truncated response (e.g. max_tokens): the calls may be incomplete
                self._append_unexecuted(
                    session,
                    tool_uses,
                    f"Error: Tool call was not executed because the response ended with "
                    f"stop reason '{segment.stop_reason}'",
                )
                break

            await self._dispatch_tools(session, tool_uses)
            rounds += 1
            if session.cancelled:
                result.stop_reason = "cancelled"
                break
            if rounds >= self._settings.max_turns:
                logger.warning("Tool loop reached max_turns=%d for session %s", rounds, session.id)
                result.stop_reason = "max_turns"
                break

        await session.emit(
            EventType.COMPLETION,
            stop_reason=result.stop_reason,
            usage=usage.to_dict(),
        )
        await self._emit_context_usage(session)
        return result

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream_segment(
        self,
        session: Session,
        segment: _SegmentAssembler,
        system_prompt: str,
        tools: list[dict[str, Any]],
        state: RetryState,
        usage: Usage,
    ) -> None:
        settings = self._settings
        options = StreamOptions(
            model=session.model,
            max_tokens=settings.max_tokens,
            thinking_budget=settings.thinking_budget if settings.thinking_mode == "manual" else None,
        )
        estimator = self._compactor.estimator
        input_chars = estimator.message_chars(session.messages)

        stream = self._provider.stream(list(session.messages), tools, system_prompt, options)
        async with aclosing(stream) as events:
            async for event in events:
                if session.cancelled:
                    break

                if event.type == "thinking":
                    if not segment.in_thinking:
                        await session.emit(EventType.THINKING_START)
                    segment.add_thinking(event.text)
                    state.has_streamed = True
                    await session.emit(EventType.THINKING_DELTA, text=event.text)

                elif event.type == "signature":
                    segment.add_signature(event.text)

                elif event.type == "text":
                    await self._close_thinking(session, segment)
                    segment.add_text(event.text)
                    state.has_streamed = True
                    await session.emit(EventType.TEXT_DELTA, text=event.text)

                elif event.type == "tool_use_start":
                    await self._close_thinking(session, segment)
                    segment.start_tool(event.tool_id, event.tool_name)
                    state.has_streamed = True
                    await session.emit(
                        EventType.TOOL_USE_START, tool_use_id=event.tool_id, tool_name=event.tool_name
                    )

                elif event.type == "tool_use_delta":
                    if segment.add_tool_delta(event.text):
                        await session.emit(
                            EventType.TOOL_USE_DELTA,
                            tool_use_id=segment.current_tool_id,
                            partial_json=event.text,
                        )

                elif event.type == "usage":
                    if event.input_tokens:
                        usage.input_tokens += event.input_tokens
                        session.last_input_tokens = event.input_tokens
                        estimator.calibrate(input_chars, event.input_tokens)
                    if event.output_tokens:
                        usage.output_tokens += event.output_tokens

                elif event.type == "stop":
                    await self._close_thinking(session, segment)
                    segment.finish(event.stop_reason or "end_turn")

                elif event.type == "error":
                    raise ProviderError(event.text, status_code=event.status_code)

        if segment.stop_reason is None:
            await self._close_thinking(session, segment)
            if session.cancelled:
                segment.content = segment.partial_content()
            else:
                segment.finish("end_turn")

    @staticmethod
    async def _close_thinking(session: Session, segment: _SegmentAssembler) -> None:
        if segment.in_thinking:
            segment.flush_thinking()
            await session.emit(EventType.THINKING_COMPLETE)

    @staticmethod
    def _keep_partial(session: Session, segment: _SegmentAssembler) -> None:
        """Record text that already reached the user before a failure."""
        partial = segment.partial_content()
        if any(isinstance(b, TextBlock) for b in partial):
            session.messages.append(Message.assistant(partial))

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    async def _dispatch_tools(self, session: Session, tool_uses: list[ToolUseBlock]) -> None:
        """Run tool calls in order and append their results as one user message."""
        settings = self._settings
        results: list[ContentBlock] = []
        extra_user: list[ContentBlock] = []
        extra_other: list[Message] = []

        for block in tool_uses:
            if session.cancelled:
                results.append(ToolResultBlock(block.id, CANCELLED_TOOL_RESULT, success=False))
                continue

            tool_result = await self._dispatcher.execute_tool(
                ToolCallRequest(id=block.id, name=block.name, input=block.input), session
            )
            text = format_tool_result(tool_result, settings.tool_output_threshold, settings.tool_preview_size)
            results.append(ToolResultBlock(block.id, text, tool_result.success))
            for message in tool_result.extra_messages:
                if message.role == "user":
                    extra_user.extend(message.blocks)
                else:
                    extra_other.append(message)

            await session.emit(
                EventType.TOOL_RESULT,
                tool_use_id=block.id,
                tool_name=block.name,
                success=tool_result.success,
                output=text,
                error_kind=tool_result.error_kind,
                data=tool_result.data.payload if tool_result.data else None,
            )

        session.messages.append(Message.user([*results, *extra_user]))
        session.messages.extend(extra_other)

    @staticmethod
    def _append_unexecuted(session: Session, tool_uses: list[ToolUseBlock], reason: str) -> None:
        session.messages.append(Message.user([
            ToolResultBlock(block.id, reason, success=False) for block in tool_uses
        ]))

    # ------------------------------------------------------------------
    # Compaction / errors / usage
    # ------------------------------------------------------------------

    async def _compact(self, session: Session, reason: str) -> bool:
        compactor = self._compactor
        threshold = compactor.threshold(session.model)
        estimated = compactor.estimator.estimate_messages(session.messages)
        await session.emit(
            EventType.CONTEXT_COMPACTION,
            phase="start",
            reason=reason,
            estimated_tokens=estimated,
            last_input_tokens=session.last_input_tokens,
            threshold=threshold,
        )
        try:
            outcome = await compactor.compact(session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Compaction raised for session %s", session.id)
            await session.emit(EventType.CONTEXT_COMPACTION, phase="error", reason=reason, error=str(e))
            return False

        if not outcome.was_compacted:
            await session.emit(
                EventType.CONTEXT_COMPACTION,
                phase="error",
                reason=reason,
                error="No compaction strategy produced a smaller history",
            )
            return False

        session.messages = outcome.messages
        session.last_input_tokens = 0
        await session.emit(
            EventType.CONTEXT_COMPACTION,
            phase="end",
            reason=reason,
            strategy=outcome.strategy,
            saved_tokens=outcome.saved_tokens,
            estimated_tokens=compactor.estimator.estimate_messages(outcome.messages),
            threshold=threshold,
        )
        return True

    async def _fail(self, session: Session, result: TurnResult, message: str, kind: ErrorKind) -> TurnResult:
        logger.error("Turn failed for session %s (%s): %s", session.id, kind, message)
        result.error = message
        result.error_kind = kind
        result.stop_reason = "error"
        await session.emit(EventType.ERROR, message=message, error_kind=kind)
        return result

    async def _emit_context_usage(self, session: Session) -> None:
        used = session.last_input_tokens or self._compactor.estimator.estimate_messages(session.messages)
        window = self._compactor.context_window(session.model)
        await session.emit(
            EventType.CONTEXT_USAGE,
            used_tokens=used,
            max_tokens=window,
            percentage=min(100, round(used / window * 100)) if window else 0,
            model=session.model,
        )
