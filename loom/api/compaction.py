"""Context compaction -- token estimation and history replacement.

Two tiers, tried in order; the first that produces a strictly smaller
history wins:
  1. Session memory: an externally maintained summary.md for the session,
     used when it is small relative to the compaction threshold.
  2. Model summary: a dedicated tool-less provider call that summarizes
     the most recent messages.
If both fail the caller carries on with the original history.

This module is independent of the Conversation Loop to keep runner.py
focused on orchestration. compact() never mutates the session: it
returns a CompactionResult and the loop applies it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from pathlib import Path
from typing import Any

from loom.api.models import (
    CompactionResult,
    Message,
    Session,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    serialized_length,
)
from loom.api.provider import Provider, StreamOptions
from loom.config import Settings

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompts
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful AI assistant tasked with summarizing conversations "
    "between a user and a coding assistant. Output ONLY the summary."
)

SUMMARY_REQUEST = """\
Summarize the conversation above so that work can continue without it.
Cover, in this order:

1. User requests: every explicit request the user made, in chronological order.
2. Actions taken: files read or modified, commands run, tools used.
3. Key decisions: technical and architectural choices and their rationale.
4. Current state: what is finished, what is in progress, what is pending.
5. Important identifiers: file paths, function and class names, URLs.
6. Errors: problems encountered and how they were resolved.

Be precise. Preserve exact file paths, names and error messages."""

SESSION_MEMORY_HEADER = "[Session Memory - Auto Compact]"
SESSION_MEMORY_NOTE = (
    "[Previous conversation has been summarized. "
    "The session memory above captures the key context.]"
)
SUMMARY_HEADER = "[Conversation Summary - Auto Compact]"

# Per-item cap when serializing tool traffic for the summary request
_SUMMARY_ITEM_CHARS = 2000
_SUMMARY_MAX_TOKENS = 8192


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with the chars/4 heuristic and drifts toward the observed
    ratio via calibrate() after each provider response (EMA, alpha=0.1).
    The ratio resets on restart.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char (chars/4 default)
        self._samples: int = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str | Any) -> int:
        """Estimate token count for text content."""
        if not isinstance(text, str):
            text = str(text)
        return math.ceil(len(text) * self._ratio)

    def message_chars(self, messages: list[Message]) -> int:
        total = 0
        for message in messages:
            if isinstance(message.content, str):
                total += len(message.content)
            else:
                total += sum(serialized_length(b) for b in message.content)
        return total

    def estimate_messages(self, messages: list[Message]) -> int:
        """Estimate total tokens for a message list."""
        return math.ceil(self.message_chars(messages) * self._ratio)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        # System prompt and tool schemas inflate actual_tokens; clamp outliers
        observed = min(max(observed, 0.1), 1.0)
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


# ------------------------------------------------------------------
# Session memory
# ------------------------------------------------------------------


class SessionMemory:
    """File-backed session memory: {directory}/{session_id}/summary.md.

    The summary is maintained outside the runtime; compaction only reads it.
    """

    def __init__(self, directory: str) -> None:
        self._directory = Path(directory).expanduser()

    def path_for(self, session_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "-", session_id)
        return self._directory / safe / "summary.md"

    async def read(self, session_id: str) -> str | None:
        path = self.path_for(session_id)
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not read session memory %s: %s", path, e)
            return None
        content = content.strip()
        return content or None

    async def write(self, session_id: str, content: str) -> None:
        path = self.path_for(session_id)
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_text, content, encoding="utf-8")


# ------------------------------------------------------------------
# Conversation Compactor
# ------------------------------------------------------------------


class ConversationCompactor:
    """Decides when to compact and produces the replacement history.

    Owns a TokenEstimator. The loop calibrates it via compactor.estimator
    after each provider response.
    """

    def __init__(
        self,
        settings: Settings,
        provider: Provider,
        memory: SessionMemory | None = None,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._memory = memory
        self.estimator = TokenEstimator()

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def context_window(self, model: str) -> int:
        if "[1m]" in model:
            return self._settings.extended_context_window
        return self._settings.default_context_window

    def threshold(self, model: str) -> int:
        return int(self.context_window(model) * self._settings.compaction_fraction)

    def should_compact(self, messages: list[Message], model: str, last_input_tokens: int = 0) -> bool:
        """Proactive check before a provider call.

        Triggers when the heuristic estimate exceeds the threshold, or
        when the last actual input-token count already met it.
        """
        if not self._settings.compaction_enabled:
            return False
        threshold = self.threshold(model)
        if last_input_tokens and last_input_tokens >= threshold:
            return True
        return self.estimator.estimate_messages(messages) > threshold

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def compact(self, session: Session) -> CompactionResult:
        """Build a smaller replacement for session.messages. Never mutates the session."""
        original = list(session.messages)
        if not original:
            return CompactionResult(was_compacted=False, messages=original)

        start_time = time.monotonic()
        original_tokens = self.estimator.estimate_messages(original)

        strategy = "session_memory"
        candidate = await self._from_session_memory(session)
        if candidate is not None and not self._is_smaller(candidate, original_tokens):
            logger.info("Session memory for %s is not smaller than history; skipping", session.id)
            candidate = None

        if candidate is None:
            strategy = "summary"
            candidate = await self._from_summary(session)
            if candidate is not None and not self._is_smaller(candidate, original_tokens):
                logger.warning("Summary for %s is not smaller than history; discarding", session.id)
                candidate = None

        if candidate is None:
            logger.warning("Compaction failed for session %s; continuing uncompacted", session.id)
            return CompactionResult(was_compacted=False, messages=original)

        new_tokens = self.estimator.estimate_messages(candidate)
        baseline = session.last_input_tokens or original_tokens
        saved = max(0, baseline - new_tokens)
        logger.info(
            "Compacted session %s via %s: %d messages -> %d (~%d -> ~%d tokens, %d ms)",
            session.id,
            strategy,
            len(original),
            len(candidate),
            original_tokens,
            new_tokens,
            int((time.monotonic() - start_time) * 1000),
        )
        return CompactionResult(
            was_compacted=True,
            messages=candidate,
            saved_tokens=saved,
            strategy=strategy,
        )

    def _is_smaller(self, candidate: list[Message], original_tokens: int) -> bool:
        return self.estimator.estimate_messages(candidate) < original_tokens

    async def _from_session_memory(self, session: Session) -> list[Message] | None:
        if self._memory is None:
            return None
        memory = await self._memory.read(session.id)
        if not memory:
            return None
        limit = self.threshold(session.model) * self._settings.session_memory_max_ratio
        memory_tokens = self.estimator.estimate(memory)
        if memory_tokens >= limit:
            logger.info(
                "Session memory too large for compaction (%d tokens >= %d)",
                memory_tokens,
                int(limit),
            )
            return None
        return [Message.user(f"{SESSION_MEMORY_HEADER}\n{memory}\n\n{SESSION_MEMORY_NOTE}")]

    async def _from_summary(self, session: Session) -> list[Message] | None:
        recent = session.messages[-self._settings.summary_recent_messages:]
        transcript = self._serialize_for_summary(recent)
        options = StreamOptions(
            model=self._settings.summary_model or session.model,
            max_tokens=min(self._settings.max_tokens, _SUMMARY_MAX_TOKENS),
        )
        try:
            response = await self._provider.complete(
                [Message.user(f"{transcript}\n\n---\n\n{SUMMARY_REQUEST}")],
                SUMMARY_SYSTEM_PROMPT,
                options,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Summary generation failed: %s", e)
            return None

        summary = self.extract_text(response.content).strip()
        if not summary:
            logger.warning("Summary generation returned no text")
            return None
        return [Message.user(f"{SUMMARY_HEADER}\n{summary}")]

    @staticmethod
    def _serialize_for_summary(messages: list[Message]) -> str:
        """Render messages as a readable transcript for the summary call.

        A transcript rather than raw API messages, so a window that starts
        mid tool exchange is still a valid request.
        """
        lines = []
        for message in messages:
            role = "User" if message.role == "user" else "Assistant"
            if isinstance(message.content, str):
                lines.append(f"**{role}:** {message.content}")
                continue
            parts = []
            for block in message.content:
                if isinstance(block, TextBlock):
                    parts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    args = json.dumps(block.input)[:_SUMMARY_ITEM_CHARS]
                    parts.append(f"[Called tool {block.name} with {args}]")
                elif isinstance(block, ToolResultBlock):
                    status = "result" if block.success else "error"
                    parts.append(f"[Tool {status}: {block.text[:_SUMMARY_ITEM_CHARS]}]")
                elif isinstance(block, ThinkingBlock):
                    continue
                else:
                    parts.append(f"[{block.type} content]")
            if parts:
                lines.append(f"**{role}:** {chr(10).join(parts)}")
        return "\n\n".join(lines)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def extract_text(content: list[dict[str, Any]]) -> str:
        """Extract text from API response content blocks."""
        return "".join(
            block.get("text", "")
            for block in content
            if block.get("type") == "text"
        )
