"""Tool output formatting -- persisted-output previews and history scrubbing.

Two independent jobs:
  1. format_tool_result(): turn a ToolResult into the text fed back to the
     model. Oversized output is replaced by a bounded preview wrapped in
     <persisted-output> markers.
  2. scrub_persisted_outputs(): between turns, replace all but the most
     recent persisted-output blocks with a short placeholder so large
     tool calls from earlier in the session stop costing context.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from loom.api.models import Message, ToolResult, ToolResultBlock

logger = logging.getLogger(__name__)

PERSISTED_OUTPUT_START = "<persisted-output>"
PERSISTED_OUTPUT_END = "</persisted-output>"
CLEARED_PLACEHOLDER = "[Old tool result content cleared]"

OUTPUT_THRESHOLD = 400_000
PREVIEW_SIZE = 2000


def truncate_output(content: str, max_size: int) -> tuple[str, bool]:
    """Cut content to at most max_size chars. Returns (preview, has_more).

    Prefers to cut at the last newline inside the window when that
    newline sits in the latter half, so the preview ends on a full line.
    """
    if len(content) <= max_size:
        return content, False
    window = content[:max_size]
    last_newline = window.rfind("\n")
    if last_newline > max_size * 0.5:
        return content[:last_newline], True
    return window, True


def wrap_persisted_output(
    content: str,
    threshold: int = OUTPUT_THRESHOLD,
    preview_size: int = PREVIEW_SIZE,
) -> str:
    """Pass content through unchanged below threshold, else wrap a preview."""
    if len(content) < threshold:
        return content
    preview, has_more = truncate_output(content, preview_size)
    withheld = len(content) - len(preview)
    lines = [
        PERSISTED_OUTPUT_START,
        f"Output too large ({len(content):,} chars). Preview (first {len(preview):,} chars):",
        preview,
    ]
    if has_more:
        lines.append("...")
        lines.append(f"[{withheld:,} more chars withheld]")
    lines.append(PERSISTED_OUTPUT_END)
    return "\n".join(lines)


def format_tool_result(
    result: ToolResult,
    threshold: int = OUTPUT_THRESHOLD,
    preview_size: int = PREVIEW_SIZE,
) -> str:
    """Text injected back into the conversation for one tool call."""
    if not result.success:
        return wrap_persisted_output(f"Error: {result.error or 'Tool execution failed'}", threshold, preview_size)
    return wrap_persisted_output(result.output, threshold, preview_size)


def is_persisted_output(block: ToolResultBlock) -> bool:
    """True only for text produced by wrap_persisted_output, not text quoting the marker."""
    text = block.text
    return text.startswith(PERSISTED_OUTPUT_START + "\n") and text.endswith(PERSISTED_OUTPUT_END)


def scrub_persisted_outputs(messages: list[Message], keep_recent: int = 3) -> list[Message]:
    """Replace stale persisted-output tool results with CLEARED_PLACEHOLDER.

    Keeps the keep_recent most recent persisted-output results intact.
    Returns a new list; messages that change are copied, the input is
    never mutated.
    """
    positions: list[tuple[int, int]] = []
    for msg_idx, message in enumerate(messages):
        if message.role != "user" or isinstance(message.content, str):
            continue
        for block_idx, block in enumerate(message.content):
            if isinstance(block, ToolResultBlock) and is_persisted_output(block):
                positions.append((msg_idx, block_idx))

    stale = positions[:-keep_recent] if keep_recent > 0 else positions
    if not stale:
        return list(messages)

    by_message: dict[int, set[int]] = {}
    for msg_idx, block_idx in stale:
        by_message.setdefault(msg_idx, set()).add(block_idx)

    scrubbed: list[Message] = []
    for msg_idx, message in enumerate(messages):
        targets = by_message.get(msg_idx)
        if not targets:
            scrubbed.append(message)
            continue
        content = [
            replace(block, content=CLEARED_PLACEHOLDER) if i in targets else block
            for i, block in enumerate(message.content)
        ]
        scrubbed.append(Message(role=message.role, content=content))

    logger.debug("Scrubbed %d stale persisted outputs (kept %d)", len(stale), keep_recent)
    return scrubbed
