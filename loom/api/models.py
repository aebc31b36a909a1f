"""Shared data models for the API layer.

Content blocks, messages, sessions and the per-turn result types used by
the loop, the dispatcher and the compactor. Kept free of runtime logic
so every other module can import it without cycles.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar, Union

from loom.errors import ErrorKind
from loom.events import TransportSlot

# ------------------------------------------------------------------
# Content blocks
# ------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str
    type: ClassVar[str] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}

    def to_api(self) -> dict[str, Any] | None:
        return self.to_dict() if self.text else None


@dataclass
class ThinkingBlock:
    """Model reasoning. Only replayed to the provider when it carries a signature."""

    thinking: str
    signature: str = ""
    type: ClassVar[str] = "thinking"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "thinking", "thinking": self.thinking, "signature": self.signature}

    def to_api(self) -> dict[str, Any] | None:
        return self.to_dict() if self.signature else None


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: ClassVar[str] = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}

    def to_api(self) -> dict[str, Any] | None:
        return self.to_dict()


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str | list[dict[str, Any]]
    success: bool = True
    type: ClassVar[str] = "tool_result"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "success": self.success,
        }

    def to_api(self) -> dict[str, Any] | None:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": not self.success,
        }

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(
            item.get("text", "") for item in self.content if isinstance(item, dict)
        )


@dataclass
class RawBlock:
    """Provider-native block passed through untouched (documents, images)."""

    data: dict[str, Any]

    @property
    def type(self) -> str:
        return self.data.get("type", "raw")

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)

    def to_api(self) -> dict[str, Any] | None:
        return dict(self.data)


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock, RawBlock]


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Rebuild a content block from its to_dict() form (or API form)."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text", ""))
    if block_type == "thinking":
        return ThinkingBlock(thinking=data.get("thinking", ""), signature=data.get("signature", ""))
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input") or {})
    if block_type == "tool_result":
        success = data.get("success")
        if success is None:
            success = not data.get("is_error", False)
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=data.get("content", ""),
            success=success,
        )
    return RawBlock(data=dict(data))


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "user" or "assistant"
    content: str | list[ContentBlock]

    @classmethod
    def user(cls, content: str | list[ContentBlock]) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: list[ContentBlock]) -> Message:
        return cls(role="assistant", content=content)

    @property
    def blocks(self) -> list[ContentBlock]:
        if isinstance(self.content, str):
            return [TextBlock(self.content)] if self.content else []
        return self.content

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def to_api(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        blocks = [api for api in (b.to_api() for b in self.content) if api is not None]
        return {"role": self.role, "content": blocks}

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [b.to_dict() for b in self.content]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        content = data.get("content", "")
        if isinstance(content, list):
            content = [block_from_dict(b) for b in content]
        return cls(role=data["role"], content=content)


def serialized_length(block: ContentBlock) -> int:
    """Character footprint of a block, as used by the token estimator."""
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolResultBlock):
        if isinstance(block.content, str):
            return len(block.content)
        return len(json.dumps(block.content))
    if isinstance(block, ThinkingBlock):
        return len(block.thinking)
    return len(json.dumps(block.to_dict()))


# ------------------------------------------------------------------
# Session control primitives
# ------------------------------------------------------------------


class CancelToken:
    """Cancellation flag with parent linkage.

    A child token reports cancelled when it or any ancestor is
    cancelled. Cancelling a child never affects the parent.
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._parent = parent
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    def child(self) -> CancelToken:
        return CancelToken(parent=self)


class PendingRequests:
    """Futures awaiting an interactive reply (permission or question), keyed by request id."""

    def __init__(self) -> None:
        self._futures: dict[str, asyncio.Future[Any]] = {}
        self._kinds: dict[str, str] = {}

    def create(self, request_id: str, kind: str) -> asyncio.Future[Any]:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._futures[request_id] = future
        self._kinds[request_id] = kind
        return future

    def resolve(self, request_id: str, value: Any, kind: str | None = None) -> bool:
        """Deliver a reply. Returns False for unknown, expired or mismatched requests."""
        future = self._futures.get(request_id)
        if future is None or future.done():
            return False
        if kind is not None and self._kinds.get(request_id) != kind:
            return False
        future.set_result(value)
        return True

    def discard(self, request_id: str) -> None:
        self._futures.pop(request_id, None)
        self._kinds.pop(request_id, None)

    def cancel_all(self) -> int:
        """Wake every waiter with None, which callers read as "cancelled"."""
        cancelled = 0
        for future in self._futures.values():
            if not future.done():
                future.set_result(None)
                cancelled += 1
        self._futures.clear()
        self._kinds.clear()
        return cancelled

    def __len__(self) -> int:
        return sum(1 for f in self._futures.values() if not f.done())


class PermissionBehavior(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass
class PermissionDecision:
    behavior: PermissionBehavior
    reason: str | None = None
    updated_input: dict[str, Any] | None = None
    error_kind: ErrorKind | None = None  # set on denials: permission_denied / permission_timeout

    @classmethod
    def allow(cls, updated_input: dict[str, Any] | None = None, reason: str | None = None) -> PermissionDecision:
        return cls(PermissionBehavior.ALLOW, reason=reason, updated_input=updated_input)

    @classmethod
    def deny(cls, reason: str, error_kind: ErrorKind = ErrorKind.PERMISSION_DENIED) -> PermissionDecision:
        return cls(PermissionBehavior.DENY, reason=reason, error_kind=error_kind)

    @classmethod
    def ask(cls, reason: str | None = None, updated_input: dict[str, Any] | None = None) -> PermissionDecision:
        return cls(PermissionBehavior.ASK, reason=reason, updated_input=updated_input)


@dataclass
class ToolFilter:
    """Per-session tool availability. allowed=None means every registered tool."""

    allowed: list[str] | None = None
    disabled: set[str] = field(default_factory=set)

    def permits(self, name: str) -> bool:
        if name in self.disabled:
            return False
        return self.allowed is None or name in self.allowed

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "disabled": sorted(self.disabled)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ToolFilter:
        if not data:
            return cls()
        return cls(allowed=data.get("allowed"), disabled=set(data.get("disabled") or []))


@dataclass
class Session:
    """One conversation. Mutated only by the Conversation Loop while processing."""

    id: str
    model: str
    messages: list[Message] = field(default_factory=list)
    system_prompt: str | None = None
    tool_filter: ToolFilter = field(default_factory=ToolFilter)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    processing: bool = False
    last_input_tokens: int = 0
    transport: TransportSlot = field(default_factory=TransportSlot)
    permission_cache: dict[str, PermissionBehavior] = field(default_factory=dict)
    pending: PendingRequests = field(default_factory=PendingRequests)
    depth: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    async def emit(self, event_type: str, **data: Any) -> None:
        await self.transport.emit(self.id, event_type, **data)


# ------------------------------------------------------------------
# Tool call / result
# ------------------------------------------------------------------


@dataclass
class ToolCallRequest:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolData:
    """Structured side data, tagged with the tool that produced it."""

    tool: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Normalized outcome of one tool call."""

    success: bool
    output: str = ""
    error: str | None = None
    error_kind: ErrorKind | None = None
    data: ToolData | None = None
    extra_messages: list[Message] = field(default_factory=list)

    @classmethod
    def ok(
        cls,
        output: str,
        data: ToolData | None = None,
        extra_messages: list[Message] | None = None,
    ) -> ToolResult:
        return cls(success=True, output=output, data=data, extra_messages=extra_messages or [])

    @classmethod
    def fail(cls, error: str, kind: ErrorKind = ErrorKind.TOOL_EXECUTION_FAILED) -> ToolResult:
        return cls(success=False, error=error, error_kind=kind)


# ------------------------------------------------------------------
# Turn bookkeeping
# ------------------------------------------------------------------


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass
class TurnResult:
    """What run() hands back to the coordinator."""

    content: list[ContentBlock] = field(default_factory=list)
    stop_reason: str | None = None
    usage: Usage = field(default_factory=Usage)
    error: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass
class RetryState:
    """Per-turn retry counters."""

    network_retries: int = 0
    force_compacted: bool = False
    has_streamed: bool = False

    def reset_after_success(self) -> None:
        self.network_retries = 0
        self.force_compacted = False


@dataclass
class CompactionResult:
    was_compacted: bool
    messages: list[Message]
    saved_tokens: int = 0
    strategy: str | None = None  # "session_memory" | "summary"


@dataclass
class ApiResponse:
    """Parsed non-streaming response from the Anthropic Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None
