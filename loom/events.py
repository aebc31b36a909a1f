"""Runtime events delivered to the transport layer.

The Conversation Loop reports progress as Event objects sent through the
session's TransportSlot. A failing transport never breaks the turn:
send errors are logged and the event is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    THINKING_START = "thinking_start"
    THINKING_DELTA = "thinking_delta"
    THINKING_COMPLETE = "thinking_complete"
    TEXT_DELTA = "text_delta"
    TOOL_USE_START = "tool_use_start"
    TOOL_USE_DELTA = "tool_use_delta"
    TOOL_RESULT = "tool_result"
    PERMISSION_REQUEST = "permission_request"
    QUESTION_REQUEST = "question_request"
    COMPLETION = "completion"
    ERROR = "error"
    CONTEXT_COMPACTION = "context_compaction"
    CONTEXT_USAGE = "context_usage"


@dataclass
class Event:
    """A typed event emitted by the runtime for one session."""

    type: str
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }


class Transport(Protocol):
    """Anything that can deliver events to a connected user."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, event: Event) -> None: ...


class QueueTransport:
    """Transport backed by an asyncio.Queue.

    Used by the SSE endpoint: the turn pushes events, the response
    generator drains them. close() enqueues a sentinel so the reader
    knows the turn is over.
    """

    _CLOSED = None

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def send(self, event: Event) -> None:
        if self._open:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._open:
            self._open = False
            self._queue.put_nowait(self._CLOSED)

    async def events(self):
        """Yield queued events until close() is called."""
        while True:
            event = await self._queue.get()
            if event is self._CLOSED:
                return
            yield event


class TransportSlot:
    """Per-session holder for the current transport.

    Rebinding is refused while a turn is in progress and the bound
    transport is still open, so a second connection cannot receive
    events meant for another caller's in-flight turn.
    """

    def __init__(self, transport: Transport | None = None) -> None:
        self._transport = transport

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def is_open(self) -> bool:
        return self._transport is not None and self._transport.is_open

    def bind(self, transport: Transport | None, *, busy: bool) -> bool:
        """Attach a new transport. Returns False when the rebind is refused."""
        if transport is self._transport:
            return True
        if busy and self.is_open:
            logger.warning("Refusing transport rebind while a turn is in progress")
            return False
        self._transport = transport
        return True

    def release(self, transport: Transport) -> None:
        """Detach transport if it is still the bound one."""
        if self._transport is transport:
            self._transport = None

    async def emit(self, session_id: str, event_type: str, **data: Any) -> None:
        """Send an event to the bound transport, if any. Never raises."""
        transport = self._transport
        if transport is None or not transport.is_open:
            return
        try:
            await transport.send(Event(type=event_type, session_id=session_id, data=data))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Transport send failed for event %s", event_type, exc_info=True)
