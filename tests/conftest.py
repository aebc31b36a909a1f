"""Shared fixtures: settings on tmp paths, a scripted provider, a recording transport."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from loom.api.models import ApiResponse, Message, Session
from loom.api.provider import ProviderEvent, StreamOptions
from loom.config import Settings
from loom.events import Event
from loom.state import RuntimeState

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def _make_settings(tmp_path, **overrides: Any) -> Settings:
    """Settings pointing every path at tmp_path, no .env file."""
    values: dict[str, Any] = {
        "ANTHROPIC_API_KEY": "test-key",
        "workspace_dir": str(tmp_path / "workspace"),
        "session_memory_dir": str(tmp_path / "memory"),
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'loom.db'}",
        "retry_base_delay": 0.0,
        "permission_timeout": 1.0,
        "question_timeout": 1.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    (tmp_path / "workspace").mkdir()
    return _make_settings(tmp_path)


@pytest.fixture
def runtime() -> RuntimeState:
    return RuntimeState()


# ---------------------------------------------------------------------------
# Provider events
# ---------------------------------------------------------------------------


def text_response(text: str, stop_reason: str = "end_turn", input_tokens: int = 100) -> list[ProviderEvent]:
    return [
        ProviderEvent(type="usage", input_tokens=input_tokens),
        ProviderEvent(type="text", text=text),
        ProviderEvent(type="usage", output_tokens=10),
        ProviderEvent(type="stop", stop_reason=stop_reason),
    ]


def tool_response(
    tool_id: str,
    name: str,
    input_json: str = "{}",
    text: str = "",
    stop_reason: str = "tool_use",
) -> list[ProviderEvent]:
    events = [ProviderEvent(type="usage", input_tokens=100)]
    if text:
        events.append(ProviderEvent(type="text", text=text))
    events.append(ProviderEvent(type="tool_use_start", tool_id=tool_id, tool_name=name))
    # Split the JSON so reassembly is exercised
    middle = len(input_json) // 2
    for fragment in (input_json[:middle], input_json[middle:]):
        if fragment:
            events.append(ProviderEvent(type="tool_use_delta", text=fragment))
    events.append(ProviderEvent(type="stop", stop_reason=stop_reason))
    return events


class FakeProvider:
    """Scripted provider.

    Each stream() call consumes the next script entry: a list of
    ProviderEvents to yield, or an exception to raise. An exception
    placed inside the event list is raised mid-stream after the events
    before it were yielded.
    """

    def __init__(self, scripts: list[Any] | None = None, summary: str = "Summary of the work so far.") -> None:
        self.scripts = list(scripts or [])
        self.summary = summary
        self.stream_calls: list[dict[str, Any]] = []
        self.complete_calls: list[dict[str, Any]] = []
        self.complete_error: Exception | None = None

    async def stream(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
        options: StreamOptions,
    ) -> AsyncIterator[ProviderEvent]:
        self.stream_calls.append({
            "messages": list(messages),
            "tools": [t["name"] for t in tools],
            "system_prompt": system_prompt,
            "options": options,
        })
        if not self.scripts:
            raise AssertionError("FakeProvider ran out of scripted responses")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        for item in script:
            if isinstance(item, BaseException):
                raise item
            await asyncio.sleep(0)
            yield item

    async def complete(
        self,
        messages: list[Message],
        system_prompt: str,
        options: StreamOptions,
    ) -> ApiResponse:
        self.complete_calls.append({"messages": list(messages), "system_prompt": system_prompt, "options": options})
        if self.complete_error is not None:
            raise self.complete_error
        return ApiResponse(content=[{"type": "text", "text": self.summary}], stop_reason="end_turn")


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class RecordingTransport:
    """Collects events; optionally answers permission/question requests inline."""

    def __init__(self, on_event=None) -> None:
        self.events: list[Event] = []
        self.is_open = True
        self._on_event = on_event

    async def send(self, event: Event) -> None:
        self.events.append(event)
        if self._on_event is not None:
            self._on_event(event)

    def types(self) -> list[str]:
        return [str(e.type) for e in self.events]

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]


def make_session(settings: Settings, session_id: str = "s1", transport=None, **kwargs: Any) -> Session:
    session = Session(id=session_id, model=settings.model, **kwargs)
    if transport is not None:
        session.transport.bind(transport, busy=False)
    return session
