"""Tests for the provider stream.

Tests cover:
- SSE event parsing (_parse_sse_event pure function)
- AnthropicProvider.stream() over an httpx MockTransport
- complete() error mapping
- payload construction (model suffix, thinking, empty messages)
"""

import json

import httpx
import pytest

from loom.api.models import Message, TextBlock, ThinkingBlock
from loom.api.provider import AnthropicProvider, StreamOptions, _error_message, _parse_sse_event
from loom.config import Settings
from loom.errors import ProviderError

# ---------------------------------------------------------------------------
# TestParseSSEEvent
# ---------------------------------------------------------------------------


class TestParseSSEEvent:
    """Tests for _parse_sse_event() -- the pure function."""

    def test_text_delta(self):
        data = {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": "Hello world"},
        }
        [event] = _parse_sse_event(data)
        assert event.type == "text"
        assert event.text == "Hello world"

    def test_thinking_and_signature_deltas(self):
        [thinking] = _parse_sse_event({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "thinking_delta", "thinking": "Let me think"},
        })
        [signature] = _parse_sse_event({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "signature_delta", "signature": "sig123"},
        })
        assert thinking.type == "thinking"
        assert thinking.text == "Let me think"
        assert signature.type == "signature"
        assert signature.text == "sig123"

    def test_tool_use_start(self):
        data = {
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_abc123", "name": "list_files"},
        }
        [event] = _parse_sse_event(data)
        assert event.type == "tool_use_start"
        assert event.tool_id == "toolu_abc123"
        assert event.tool_name == "list_files"
        assert event.block_index == 1

    def test_text_block_start_is_ignored(self):
        data = {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}
        assert _parse_sse_event(data) == []

    def test_input_json_delta(self):
        data = {
            "type": "content_block_delta",
            "index": 2,
            "delta": {"type": "input_json_delta", "partial_json": '{"path":'},
        }
        [event] = _parse_sse_event(data)
        assert event.type == "tool_use_delta"
        assert event.text == '{"path":'
        assert event.block_index == 2

    def test_message_start_counts_cache_tokens(self):
        data = {
            "type": "message_start",
            "message": {
                "usage": {
                    "input_tokens": 10,
                    "cache_read_input_tokens": 200,
                    "cache_creation_input_tokens": 5,
                    "output_tokens": 1,
                }
            },
        }
        [event] = _parse_sse_event(data)
        assert event.type == "usage"
        assert event.input_tokens == 215
        assert event.output_tokens == 0

    def test_message_delta_stop_reason(self):
        data = {
            "type": "message_delta",
            "delta": {"stop_reason": "tool_use"},
            "usage": {"output_tokens": 42},
        }
        usage, stop = _parse_sse_event(data)
        assert usage.type == "usage"
        assert usage.output_tokens == 42
        assert stop.type == "stop"
        assert stop.stop_reason == "tool_use"

    def test_missing_stop_reason_defaults_to_end_turn(self):
        [stop] = _parse_sse_event({"type": "message_delta", "delta": {}})
        assert stop.stop_reason == "end_turn"

    def test_ping_returns_nothing(self):
        assert _parse_sse_event({"type": "ping"}) == []

    def test_in_stream_error(self):
        data = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        [event] = _parse_sse_event(data)
        assert event.type == "error"
        assert event.text == "overloaded_error: Overloaded"

    def test_unknown_event_type(self):
        assert _parse_sse_event({"type": "content_block_stop", "index": 0}) == []


class TestErrorMessage:
    def test_json_body(self):
        body = json.dumps({"error": {"type": "invalid_request_error", "message": "prompt is too long"}}).encode()
        assert _error_message(400, body) == "HTTP 400: invalid_request_error: prompt is too long"

    def test_non_json_body(self):
        assert _error_message(502, b"Bad Gateway") == "HTTP 502: Bad Gateway"


# ---------------------------------------------------------------------------
# AnthropicProvider over MockTransport
# ---------------------------------------------------------------------------


def _sse_body(*payloads: dict) -> bytes:
    lines = []
    for payload in payloads:
        lines.append(f"event: {payload['type']}")
        lines.append(f"data: {json.dumps(payload)}")
        lines.append("")
    return ("\n".join(lines) + "\n").encode()


def _provider(handler, **settings_overrides) -> tuple[AnthropicProvider, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    settings = Settings(_env_file=None, ANTHROPIC_API_KEY="test-key", **settings_overrides)
    client = httpx.AsyncClient(base_url="https://api.test", transport=httpx.MockTransport(recording))
    return AnthropicProvider(settings, http=client), requests


OPTIONS = StreamOptions(model="claude-test", max_tokens=1024)


class TestProviderStream:
    @pytest.mark.asyncio
    async def test_stream_yields_parsed_events(self):
        body = _sse_body(
            {"type": "message_start", "message": {"usage": {"input_tokens": 50}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "ping"},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 3}},
            {"type": "message_stop"},
        )
        provider, requests = _provider(lambda r: httpx.Response(200, content=body))

        events = [e async for e in provider.stream([Message.user("hello")], [], "system", OPTIONS)]

        assert [e.type for e in events] == ["usage", "text", "usage", "stop"]
        assert events[1].text == "Hi"
        payload = json.loads(requests[0].content)
        assert payload["stream"] is True
        assert payload["messages"] == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_http_error_becomes_error_event(self):
        body = json.dumps({"error": {"type": "overloaded_error", "message": "Overloaded"}}).encode()
        provider, _ = _provider(lambda r: httpx.Response(529, content=body))

        events = [e async for e in provider.stream([Message.user("hello")], [], "system", OPTIONS)]

        assert len(events) == 1
        assert events[0].type == "error"
        assert events[0].status_code == 529
        assert "overloaded_error" in events[0].text

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self):
        body = (
            b"data: {not json\n\n"
            + _sse_body(
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}},
                {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
            )
        )
        provider, _ = _provider(lambda r: httpx.Response(200, content=body))

        events = [e async for e in provider.stream([Message.user("hello")], [], "system", OPTIONS)]

        assert [e.type for e in events] == ["text", "stop"]

    @pytest.mark.asyncio
    async def test_stream_stops_after_in_stream_error(self):
        body = _sse_body(
            {"type": "error", "error": {"type": "api_error", "message": "boom"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "late"}},
        )
        provider, _ = _provider(lambda r: httpx.Response(200, content=body))

        events = [e async for e in provider.stream([Message.user("hello")], [], "system", OPTIONS)]

        assert [e.type for e in events] == ["error"]


class TestProviderComplete:
    @pytest.mark.asyncio
    async def test_complete_returns_content(self):
        body = {"content": [{"type": "text", "text": "summary"}], "stop_reason": "end_turn", "usage": {}}
        provider, requests = _provider(lambda r: httpx.Response(200, json=body))

        response = await provider.complete([Message.user("summarize")], "system", OPTIONS)

        assert response.content[0]["text"] == "summary"
        assert "tools" not in json.loads(requests[0].content)

    @pytest.mark.asyncio
    async def test_complete_raises_provider_error(self):
        body = {"error": {"type": "invalid_request_error", "message": "prompt is too long"}}
        provider, _ = _provider(lambda r: httpx.Response(400, json=body))

        with pytest.raises(ProviderError) as exc_info:
            await provider.complete([Message.user("x")], "system", OPTIONS)
        assert exc_info.value.status_code == 400
        assert "prompt is too long" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_failure_is_wrapped(self):
        def fail(request):
            raise httpx.ConnectError("connection refused")

        provider, _ = _provider(fail)

        with pytest.raises(ProviderError, match="Connection error"):
            await provider.complete([Message.user("x")], "system", OPTIONS)


class TestBuildPayload:
    def test_model_suffix_and_thinking(self):
        provider = AnthropicProvider(Settings(_env_file=None, ANTHROPIC_API_KEY="k"))
        options = StreamOptions(model="claude-test[1m]", max_tokens=4096, thinking_budget=2048)

        payload = provider._build_payload([Message.user("hi")], "system", options, tools=[{"name": "t"}])

        assert payload["model"] == "claude-test"
        assert payload["thinking"] == {"type": "enabled", "budget_tokens": 2048}
        assert payload["tools"] == [{"name": "t"}]
        assert payload["system"][0]["cache_control"] == {"type": "ephemeral"}

    def test_unsigned_thinking_only_message_is_dropped(self):
        provider = AnthropicProvider(Settings(_env_file=None, ANTHROPIC_API_KEY="k"))
        messages = [
            Message.user("hi"),
            Message.assistant([ThinkingBlock("hmm")]),
            Message.user([TextBlock("again")]),
        ]

        payload = provider._build_payload(messages, "system", OPTIONS)

        assert [m["role"] for m in payload["messages"]] == ["user", "user"]

    @pytest.mark.asyncio
    async def test_requires_start(self):
        provider = AnthropicProvider(Settings(_env_file=None, ANTHROPIC_API_KEY="k"))
        with pytest.raises(RuntimeError, match="start"):
            await provider.complete([Message.user("x")], "system", OPTIONS)
