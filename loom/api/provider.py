"""Anthropic Messages API client -- streaming and one-shot calls over httpx.

AnthropicProvider.stream() turns the SSE response into a flat sequence
of ProviderEvent objects (thinking, text, tool_use_start, tool_use_delta,
usage, stop, error). It does not retry: error classification and backoff
belong to the Conversation Loop's retry policy, which knows whether any
output already reached the user.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from loom.api.models import ApiResponse, Message
from loom.config import Settings
from loom.errors import ProviderError

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"


@dataclass
class StreamOptions:
    """Per-call knobs for a provider request."""

    model: str
    max_tokens: int
    thinking_budget: int | None = None


@dataclass
class ProviderEvent:
    """A single event from the provider stream."""

    type: str  # thinking, signature, text, tool_use_start, tool_use_delta, usage, stop, error, block_stop
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    status_code: int | None = None
    block_index: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


class Provider(Protocol):
    """What the loop and compactor need from a model provider."""

    def stream(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
        options: StreamOptions,
    ) -> AsyncIterator[ProviderEvent]: ...

    async def complete(
        self,
        messages: list[Message],
        system_prompt: str,
        options: StreamOptions,
    ) -> ApiResponse: ...


def _parse_sse_event(data: dict[str, Any]) -> list[ProviderEvent]:
    """Parse one Anthropic SSE data payload into provider events.

    Ping keepalives produce nothing. stop_reason arrives in
    message_delta.delta, not message_start. In-stream error events
    (HTTP 200 with an error body) become error events.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return []

    if event_type == "error":
        error = data.get("error", {})
        return [ProviderEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )]

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage", {})
        return [ProviderEvent(
            type="usage",
            input_tokens=(
                usage.get("input_tokens", 0)
                + usage.get("cache_read_input_tokens", 0)
                + usage.get("cache_creation_input_tokens", 0)
            ),
        )]

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return [ProviderEvent(
                type="tool_use_start",
                tool_id=block.get("id", ""),
                tool_name=block.get("name", ""),
                block_index=block_index,
            )]
        return []

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return [ProviderEvent(type="text", text=delta.get("text", ""), block_index=block_index)]
        if delta_type == "thinking_delta":
            return [ProviderEvent(type="thinking", text=delta.get("thinking", ""), block_index=block_index)]
        if delta_type == "signature_delta":
            return [ProviderEvent(type="signature", text=delta.get("signature", ""), block_index=block_index)]
        if delta_type == "input_json_delta":
            return [ProviderEvent(
                type="tool_use_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )]
        return []

    if event_type == "message_delta":
        events = []
        usage = data.get("usage")
        if usage:
            events.append(ProviderEvent(type="usage", output_tokens=usage.get("output_tokens", 0)))
        events.append(ProviderEvent(
            type="stop",
            stop_reason=data.get("delta", {}).get("stop_reason") or "end_turn",
        ))
        return events

    return []


def _error_message(status_code: int, body: bytes) -> str:
    """Render an HTTP error body the way classify_error() expects to see it."""
    text = body.decode("utf-8", errors="replace")
    try:
        error = json.loads(text).get("error", {})
        return f"HTTP {status_code}: {error.get('type', 'unknown')}: {error.get('message', '')}"
    except (ValueError, AttributeError):
        return f"HTTP {status_code}: {text[:500]}"


class AnthropicProvider:
    """Direct httpx client for the Anthropic Messages API.

    Call start() before use and close() on shutdown. Auth selection:
    ANTHROPIC_AUTH_TOKEN (Bearer) wins over ANTHROPIC_API_KEY (x-api-key);
    OAT tokens passed as an API key are sent as Bearer with the OAuth beta
    headers.
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""

        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
            if "sk-ant-oat" in auth_token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
        elif api_key:
            if "sk-ant-oat" in api_key:
                headers["authorization"] = f"Bearer {api_key}"
                headers["anthropic-beta"] = "oauth-2025-04-20"
            else:
                headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        auth_type = "Bearer token" if "authorization" in headers else "API key"
        logger.info("Provider client initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        messages: list[Message],
        system_prompt: str,
        options: StreamOptions,
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build the Messages API request body. Shared by stream() and complete()."""
        api_messages = [m.to_api() for m in messages]
        payload: dict[str, Any] = {
            "model": options.model.replace("[1m]", ""),
            "max_tokens": options.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            # Drop messages left empty once unsigned thinking is filtered out
            "messages": [m for m in api_messages if m["content"]],
        }
        if tools:
            payload["tools"] = tools
        if options.thinking_budget:
            payload["thinking"] = {"type": "enabled", "budget_tokens": options.thinking_budget}
        if stream:
            payload["stream"] = True
        return payload

    def _require_client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def stream(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
        options: StreamOptions,
    ) -> AsyncIterator[ProviderEvent]:
        """Stream one model response.

        HTTP errors and in-stream errors are yielded as a final error
        event. Transport failures (httpx.TransportError) propagate to the
        caller, which classifies them.
        """
        http = self._require_client()
        payload = self._build_payload(messages, system_prompt, options, tools, stream=True)

        async with http.stream("POST", "/v1/messages", json=payload) as response:
            if response.status_code != 200:
                body = await response.aread()
                yield ProviderEvent(
                    type="error",
                    text=_error_message(response.status_code, body),
                    status_code=response.status_code,
                )
                return

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed SSE line: %s", line[:200])
                    continue
                for event in _parse_sse_event(data):
                    yield event
                    if event.type == "error":
                        return

    async def complete(
        self,
        messages: list[Message],
        system_prompt: str,
        options: StreamOptions,
    ) -> ApiResponse:
        """Single non-streaming call without tools (used for summaries)."""
        http = self._require_client()
        payload = self._build_payload(messages, system_prompt, options)
        try:
            response = await http.post("/v1/messages", json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"Connection error: {e}") from e

        if response.status_code != 200:
            raise ProviderError(
                _error_message(response.status_code, response.content),
                status_code=response.status_code,
            )
        data = response.json()
        return ApiResponse(
            content=data.get("content", []),
            stop_reason=data.get("stop_reason", ""),
            usage=data.get("usage"),
        )
