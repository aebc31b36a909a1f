"""Tests for context compaction.

Tests cover:
- TokenEstimator heuristic and calibration
- Threshold checks (heuristic and last actual input tokens)
- Session memory tier (size limit, strictly-smaller rule)
- Summary tier (transcript request, failure handling)
- compact() never mutating the session
"""

import pytest

from loom.api.compaction import (
    SESSION_MEMORY_HEADER,
    SUMMARY_HEADER,
    SUMMARY_SYSTEM_PROMPT,
    ConversationCompactor,
    SessionMemory,
    TokenEstimator,
)
from loom.api.models import Message, TextBlock, ToolResultBlock, ToolUseBlock
from loom.errors import ProviderError
from tests.conftest import FakeProvider, _make_settings, make_session

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _long_history(pairs: int = 10, chars: int = 4000) -> list[Message]:
    messages = []
    for i in range(pairs):
        messages.append(Message.user(f"request {i} " + "u" * chars))
        messages.append(Message.assistant([TextBlock(f"answer {i} " + "a" * chars)]))
    return messages


# ---------------------------------------------------------------------------
# TokenEstimator
# ---------------------------------------------------------------------------


class TestTokenEstimator:
    def test_chars_over_four(self):
        estimator = TokenEstimator()
        assert estimator.estimate("x" * 400) == 100
        assert estimator.estimate("x" * 401) == 101

    def test_estimate_messages_counts_blocks(self):
        estimator = TokenEstimator()
        messages = [
            Message.user("x" * 40),
            Message.assistant([TextBlock("y" * 40)]),
            Message.user([ToolResultBlock("t1", "z" * 40)]),
        ]
        assert estimator.estimate_messages(messages) == 30

    def test_calibration_moves_toward_observed(self):
        estimator = TokenEstimator()
        estimator.calibrate(input_chars=1000, actual_tokens=500)

        assert estimator.samples == 1
        assert estimator.ratio == pytest.approx(0.1 * 0.5 + 0.9 * 0.25)

    def test_calibration_clamps_outliers(self):
        estimator = TokenEstimator()
        estimator.calibrate(input_chars=10, actual_tokens=10_000)
        assert estimator.ratio == pytest.approx(0.1 * 1.0 + 0.9 * 0.25)

    def test_calibration_ignores_empty(self):
        estimator = TokenEstimator()
        estimator.calibrate(0, 100)
        estimator.calibrate(100, 0)
        assert estimator.samples == 0


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


class TestShouldCompact:
    def test_threshold_is_fraction_of_window(self, settings):
        compactor = ConversationCompactor(settings, FakeProvider())
        assert compactor.threshold("claude-test") == 160_000
        assert compactor.context_window("claude-test[1m]") == 1_000_000

    def test_actual_tokens_trigger(self, tmp_path):
        # 100k window, 0.8 fraction: threshold 80k; 90% of the window must compact
        settings = _make_settings(tmp_path, default_context_window=100_000)
        compactor = ConversationCompactor(settings, FakeProvider())

        assert compactor.should_compact([Message.user("short")], "m", last_input_tokens=90_000)
        assert not compactor.should_compact([Message.user("short")], "m", last_input_tokens=70_000)

    def test_heuristic_trigger(self, tmp_path):
        settings = _make_settings(tmp_path, default_context_window=10_000)
        compactor = ConversationCompactor(settings, FakeProvider())

        assert compactor.should_compact(_long_history(pairs=5), "m")

    def test_disabled(self, tmp_path):
        settings = _make_settings(tmp_path, default_context_window=10_000, compaction_enabled=False)
        compactor = ConversationCompactor(settings, FakeProvider())

        assert not compactor.should_compact(_long_history(pairs=5), "m", last_input_tokens=50_000)


# ---------------------------------------------------------------------------
# compact()
# ---------------------------------------------------------------------------


class TestCompact:
    @pytest.mark.asyncio
    async def test_session_memory_preferred(self, settings, tmp_path):
        memory = SessionMemory(str(tmp_path / "memory"))
        await memory.write("s1", "The user is refactoring the parser.")
        provider = FakeProvider()
        compactor = ConversationCompactor(settings, provider, memory)
        session = make_session(settings, messages=_long_history())

        result = await compactor.compact(session)

        assert result.was_compacted
        assert result.strategy == "session_memory"
        assert len(result.messages) == 1
        assert result.messages[0].text.startswith(SESSION_MEMORY_HEADER)
        assert "refactoring the parser" in result.messages[0].text
        assert provider.complete_calls == []

    @pytest.mark.asyncio
    async def test_oversized_memory_falls_back_to_summary(self, tmp_path):
        settings = _make_settings(tmp_path, default_context_window=10_000)
        memory = SessionMemory(str(tmp_path / "memory"))
        # threshold 8000 * 0.5 ratio = 4000 tokens; this memory is ~5000
        await memory.write("s1", "m" * 20_000)
        provider = FakeProvider(summary="Short summary.")
        compactor = ConversationCompactor(settings, provider, memory)
        session = make_session(settings, messages=_long_history())

        result = await compactor.compact(session)

        assert result.strategy == "summary"
        assert result.messages == [Message.user(f"{SUMMARY_HEADER}\nShort summary.")]
        assert len(provider.complete_calls) == 1

    @pytest.mark.asyncio
    async def test_summary_request_is_single_transcript_message(self, settings):
        provider = FakeProvider()
        compactor = ConversationCompactor(settings, provider)
        messages = [
            Message.user("please list files"),
            Message.assistant([TextBlock("Listing."), ToolUseBlock("t1", "list_files", {"path": "."})]),
            Message.user([ToolResultBlock("t1", "a.py\nb.py")]),
            Message.assistant([TextBlock("Found two files. " + "x" * 2000)]),
        ]
        session = make_session(settings, messages=messages)

        await compactor.compact(session)

        call = provider.complete_calls[0]
        assert call["system_prompt"] == SUMMARY_SYSTEM_PROMPT
        [request] = call["messages"]
        assert request.role == "user"
        assert "[Called tool list_files" in request.text
        assert "[Tool result: a.py" in request.text

    @pytest.mark.asyncio
    async def test_not_smaller_is_rejected(self, settings):
        provider = FakeProvider(summary="s" * 10_000)
        compactor = ConversationCompactor(settings, provider)
        original = [Message.user("hi"), Message.assistant([TextBlock("hello")])]
        session = make_session(settings, messages=list(original))

        result = await compactor.compact(session)

        assert not result.was_compacted
        assert result.messages == original

    @pytest.mark.asyncio
    async def test_summary_failure_returns_original(self, settings):
        provider = FakeProvider()
        provider.complete_error = ProviderError("HTTP 500: api_error: boom", 500)
        compactor = ConversationCompactor(settings, provider)
        session = make_session(settings, messages=_long_history(pairs=3))

        result = await compactor.compact(session)

        assert not result.was_compacted
        assert result.messages == session.messages

    @pytest.mark.asyncio
    async def test_never_mutates_session(self, settings):
        compactor = ConversationCompactor(settings, FakeProvider())
        history = _long_history(pairs=3)
        session = make_session(settings, messages=history, last_input_tokens=50_000)
        before = [m.to_dict() for m in history]

        result = await compactor.compact(session)

        assert result.was_compacted
        assert session.messages is history
        assert [m.to_dict() for m in session.messages] == before
        assert session.last_input_tokens == 50_000

    @pytest.mark.asyncio
    async def test_saved_tokens_uses_actual_count(self, settings):
        compactor = ConversationCompactor(settings, FakeProvider(summary="tiny"))
        session = make_session(settings, messages=_long_history(pairs=2), last_input_tokens=20_000)

        result = await compactor.compact(session)

        new_tokens = compactor.estimator.estimate_messages(result.messages)
        assert result.saved_tokens == 20_000 - new_tokens

    @pytest.mark.asyncio
    async def test_empty_history(self, settings):
        result = await ConversationCompactor(settings, FakeProvider()).compact(make_session(settings))
        assert not result.was_compacted


class TestSessionMemory:
    @pytest.mark.asyncio
    async def test_missing_and_blank(self, tmp_path):
        memory = SessionMemory(str(tmp_path))
        assert await memory.read("nope") is None
        await memory.write("blank", "   \n")
        assert await memory.read("blank") is None

    def test_path_sanitized(self, tmp_path):
        memory = SessionMemory(str(tmp_path))
        assert memory.path_for("a/b:c").parent.name == "a-b-c"
