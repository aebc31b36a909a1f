"""Error taxonomy for the conversation runtime.

Expected outcomes (unknown tool, denial, timeout, hook veto) are reported
as ErrorKind values on results. The exception classes below are raised
only for faults and misuse of the runtime API.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_DISABLED = "tool_disabled"
    PERMISSION_DENIED = "permission_denied"
    PERMISSION_TIMEOUT = "permission_timeout"
    HOOK_REJECTED = "hook_rejected"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    TRANSIENT_NETWORK = "transient_network"
    PROMPT_TOO_LARGE = "prompt_too_large"
    PROVIDER_FATAL = "provider_fatal"
    COMPACTION_FAILED = "compaction_failed"
    CANCELLED = "cancelled"


class LoomError(Exception):
    """Base class for runtime faults."""


class ProviderError(LoomError):
    """The provider stream reported an error or the request failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SessionBusyError(LoomError):
    """A turn is already running on this session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is already processing a message")
        self.session_id = session_id

