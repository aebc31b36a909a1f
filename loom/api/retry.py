"""Retry policy for provider failures.

classify_error() sorts a failure into transient-network, prompt-too-long
or fatal. RetryPolicy.decide() turns that classification plus the turn's
RetryState into a RetryDecision. decide() updates the counters in
RetryState itself, so the loop only has to act on the returned action.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

import httpx

from loom.api.models import RetryState
from loom.errors import ErrorKind

logger = logging.getLogger(__name__)

TRANSIENT_PATTERNS = (
    "connection error",
    "econnreset",
    "etimedout",
    "enotfound",
    "econnrefused",
    "fetch failed",
    "network error",
    "socket hang up",
    "timed out",
    "overloaded_error",
    "rate_limit_error",
)
PROMPT_TOO_LONG_PATTERN = "prompt is too long"
_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504, 529})


def _messages(error: BaseException) -> list[str]:
    """Error message plus its cause/context chain, lowercased."""
    seen: list[str] = []
    current: BaseException | None = error
    while current is not None and len(seen) < 5:
        seen.append(str(current).lower())
        current = current.__cause__ or current.__context__
    return seen


def classify_error(error: BaseException) -> ErrorKind:
    messages = _messages(error)
    if any(PROMPT_TOO_LONG_PATTERN in m for m in messages):
        return ErrorKind.PROMPT_TOO_LARGE
    if isinstance(error, httpx.TransportError) or isinstance(error.__cause__, httpx.TransportError):
        return ErrorKind.TRANSIENT_NETWORK
    if getattr(error, "status_code", None) in _TRANSIENT_STATUS:
        return ErrorKind.TRANSIENT_NETWORK
    if any(pattern in m for m in messages for pattern in TRANSIENT_PATTERNS):
        return ErrorKind.TRANSIENT_NETWORK
    return ErrorKind.PROVIDER_FATAL


@dataclass
class RetryDecision:
    action: Literal["retry", "compact", "surface"]
    kind: ErrorKind
    delay: float = 0.0


class RetryPolicy:
    """Exponential backoff for transient errors, one forced compaction for oversized prompts."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number attempt (1-based): base, 2*base, 4*base, ..."""
        return self.base_delay * (2 ** (attempt - 1))

    def decide(self, error: BaseException, state: RetryState) -> RetryDecision:
        kind = classify_error(error)

        if kind == ErrorKind.TRANSIENT_NETWORK:
            if state.has_streamed:
                logger.warning("Transient error after output streamed; not retrying: %s", error)
                return RetryDecision("surface", kind)
            if state.network_retries >= self.max_retries:
                logger.warning("Transient error, retries exhausted (%d): %s", state.network_retries, error)
                return RetryDecision("surface", kind)
            state.network_retries += 1
            delay = self.delay_for(state.network_retries)
            logger.warning(
                "Transient provider error, retry %d/%d in %.1fs: %s",
                state.network_retries,
                self.max_retries,
                delay,
                error,
            )
            return RetryDecision("retry", kind, delay)

        if kind == ErrorKind.PROMPT_TOO_LARGE:
            if state.force_compacted or state.has_streamed:
                return RetryDecision("surface", kind)
            state.force_compacted = True
            state.network_retries = 0
            logger.warning("Prompt too long; forcing compaction before retry")
            return RetryDecision("compact", kind)

        return RetryDecision("surface", kind)
