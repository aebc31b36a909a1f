"""ask_user -- lets the model put questions to the user mid-turn.

The turn suspends until the transport relays an answer. Each question
waits at most question_timeout seconds; a timeout, a cancelled session or
a missing transport resolves the tool call as failed instead of hanging.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from loom.api.models import Session, ToolData, ToolResult
from loom.api.tools import ToolDispatcher
from loom.config import Settings
from loom.errors import ErrorKind
from loom.events import EventType
from loom.state import RuntimeState

logger = logging.getLogger(__name__)

ASK_USER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Ask the user one or more questions and wait for their answers. "
        "Use this when a decision genuinely needs the user's input."
    ),
    "properties": {
        "questions": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string", "description": "The question to ask"},
                    "header": {"type": "string", "description": "Short label for the question"},
                    "options": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Suggested answers, if any",
                    },
                },
                "required": ["question"],
            },
        },
    },
    "required": ["questions"],
}


class QuestionBroker:
    """Handles the ask_user tool and routes answers back to waiting turns."""

    def __init__(self, settings: Settings, runtime: RuntimeState) -> None:
        self._settings = settings
        self._runtime = runtime

    def register(self, dispatcher: ToolDispatcher) -> None:
        dispatcher.register_interceptor("ask_user", self.ask_user, ASK_USER_SCHEMA)

    async def ask_user(self, tool_input: dict[str, Any], session: Session) -> ToolResult:
        questions = tool_input.get("questions") or []
        if not isinstance(questions, list) or not questions:
            return ToolResult.fail("ask_user requires a non-empty 'questions' list")
        if not session.transport.is_open:
            return ToolResult.fail("No interactive user is connected; cannot ask questions")

        answers: list[tuple[str, str]] = []
        for item in questions:
            question = item.get("question", "") if isinstance(item, dict) else str(item)
            answer = await self._ask_one(session, question, item if isinstance(item, dict) else {})
            if isinstance(answer, ToolResult):
                return answer
            answers.append((question, answer))

        rendered = ", ".join(f'"{q}"="{a}"' for q, a in answers)
        return ToolResult.ok(
            f"User has answered your questions: {rendered}. "
            "You can now continue with the user's answers in mind.",
            data=ToolData("ask_user", {"answers": dict(answers)}),
        )

    async def _ask_one(self, session: Session, question: str, details: dict[str, Any]) -> str | ToolResult:
        if session.cancelled:
            return ToolResult.fail("Session was cancelled", ErrorKind.CANCELLED)

        request_id = self._runtime.next_id("question")
        future = session.pending.create(request_id, "question")
        timeout = self._settings.question_timeout
        try:
            await session.emit(
                EventType.QUESTION_REQUEST,
                request_id=request_id,
                question=question,
                header=details.get("header"),
                options=details.get("options") or [],
            )
            answer = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Question %s timed out after %ss", request_id, timeout)
            return ToolResult.fail(f"No answer received within {timeout:g}s for question: {question}")
        finally:
            session.pending.discard(request_id)

        if answer is None:
            return ToolResult.fail("Question was cancelled before the user answered", ErrorKind.CANCELLED)
        return str(answer)

    @staticmethod
    def answer(session: Session, request_id: str, answer: str) -> bool:
        """Deliver the user's answer. False if no such question is pending."""
        return session.pending.resolve(request_id, answer, kind="question")
