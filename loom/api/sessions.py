"""Session coordinator -- live sessions, the one-turn-per-session guard, persistence glue.

send_message() checks and sets the processing flag with no await in
between, so on a single event loop two callers can never both start a
turn on the same session; the loser gets SessionBusyError. The flag is
cleared, pending requests are released and the session is saved in a
finally block however the turn ends.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from loom.api.interaction import QuestionBroker
from loom.api.models import ContentBlock, Session, ToolFilter, TurnResult
from loom.api.permissions import PermissionGate
from loom.api.runner import ConversationLoop
from loom.api.subagents import SubAgentSupervisor
from loom.config import Settings
from loom.errors import ErrorKind, SessionBusyError
from loom.events import EventType, Transport
from loom.state import RuntimeState
from loom.storage.sessions import SessionStore

logger = logging.getLogger(__name__)


class SessionCoordinator:
    def __init__(
        self,
        settings: Settings,
        loop: ConversationLoop,
        runtime: RuntimeState,
        store: SessionStore | None = None,
        supervisor: SubAgentSupervisor | None = None,
    ) -> None:
        self._settings = settings
        self._loop = loop
        self._runtime = runtime
        self._store = store
        self._supervisor = supervisor
        self._sessions: dict[str, Session] = {}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def is_processing(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.processing

    async def find(self, session_id: str) -> Session | None:
        """Live session, or one restored from the store. Never creates."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        loaded = await self._load(session_id)
        if loaded is None:
            return None
        return self._sessions.setdefault(session_id, loaded)

    async def get_or_create(self, session_id: str, model: str | None = None) -> Session:
        """Return the live session, loading it from the store or creating it on first use."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        session = await self._load(session_id) or Session(id=session_id, model=model or self._settings.model)
        # Another caller may have created it while the load was awaited
        return self._sessions.setdefault(session_id, session)

    async def _load(self, session_id: str) -> Session | None:
        if self._store is None:
            return None
        try:
            loaded = await self._store.load_session(session_id)
        except Exception:
            logger.warning("Failed to load session %s; starting fresh", session_id, exc_info=True)
            return None
        if loaded is not None:
            logger.info("Restored session %s (%d messages)", session_id, len(loaded.messages))
        return loaded

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send_message(
        self,
        session_id: str,
        content: str | list[ContentBlock],
        transport: Transport | None = None,
        model: str | None = None,
    ) -> TurnResult:
        """Run one turn. Raises SessionBusyError if a turn is already in progress."""
        session = await self.get_or_create(session_id, model)
        if session.processing:
            raise SessionBusyError(session_id)
        session.processing = True

        if model:
            session.model = model
        session.cancel_token.reset()
        if transport is not None:
            session.transport.bind(transport, busy=False)

        try:
            result = await self._loop.run(session, content)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unhandled error in turn for session %s", session_id)
            result = TurnResult(stop_reason="error", error=str(e), error_kind=ErrorKind.PROVIDER_FATAL)
            await session.emit(EventType.ERROR, message=str(e), error_kind=ErrorKind.PROVIDER_FATAL)
        finally:
            session.processing = False
            session.pending.cancel_all()
            session.updated_at = datetime.now(UTC)
            if transport is not None:
                session.transport.release(transport)
            if self._supervisor is not None:
                await self._supervisor.release(session_id)
            if self._sessions.get(session_id) is session:
                await self._save(session)
        return result

    async def _save(self, session: Session) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_session(session)
        except Exception:
            logger.warning("Failed to persist session %s", session.id, exc_info=True)

    # ------------------------------------------------------------------
    # Transport / interaction
    # ------------------------------------------------------------------

    def bind_transport(self, session_id: str, transport: Transport) -> bool:
        """Attach a new connection to a live session. Refused mid-turn."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return session.transport.bind(transport, busy=session.processing)

    def cancel(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.cancel_token.cancel()
        released = session.pending.cancel_all()
        logger.info("Cancelled session %s (%d pending requests released)", session_id, released)
        return True

    def respond_permission(self, session_id: str, request_id: str, approved: bool, remember: bool = False) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return PermissionGate.respond(session, request_id, approved, remember)

    def answer_question(self, session_id: str, request_id: str, answer: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return QuestionBroker.answer(session, request_id, answer)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def _idle_session(self, session_id: str) -> Session | None:
        """Existing session that may be reconfigured. Raises SessionBusyError mid-turn."""
        session = await self.find(session_id)
        if session is not None and session.processing:
            raise SessionBusyError(session_id)
        return session

    async def available_tools(self, session_id: str) -> list[dict[str, Any]] | None:
        """Every registered tool with whether this session may use it."""
        session = await self.find(session_id)
        if session is None:
            return None
        dispatcher = self._loop.dispatcher
        return [
            {"name": name, "enabled": dispatcher.is_enabled(name, session)}
            for name in dispatcher.tool_names
        ]

    async def update_tool_filter(self, session_id: str, tool_filter: ToolFilter) -> Session | None:
        session = await self._idle_session(session_id)
        if session is None:
            return None
        session.tool_filter = tool_filter
        logger.info("Updated tool filter for session %s: %s", session_id, tool_filter.to_dict())
        await self._touch(session)
        return session

    async def system_prompt(self, session_id: str) -> dict[str, str | None] | None:
        """The session's own prompt and the full prompt the next turn will send."""
        session = await self.find(session_id)
        if session is None:
            return None
        current = await self._loop.prompt_builder.build(session)
        return {"configured": session.system_prompt, "current": current}

    async def update_system_prompt(self, session_id: str, prompt: str | None) -> Session | None:
        """Set the session's system prompt; None restores the configured default."""
        session = await self._idle_session(session_id)
        if session is None:
            return None
        session.system_prompt = prompt
        await self._touch(session)
        return session

    async def set_model(self, session_id: str, model: str) -> Session | None:
        session = await self._idle_session(session_id)
        if session is None:
            return None
        session.model = model
        await self._touch(session)
        return session

    async def clear_history(self, session_id: str) -> Session | None:
        """Drop the conversation history. Configuration is kept."""
        session = await self._idle_session(session_id)
        if session is None:
            return None
        session.messages = []
        session.last_input_tokens = 0
        self._runtime.forget_session(session_id)
        logger.info("Cleared history of session %s", session_id)
        await self._touch(session)
        return session

    async def _touch(self, session: Session) -> None:
        session.updated_at = datetime.now(UTC)
        await self._save(session)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def delete(self, session_id: str) -> bool:
        """Cancel and forget a session, in memory and in the store."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.cancel_token.cancel()
            session.pending.cancel_all()
        if self._supervisor is not None:
            await self._supervisor.release(session_id, stop_running=True)
        self._runtime.forget_session(session_id)

        deleted = False
        if self._store is not None:
            try:
                deleted = await self._store.delete_session(session_id)
            except Exception:
                logger.warning("Failed to delete stored session %s", session_id, exc_info=True)
        return session is not None or deleted

    async def shutdown(self) -> None:
        """Cancel running turns and children, then save every live session."""
        for session in self._sessions.values():
            if session.processing:
                session.cancel_token.cancel()
                session.pending.cancel_all()
        if self._supervisor is not None:
            await self._supervisor.shutdown()
        for session in list(self._sessions.values()):
            await self._save(session)
        logger.info("Session coordinator stopped (%d sessions saved)", len(self._sessions))
