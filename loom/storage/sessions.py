"""Durable session storage.

SessionStore is the contract the Session Coordinator consumes;
SqlSessionStore implements it on the SQLAlchemy async engine. Only the
conversation itself is stored (messages, model, configuration); runtime
state such as pending requests and the transport is rebuilt on load.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import delete

from loom.api.models import Message, Session, ToolFilter
from loom.storage.database import Database
from loom.storage.models import SessionRecord

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def load_session(self, session_id: str) -> Session | None: ...

    async def save_session(self, session: Session) -> None: ...

    async def delete_session(self, session_id: str) -> bool: ...


def _aware(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(UTC)
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class SqlSessionStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def load_session(self, session_id: str) -> Session | None:
        async with self._db.session() as db_session:
            record = await db_session.get(SessionRecord, session_id)
            if record is None:
                return None
            return Session(
                id=record.id,
                model=record.model,
                messages=[Message.from_dict(m) for m in record.messages or []],
                system_prompt=record.system_prompt,
                tool_filter=ToolFilter.from_dict(record.tool_filter),
                last_input_tokens=record.last_input_tokens or 0,
                created_at=_aware(record.created_at),
                updated_at=_aware(record.updated_at),
            )

    async def save_session(self, session: Session) -> None:
        messages = [m.to_dict() for m in session.messages]
        async with self._db.session() as db_session:
            record = await db_session.get(SessionRecord, session.id)
            if record is None:
                record = SessionRecord(id=session.id, created_at=session.created_at)
                db_session.add(record)
            record.model = session.model
            record.system_prompt = session.system_prompt
            record.tool_filter = session.tool_filter.to_dict()
            record.messages = messages
            record.message_count = len(messages)
            record.last_input_tokens = session.last_input_tokens
            record.updated_at = session.updated_at
            await db_session.commit()
        logger.debug("Saved session %s (%d messages)", session.id, len(messages))

    async def delete_session(self, session_id: str) -> bool:
        async with self._db.session() as db_session:
            result = await db_session.execute(
                delete(SessionRecord).where(SessionRecord.id == session_id)
            )
            await db_session.commit()
            return (result.rowcount or 0) > 0
