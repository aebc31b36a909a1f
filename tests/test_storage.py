"""Tests for SqlSessionStore on a temporary SQLite database."""

import pytest
import pytest_asyncio
from sqlalchemy import select

from loom.api.models import (
    Message,
    Session,
    TextBlock,
    ThinkingBlock,
    ToolFilter,
    ToolResultBlock,
    ToolUseBlock,
)
from loom.storage.database import Database
from loom.storage.models import SessionRecord
from loom.storage.sessions import SqlSessionStore


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.connect()
    yield db
    await db.disconnect()


@pytest.fixture
def store(database) -> SqlSessionStore:
    return SqlSessionStore(database)


def _session() -> Session:
    return Session(
        id="s1",
        model="claude-test",
        system_prompt="Be brief.",
        tool_filter=ToolFilter(allowed=["read_file", "bash"], disabled={"bash"}),
        last_input_tokens=1234,
        messages=[
            Message.user("list the files"),
            Message.assistant([
                ThinkingBlock("I should call list_files", "sig-1"),
                TextBlock("Looking."),
                ToolUseBlock("toolu_1", "list_files", {"pattern": "*"}),
            ]),
            Message.user([ToolResultBlock("toolu_1", "a.py", success=True)]),
            Message.assistant([TextBlock("One file: a.py")]),
        ],
    )


class TestSqlSessionStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        original = _session()

        await store.save_session(original)
        loaded = await store.load_session("s1")

        assert loaded is not None
        assert loaded.model == "claude-test"
        assert loaded.system_prompt == "Be brief."
        assert loaded.messages == original.messages
        assert loaded.tool_filter == original.tool_filter
        assert loaded.last_input_tokens == 1234
        assert not loaded.processing
        assert len(loaded.pending) == 0

    @pytest.mark.asyncio
    async def test_missing(self, store):
        assert await store.load_session("nope") is None

    @pytest.mark.asyncio
    async def test_save_updates_existing_row(self, store, database):
        session = _session()
        await store.save_session(session)
        session.messages.append(Message.user("and again"))

        await store.save_session(session)

        async with database.session() as db_session:
            records = (await db_session.execute(select(SessionRecord))).scalars().all()
        assert len(records) == 1
        assert records[0].message_count == 5

    @pytest.mark.asyncio
    async def test_timestamps_are_timezone_aware(self, store):
        await store.save_session(_session())
        loaded = await store.load_session("s1")

        assert loaded.created_at.tzinfo is not None
        assert loaded.updated_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.save_session(_session())

        assert await store.delete_session("s1")
        assert await store.load_session("s1") is None
        assert not await store.delete_session("s1")
