"""Tests for chat persistence.

Covers database initialization, ChatStore session and message CRUD,
message positions, attachment rows, and the atomic exchange insert.
"""

from __future__ import annotations

from unittest.mock import patch

import aiosqlite
import pytest

from chatrelay.persistence.database import close_db, init_db
from chatrelay.persistence.store import ChatStore
from chatrelay.schemas.chat import AttachmentPayload, Role


# ── Factories ──────────────────────────────────────────────────────


def _make_attachment(**overrides) -> AttachmentPayload:
    defaults = {
        "file_name": "report.pdf",
        "mime_type": "application/pdf",
        "size_bytes": 2048,
        "url": "http://127.0.0.1:4000/uploads/abc.pdf",
        "storage_key": "abc.pdf",
    }
    defaults.update(overrides)
    return AttachmentPayload(**defaults)


# ══════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════


class TestDatabase:
    @pytest.mark.asyncio
    async def test_init_creates_tables(self):
        db = await init_db(":memory:")
        try:
            async with db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name",
            ) as cursor:
                tables = [row[0] for row in await cursor.fetchall()]
            assert tables == ["chat_attachments", "chat_messages", "chat_sessions"]
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_file_database_creates_parent_dirs(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "chat.db"
        db = await init_db(str(path))
        try:
            assert path.exists()
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_init_is_idempotent(self, tmp_path):
        path = str(tmp_path / "chat.db")
        db = await init_db(path)
        await ChatStore(db).create_session("kept")
        await close_db(db)

        db = await init_db(path)
        try:
            sessions = await ChatStore(db).list_sessions()
            assert [s.title for s in sessions] == ["kept"]
        finally:
            await close_db(db)


# ══════════════════════════════════════════════════════════════════
# Sessions
# ══════════════════════════════════════════════════════════════════


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_and_get(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            created = await store.create_session("First chat")
            loaded = await store.get_session(created.id)
            assert loaded is not None
            assert loaded.title == "First chat"
            assert loaded.archived is False
            assert loaded.messages == []
            assert loaded.created_at == created.created_at
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_get_missing(self):
        db = await init_db(":memory:")
        try:
            assert await ChatStore(db).get_session("nope") is None
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_list_most_recent_first(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            older = await store.create_session("older")
            newer = await store.create_session("newer")
            await store.update_session_metadata(older.id)
            sessions = await store.list_sessions()
            assert [s.id for s in sessions] == [older.id, newer.id]
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_archive(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("to archive")
            assert await store.session_status(session.id) is False
            assert await store.archive_session(session.id) is True
            assert await store.archive_session(session.id) is False
            assert await store.session_status(session.id) is True
            assert await store.list_sessions() == []
            archived = await store.list_sessions(include_archived=True)
            assert [s.id for s in archived] == [session.id]
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_status_of_missing_session(self):
        db = await init_db(":memory:")
        try:
            assert await ChatStore(db).session_status("missing") is None
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_delete_cascades(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("doomed")
            await store.append_exchange(session.id, "q", [_make_attachment()], reply="a")

            assert await store.delete_session(session.id) is True
            assert await store.delete_session(session.id) is False
            async with db.execute("SELECT COUNT(*) FROM chat_messages") as cursor:
                assert (await cursor.fetchone())[0] == 0
            async with db.execute("SELECT COUNT(*) FROM chat_attachments") as cursor:
                assert (await cursor.fetchone())[0] == 0
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_update_metadata_title(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("New conversation")
            await store.update_session_metadata(session.id, "Renamed")
            loaded = await store.get_session(session.id)
            assert loaded.title == "Renamed"
            assert loaded.updated_at >= session.updated_at

            await store.update_session_metadata(session.id)
            assert (await store.get_session(session.id)).title == "Renamed"
        finally:
            await close_db(db)


# ══════════════════════════════════════════════════════════════════
# Messages
# ══════════════════════════════════════════════════════════════════


class TestMessages:
    @pytest.mark.asyncio
    async def test_positions_increase(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("chat")
            first = await store.insert_message(session.id, Role.USER, "one")
            second = await store.insert_message(session.id, Role.ASSISTANT, "two")
            assert (first.position, second.position) == (1, 2)

            other = await store.create_session("other")
            assert (await store.insert_message(other.id, Role.USER, "x")).position == 1
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_append_exchange(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("chat")
            user, assistant = await store.append_exchange(
                session.id, "Summarize", [_make_attachment()],
            )
            assert user.role is Role.USER
            assert assistant.role is Role.ASSISTANT
            assert assistant.content == ""
            assert assistant.position == user.position + 1
            assert [a.storage_key for a in user.attachments] == ["abc.pdf"]

            messages = await store.fetch_conversation(session.id)
            assert [m.id for m in messages] == [user.id, assistant.id]
            assert messages[0].attachments[0].file_name == "report.pdf"
            assert messages[1].attachments == []
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_append_exchange_with_reply(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("chat")
            _, assistant = await store.append_exchange(session.id, "q", [], reply="a")
            messages = await store.fetch_conversation(session.id)
            assert messages[-1].id == assistant.id
            assert messages[-1].content == "a"
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_storage_key_derived_from_url(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("chat")
            user, _ = await store.append_exchange(
                session.id,
                "look",
                [
                    _make_attachment(storage_key=None, url="http://host/uploads/k1.png?x=1"),
                    _make_attachment(storage_key=None, url="http://host/uploads/"),
                ],
            )
            assert [a.storage_key for a in user.attachments] == ["k1.png"]
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_append_exchange_is_atomic(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("chat")
            failing = patch.object(
                store,
                "_insert_attachments",
                side_effect=aiosqlite.OperationalError("database is locked"),
            )
            with failing, pytest.raises(aiosqlite.OperationalError):
                await store.append_exchange(session.id, "q", [_make_attachment()])
            assert await store.fetch_conversation(session.id) == []
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_update_message_content(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("chat")
            _, assistant = await store.append_exchange(session.id, "q", [])
            assert await store.update_message_content(assistant.id, "answer") is True
            assert await store.update_message_content("missing", "answer") is False
            messages = await store.fetch_conversation(session.id)
            assert messages[-1].content == "answer"
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_session_snapshot_includes_messages(self):
        db = await init_db(":memory:")
        try:
            store = ChatStore(db)
            session = await store.create_session("chat")
            await store.append_exchange(session.id, "q", [], reply="a")
            snapshot = await store.get_session(session.id)
            assert [(m.role, m.content) for m in snapshot.messages] == [
                (Role.USER, "q"), (Role.ASSISTANT, "a"),
            ]
        finally:
            await close_db(db)

    @pytest.mark.asyncio
    async def test_ping(self):
        db = await init_db(":memory:")
        try:
            assert await ChatStore(db).ping() is True
        finally:
            await close_db(db)
