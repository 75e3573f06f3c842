"""Chat store for sessions, messages, and attachments.

Provides the ChatStore class that wraps low-level database operations
with Pydantic schema serialization/deserialization. Methods raise
aiosqlite.Error on database failures; callers decide how to surface them.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

import aiosqlite

from chatrelay.attachments import storage_key_from_url
from chatrelay.schemas.chat import (
    AttachmentPayload,
    ChatAttachment,
    ChatMessage,
    ChatSession,
    Role,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


class ChatStore:
    """Persistent chat store backed by SQLite.

    All methods are async and operate on an aiosqlite connection
    initialized by database.init_db(). Every public write commits.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        self._db.row_factory = aiosqlite.Row

    # ── Sessions ──────────────────────────────────────────────

    async def create_session(self, title: str) -> ChatSession:
        session_id = _new_id()
        now = _now()
        await self._db.execute(
            "INSERT INTO chat_sessions (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (session_id, title, now, now),
        )
        await self._db.commit()
        logger.info("Created session %s", session_id)
        return ChatSession(
            id=session_id,
            title=title,
            created_at=datetime.fromisoformat(now),
            updated_at=datetime.fromisoformat(now),
        )

    async def list_sessions(self, *, include_archived: bool = False) -> list[ChatSession]:
        """List sessions with their messages, most recently updated first."""
        where = "" if include_archived else "WHERE archived = 0"
        async with self._db.execute(
            f"SELECT * FROM chat_sessions {where} ORDER BY updated_at DESC",  # noqa: S608
        ) as cursor:
            rows = await cursor.fetchall()

        sessions: list[ChatSession] = []
        for row in rows:
            sessions.append(await self._row_to_session(row))
        return sessions

    async def get_session(self, session_id: str) -> ChatSession | None:
        """Retrieve a full session snapshot, or None if it does not exist."""
        async with self._db.execute(
            "SELECT * FROM chat_sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return await self._row_to_session(row)

    async def session_status(self, session_id: str) -> bool | None:
        """Return the session's archived flag, or None if it does not exist."""
        async with self._db.execute(
            "SELECT archived FROM chat_sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return None if row is None else bool(row["archived"])

    async def archive_session(self, session_id: str) -> bool:
        """Archive a live session. Returns False if it is missing or already archived."""
        cursor = await self._db.execute(
            "UPDATE chat_sessions SET archived = 1, updated_at = ? WHERE id = ? AND archived = 0",
            (_now(), session_id),
        )
        await self._db.commit()
        archived = cursor.rowcount > 0
        if archived:
            logger.info("Archived session %s", session_id)
        return archived

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session with its messages and attachments."""
        cursor = await self._db.execute(
            "DELETE FROM chat_sessions WHERE id = ?",
            (session_id,),
        )
        await self._db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted session %s", session_id)
        return deleted

    async def update_session_metadata(self, session_id: str, title: str | None = None) -> None:
        """Touch ``updated_at``, and replace the title when one is given."""
        if title is None:
            await self._db.execute(
                "UPDATE chat_sessions SET updated_at = ? WHERE id = ?",
                (_now(), session_id),
            )
        else:
            await self._db.execute(
                "UPDATE chat_sessions SET title = ?, updated_at = ? WHERE id = ?",
                (title, _now(), session_id),
            )
        await self._db.commit()

    # ── Messages ──────────────────────────────────────────────

    async def insert_message(self, session_id: str, role: Role, content: str) -> ChatMessage:
        """Append a message at the end of the session."""
        message = await self._insert_message(session_id, role, content)
        await self._db.commit()
        return message

    async def insert_attachments(
        self, message_id: str, attachments: list[AttachmentPayload],
    ) -> list[ChatAttachment]:
        rows = await self._insert_attachments(message_id, attachments)
        await self._db.commit()
        return rows

    async def append_exchange(
        self,
        session_id: str,
        content: str,
        attachments: list[AttachmentPayload],
        reply: str = "",
    ) -> tuple[ChatMessage, ChatMessage]:
        """Insert a user turn, its attachments, and the assistant reply.

        All three writes are committed together. Streamed completions
        insert an empty reply and fill it in once the stream ends.

        Returns:
            The stored user message and assistant message.
        """
        try:
            user = await self._insert_message(session_id, Role.USER, content)
            stored = await self._insert_attachments(user.id, attachments)
            assistant = await self._insert_message(session_id, Role.ASSISTANT, reply)
        except aiosqlite.Error:
            await self._db.rollback()
            raise
        await self._db.commit()
        return user.model_copy(update={"attachments": stored}), assistant

    async def update_message_content(self, message_id: str, content: str) -> bool:
        cursor = await self._db.execute(
            "UPDATE chat_messages SET content = ? WHERE id = ?",
            (content, message_id),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def fetch_conversation(self, session_id: str) -> list[ChatMessage]:
        """All messages of a session ordered by position, with attachments."""
        async with self._db.execute(
            "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY position ASC",
            (session_id,),
        ) as cursor:
            message_rows = await cursor.fetchall()

        attachments: dict[str, list[ChatAttachment]] = {}
        async with self._db.execute(
            """
            SELECT a.* FROM chat_attachments a
            JOIN chat_messages m ON m.id = a.message_id
            WHERE m.session_id = ?
            ORDER BY a.created_at ASC
            """,
            (session_id,),
        ) as cursor:
            async for arow in cursor:
                attachments.setdefault(arow["message_id"], []).append(ChatAttachment(
                    id=arow["id"],
                    message_id=arow["message_id"],
                    file_name=arow["file_name"],
                    mime_type=arow["mime_type"],
                    size_bytes=arow["size_bytes"],
                    url=arow["url"],
                    storage_key=arow["storage_key"],
                    created_at=datetime.fromisoformat(arow["created_at"]),
                ))

        return [
            ChatMessage(
                id=mrow["id"],
                session_id=mrow["session_id"],
                role=mrow["role"],
                content=mrow["content"],
                position=mrow["position"],
                created_at=datetime.fromisoformat(mrow["created_at"]),
                attachments=attachments.get(mrow["id"], []),
            )
            for mrow in message_rows
        ]

    async def ping(self) -> bool:
        async with self._db.execute("SELECT 1") as cursor:
            row = await cursor.fetchone()
        return row is not None and row[0] == 1

    # ── Internals ─────────────────────────────────────────────

    async def _insert_message(self, session_id: str, role: Role, content: str) -> ChatMessage:
        message_id = _new_id()
        now = _now()
        await self._db.execute(
            """
            INSERT INTO chat_messages (id, session_id, role, content, position, created_at)
            VALUES (
                ?, ?, ?, ?,
                COALESCE((SELECT MAX(position) FROM chat_messages WHERE session_id = ?), 0) + 1,
                ?
            )
            """,
            (message_id, session_id, role.value, content, session_id, now),
        )
        async with self._db.execute(
            "SELECT position FROM chat_messages WHERE id = ?",
            (message_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return ChatMessage(
            id=message_id,
            session_id=session_id,
            role=role,
            content=content,
            position=row["position"],
            created_at=datetime.fromisoformat(now),
        )

    async def _insert_attachments(
        self, message_id: str, attachments: list[AttachmentPayload],
    ) -> list[ChatAttachment]:
        stored: list[ChatAttachment] = []
        for attachment in attachments:
            key = attachment.storage_key or storage_key_from_url(attachment.url)
            if not key:
                logger.debug("Skipping attachment without storage key: %s", attachment.url)
                continue
            row = ChatAttachment(
                id=_new_id(),
                message_id=message_id,
                file_name=attachment.file_name,
                mime_type=attachment.mime_type,
                size_bytes=attachment.size_bytes,
                url=attachment.url,
                storage_key=key,
                created_at=datetime.fromisoformat(_now()),
            )
            await self._db.execute(
                """
                INSERT INTO chat_attachments
                    (id, message_id, file_name, mime_type, size_bytes, url,
                     storage_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row.id,
                    row.message_id,
                    row.file_name,
                    row.mime_type,
                    row.size_bytes,
                    row.url,
                    row.storage_key,
                    row.created_at.isoformat(),
                ),
            )
            stored.append(row)
        return stored

    async def _row_to_session(self, row: aiosqlite.Row) -> ChatSession:
        return ChatSession(
            id=row["id"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            archived=bool(row["archived"]),
            messages=await self.fetch_conversation(row["id"]),
        )
