"""Event publisher for streamed completions.

Bridges a classified span sequence to the outbound event channel of one
client connection, then reconciles the answer with the chat store.

Event order for one run:
    session                 snapshot, in-progress assistant message empty
    token | reasoning  *    one per classified span
    final | error           exactly one, nothing after it

Persistence does not depend on the client: if the channel was closed by a
disconnect, sends are dropped and the answer is still stored.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import aiosqlite

from chatrelay.errors import PersistenceError, UpstreamError
from chatrelay.persistence.store import ChatStore
from chatrelay.schemas.chat import ChatSession
from chatrelay.schemas.streaming import EventType, OutboundEvent, SpanKind
from chatrelay.streaming.channel import EventChannel

if TYPE_CHECKING:
    from chatrelay.providers.base import CompletionStream

logger = logging.getLogger(__name__)

TitleSource = Callable[[str], Awaitable[str]]


class EventPublisher:
    """Publishes one streamed completion and stores its answer.

    Args:
        store: Chat store receiving the answer and session metadata.
        title_for: Produces a session title from the first user turn.
                   A failure keeps the session's current title.
    """

    def __init__(self, store: ChatStore, title_for: TitleSource | None = None) -> None:
        self._store = store
        self._title_for = title_for

    async def run(
        self,
        stream: CompletionStream,
        channel: EventChannel,
        chat_id: str,
        message_id: str,
        *,
        first_turn: str | None = None,
    ) -> str | None:
        """Drive the stream to completion.

        Args:
            stream: Open upstream stream. Closed before this returns.
            channel: Outbound channel of the client connection.
            chat_id: Session the message belongs to.
            message_id: Assistant message receiving the answer.
            first_turn: User text of the session's first exchange, when a
                        title should be generated.

        Returns:
            The persisted answer text, or None if an error event was sent.
        """
        try:
            return await self._publish(stream, channel, chat_id, message_id, first_turn)
        except Exception as e:
            logger.exception("Streaming message %s failed", message_id)
            await self._send_error(channel, chat_id, message_id, str(e))
            return None
        finally:
            await stream.aclose()
            await channel.finish()

    async def _publish(
        self,
        stream: CompletionStream,
        channel: EventChannel,
        chat_id: str,
        message_id: str,
        first_turn: str | None,
    ) -> str | None:
        try:
            snapshot = await self._snapshot(chat_id)
        except PersistenceError as e:
            logger.error("Snapshot of session %s failed: %s", chat_id, e)
            await self._send_error(channel, chat_id, message_id, str(e))
            return None

        await channel.send(OutboundEvent(
            type=EventType.SESSION,
            chat_id=chat_id,
            message_id=message_id,
            session=snapshot.with_blank_message(message_id),
        ))

        answer_parts: list[str] = []
        client_gone = False
        try:
            async for span in stream.spans():
                if span.kind is SpanKind.ANSWER:
                    answer_parts.append(span.text)
                delivered = await channel.send(OutboundEvent.for_span(span, chat_id, message_id))
                if not delivered and not client_gone:
                    client_gone = True
                    logger.warning(
                        "Client disconnected from message %s, finishing without delivery",
                        message_id,
                    )
        except UpstreamError as e:
            logger.warning(
                "Upstream stream for message %s dropped, keeping partial answer: %s",
                message_id, e,
            )

        answer = "".join(answer_parts)
        try:
            final = await self._reconcile(chat_id, message_id, answer, first_turn)
        except PersistenceError as e:
            logger.error("Persisting message %s failed: %s", message_id, e)
            await self._send_error(channel, chat_id, message_id, str(e))
            return None

        await channel.send(OutboundEvent(
            type=EventType.FINAL, chat_id=chat_id, message_id=message_id, session=final,
        ))
        logger.info("Stored answer for message %s (%d chars)", message_id, len(answer))
        return answer

    async def _reconcile(
        self, chat_id: str, message_id: str, answer: str, first_turn: str | None,
    ) -> ChatSession:
        try:
            await self._store.update_message_content(message_id, answer)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Could not store the answer: {e}") from e

        title = None
        if first_turn is not None and self._title_for is not None:
            try:
                title = await self._title_for(first_turn)
            except Exception:
                logger.exception("Title for session %s failed, keeping the current one", chat_id)

        try:
            await self._store.update_session_metadata(chat_id, title)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Could not update session {chat_id}: {e}") from e
        return await self._snapshot(chat_id)

    async def _snapshot(self, chat_id: str) -> ChatSession:
        try:
            session = await self._store.get_session(chat_id)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Could not load session {chat_id}: {e}") from e
        if session is None:
            raise PersistenceError(f"Session {chat_id} no longer exists")
        return session

    async def _send_error(
        self, channel: EventChannel, chat_id: str, message_id: str, message: str,
    ) -> None:
        await channel.send(OutboundEvent(
            type=EventType.ERROR, chat_id=chat_id, message_id=message_id, message=message,
        ))
