"""Conversation service: session lifecycle and completion flows.

Sits between the HTTP handlers and the pipeline. Validates requests
before any upstream call, opens the upstream stream before anything is
written so a refused request leaves the store untouched, then records
the exchange either at once (buffered) or through the EventPublisher
(streamed).

Only one completion may run against a session at a time; a second
request is refused with SessionBusyError until the first one has stored
its answer.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import aiosqlite

from chatrelay.errors import (
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    SessionBusyError,
)
from chatrelay.orchestrator import CompletionOrchestrator
from chatrelay.persistence.store import ChatStore
from chatrelay.providers.base import CompletionStream
from chatrelay.schemas.chat import (
    ChatMessage,
    ChatMessagePayload,
    ChatSession,
    CompletionRequest,
    CreateMessageRequest,
    RegenerateRequest,
    Role,
    conversation_to_payload,
)
from chatrelay.schemas.gateway import GatewaySettings, ModelChoice
from chatrelay.streaming.channel import EventChannel
from chatrelay.streaming.publisher import EventPublisher

logger = logging.getLogger(__name__)


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Re-raise database failures as PersistenceError."""
    try:
        yield
    except aiosqlite.Error as e:
        logger.exception("Store failure while trying to %s", action)
        raise PersistenceError(f"Could not {action}: {e}") from e


class SessionGuard:
    """Set of sessions with a completion in flight."""

    def __init__(self) -> None:
        self._busy: set[str] = set()

    def claim(self, session_id: str) -> None:
        if session_id in self._busy:
            raise SessionBusyError("A reply is already being generated for this conversation")
        self._busy.add(session_id)

    def release(self, session_id: str) -> None:
        self._busy.discard(session_id)

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._busy


@dataclass
class PendingReply:
    """A streamed completion whose upstream is open and whose rows exist."""

    chat_id: str
    message_id: str
    model: ModelChoice
    stream: CompletionStream
    first_turn: str | None = None


class ConversationService:
    """Session operations and completion flows over one store.

    Args:
        store: Chat store shared by the process.
        orchestrator: Runs the upstream completions.
        settings: Gateway settings (default model, default title).
    """

    def __init__(
        self,
        store: ChatStore,
        orchestrator: CompletionOrchestrator,
        settings: GatewaySettings,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._settings = settings
        self._guard = SessionGuard()

    @property
    def guard(self) -> SessionGuard:
        return self._guard

    def resolve_model(self, value: str | None) -> ModelChoice:
        return ModelChoice.from_client(value, self._settings.default_model)

    # ── Sessions ──────────────────────────────────────────────

    async def list_sessions(self) -> list[ChatSession]:
        with store_errors("list conversations"):
            return await self._store.list_sessions()

    async def create_session(self, title: str | None = None) -> ChatSession:
        title = (title or "").strip() or self._settings.default_title
        with store_errors("create the conversation"):
            return await self._store.create_session(title)

    async def archive_session(self, session_id: str) -> None:
        with store_errors("archive the conversation"):
            if await self._store.archive_session(session_id):
                return
            status = await self._store.session_status(session_id)
        if status is None:
            raise NotFoundError("Conversation not found")
        raise InvalidRequestError("This conversation is already archived")

    async def delete_session(self, session_id: str) -> None:
        with store_errors("delete the conversation"):
            deleted = await self._store.delete_session(session_id)
        if not deleted:
            raise NotFoundError("Conversation not found")

    # ── Validation ────────────────────────────────────────────

    async def _require_open_session(self, session_id: str) -> None:
        with store_errors("load the conversation"):
            archived = await self._store.session_status(session_id)
        if archived is None:
            raise NotFoundError("Conversation not found")
        if archived:
            raise InvalidRequestError("Cannot post to an archived conversation")

    async def _append_request(
        self, session_id: str, body: CreateMessageRequest,
    ) -> tuple[str, list[ChatMessage], CompletionRequest]:
        content = body.content.strip()
        if not content:
            raise InvalidRequestError("The message cannot be empty")
        await self._require_open_session(session_id)

        with store_errors("load the conversation"):
            history = await self._store.fetch_conversation(session_id)

        turn = ChatMessagePayload(
            role=Role.USER, content=content, attachments=tuple(body.attachments or ()),
        )
        request = CompletionRequest(
            messages=(*conversation_to_payload(history), turn),
            model=self.resolve_model(body.model),
            params=body.completion_params,
        )
        return content, history, request

    async def _regenerate_request(
        self, session_id: str, body: RegenerateRequest,
    ) -> CompletionRequest:
        await self._require_open_session(session_id)
        with store_errors("load the conversation"):
            history = await self._store.fetch_conversation(session_id)

        if not history:
            raise InvalidRequestError("There is no reply to regenerate in this conversation")

        index = next((i for i, msg in enumerate(history) if msg.id == body.message_id), None)
        if index is None:
            raise NotFoundError("Message to regenerate not found")
        if history[index].role is not Role.ASSISTANT:
            raise InvalidRequestError("Only assistant replies can be regenerated")
        if index != len(history) - 1:
            raise InvalidRequestError("Only the last reply can be regenerated")
        if index == 0:
            raise InvalidRequestError("Cannot regenerate without a user question")

        return CompletionRequest(
            messages=conversation_to_payload(history[:index]),
            model=self.resolve_model(body.model),
            params=body.completion_params,
        )

    # ── Buffered flows ────────────────────────────────────────

    async def append_message(self, session_id: str, body: CreateMessageRequest) -> ChatSession:
        """Append a user turn, wait for the whole reply, return the session."""
        content, history, request = await self._append_request(session_id, body)

        self._guard.claim(session_id)
        try:
            answer = await self._orchestrator.complete(request)

            with store_errors("store the exchange"):
                await self._store.append_exchange(
                    session_id, content, list(body.attachments or []), reply=answer,
                )

            title = None
            if not history:
                title = await self._orchestrator.title_or_preview(content, request.model)

            with store_errors("update the conversation"):
                await self._store.update_session_metadata(session_id, title)
                session = await self._store.get_session(session_id)
        finally:
            self._guard.release(session_id)

        if session is None:
            raise PersistenceError("Conversation disappeared while answering")
        return session

    async def regenerate(self, session_id: str, body: RegenerateRequest) -> ChatSession:
        """Replace the last assistant reply with a new buffered completion."""
        request = await self._regenerate_request(session_id, body)

        self._guard.claim(session_id)
        try:
            answer = await self._orchestrator.complete(request)
            with store_errors("store the reply"):
                await self._store.update_message_content(body.message_id, answer)
                await self._store.update_session_metadata(session_id)
                session = await self._store.get_session(session_id)
        finally:
            self._guard.release(session_id)

        if session is None:
            raise PersistenceError("Conversation disappeared while answering")
        return session

    async def complete(self, messages: list[ChatMessagePayload], model: str | None) -> str:
        """Stateless buffered completion, nothing is stored."""
        request = CompletionRequest(messages=tuple(messages), model=self.resolve_model(model))
        return await self._orchestrator.complete(request)

    # ── Streamed flows ────────────────────────────────────────

    async def start_append(self, session_id: str, body: CreateMessageRequest) -> PendingReply:
        """Validate, open the upstream stream, then record the new turn.

        The session stays claimed until publish() finishes.
        """
        content, history, request = await self._append_request(session_id, body)

        self._guard.claim(session_id)
        try:
            stream = await self._orchestrator.open_stream(request)
        except BaseException:
            self._guard.release(session_id)
            raise

        try:
            with store_errors("store the exchange"):
                _, assistant = await self._store.append_exchange(
                    session_id, content, list(body.attachments or []),
                )
        except BaseException:
            await stream.aclose()
            self._guard.release(session_id)
            raise

        return PendingReply(
            chat_id=session_id,
            message_id=assistant.id,
            model=request.model,
            stream=stream,
            first_turn=None if history else content,
        )

    async def start_regenerate(self, session_id: str, body: RegenerateRequest) -> PendingReply:
        """Validate and open the upstream stream for a regenerated reply."""
        request = await self._regenerate_request(session_id, body)

        self._guard.claim(session_id)
        try:
            stream = await self._orchestrator.open_stream(request)
        except BaseException:
            self._guard.release(session_id)
            raise

        return PendingReply(
            chat_id=session_id,
            message_id=body.message_id,
            model=request.model,
            stream=stream,
        )

    async def publish(self, pending: PendingReply, channel: EventChannel) -> str | None:
        """Stream a pending reply into the channel and store the answer.

        Runs as its own task; it keeps going after the client disconnects.
        """

        async def title_for(text: str) -> str:
            return await self._orchestrator.title_or_preview(text, pending.model)

        publisher = EventPublisher(self._store, title_for)
        try:
            return await publisher.run(
                pending.stream,
                channel,
                pending.chat_id,
                pending.message_id,
                first_turn=pending.first_turn,
            )
        finally:
            self._guard.release(pending.chat_id)
