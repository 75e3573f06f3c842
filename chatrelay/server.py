"""FastAPI server for the chat relay.

Exposes chat session management, buffered and streamed completions,
a stateless completion endpoint, and file uploads. Streamed endpoints
answer with server-sent events; each completion runs in its own task
that outlives the client connection so the answer is always stored.

Run with ``chatrelay serve``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
import httpx
from fastapi import FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles

from chatrelay import __version__
from chatrelay.attachments import AttachmentLoader
from chatrelay.conversations import ConversationService, PendingReply
from chatrelay.errors import InvalidRequestError, RelayError
from chatrelay.keys import load_keys_env
from chatrelay.orchestrator import CompletionOrchestrator
from chatrelay.persistence.database import close_db, init_db
from chatrelay.persistence.store import ChatStore
from chatrelay.providers.registry import load_gateway_settings, load_models
from chatrelay.schemas.chat import (
    AttachmentPayload,
    ChatSession,
    CompletionBody,
    CompletionReply,
    CreateMessageRequest,
    CreateSessionRequest,
    RegenerateRequest,
)
from chatrelay.schemas.gateway import GatewaySettings, ModelConfig
from chatrelay.streaming.channel import EventChannel

logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class EventStreamResponse(StreamingResponse):
    """Server-sent event response fed by an EventChannel.

    The channel is closed when the response ends, however it ends,
    including a client that disconnects before the first frame.
    """

    def __init__(self, channel: EventChannel) -> None:
        super().__init__(_frames(channel), media_type="text/event-stream", headers=_SSE_HEADERS)
        self.channel = channel

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.channel.close()


async def _frames(channel: EventChannel) -> AsyncIterator[str]:
    async for event in channel:
        yield event.to_sse()


def create_app(
    settings: GatewaySettings | None = None,
    registry: dict[str, ModelConfig] | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Gateway settings. Loaded from defaults.toml when omitted.
        registry: Model registry. Loaded from models.toml when omitted.
        transport: Optional httpx transport for the upstream client.
    """
    settings = settings or load_gateway_settings()
    registry = registry if registry is not None else load_models()

    upload_dir = Path(settings.upload_dir).expanduser()
    upload_dir.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        load_keys_env()
        db = await init_db(settings.db_path)
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout),
            transport=transport,
        )
        store = ChatStore(db)
        loader = AttachmentLoader(upload_dir, settings.attachment_text_limit)
        orchestrator = CompletionOrchestrator(
            registry, client, loader, title_preview_chars=settings.title_preview_chars,
        )

        app.state.store = store
        app.state.loader = loader
        app.state.service = ConversationService(store, orchestrator, settings)
        app.state.tasks = set()
        logger.info("chatrelay %s ready (%d models)", __version__, len(registry))

        try:
            yield
        finally:
            pending = list(app.state.tasks)
            if pending:
                logger.info("Waiting for %d in-flight completions", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
            await client.aclose()
            await close_db(db)

    app = FastAPI(
        title="chatrelay",
        description="Streaming chat gateway",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.mount("/uploads", StaticFiles(directory=upload_dir), name="uploads")

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    def _service() -> ConversationService:
        return app.state.service

    def _stream(pending: PendingReply) -> StreamingResponse:
        channel = EventChannel(settings.channel_capacity)
        task = asyncio.create_task(_service().publish(pending, channel))
        app.state.tasks.add(task)
        task.add_done_callback(app.state.tasks.discard)
        return EventStreamResponse(channel)

    # ── Health ───────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        try:
            ok = await app.state.store.ping()
        except aiosqlite.Error:
            logger.exception("Health check failed")
            ok = False
        if not ok:
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return JSONResponse(content={"status": "ok"})

    # ── Sessions ─────────────────────────────────────────────────

    @app.get("/api/chat/sessions")
    async def list_sessions() -> list[ChatSession]:
        return await _service().list_sessions()

    @app.post("/api/chat/sessions")
    async def create_session(body: CreateSessionRequest | None = None) -> ChatSession:
        return await _service().create_session(body.title if body else None)

    @app.delete("/api/chat/sessions/{session_id}", status_code=204)
    async def delete_session(session_id: str) -> Response:
        await _service().delete_session(session_id)
        return Response(status_code=204)

    @app.post("/api/chat/sessions/{session_id}/archive", status_code=204)
    async def archive_session(session_id: str) -> Response:
        await _service().archive_session(session_id)
        return Response(status_code=204)

    # ── Completions ──────────────────────────────────────────────

    @app.post("/api/chat/sessions/{session_id}/messages")
    async def append_message(session_id: str, body: CreateMessageRequest) -> ChatSession:
        return await _service().append_message(session_id, body)

    @app.post("/api/chat/sessions/{session_id}/messages/stream")
    async def append_message_stream(
        session_id: str, body: CreateMessageRequest,
    ) -> StreamingResponse:
        return _stream(await _service().start_append(session_id, body))

    @app.post("/api/chat/sessions/{session_id}/regenerate")
    async def regenerate(session_id: str, body: RegenerateRequest) -> ChatSession:
        return await _service().regenerate(session_id, body)

    @app.post("/api/chat/sessions/{session_id}/regenerate/stream")
    async def regenerate_stream(session_id: str, body: RegenerateRequest) -> StreamingResponse:
        return _stream(await _service().start_regenerate(session_id, body))

    @app.post("/api/ai")
    async def complete(body: CompletionBody) -> CompletionReply:
        answer = await _service().complete(body.messages, body.model)
        return CompletionReply(response=answer)

    # ── Uploads ──────────────────────────────────────────────────

    @app.post("/api/uploads")
    async def upload_file(file: UploadFile | None = File(None)) -> AttachmentPayload:
        if file is None:
            raise InvalidRequestError("No file received")

        data = await file.read()
        if len(data) > settings.max_upload_bytes:
            limit_mb = settings.max_upload_bytes // (1024 * 1024)
            raise InvalidRequestError(f"File too large (max {limit_mb} MB)")

        file_name = file.filename or f"file-{uuid.uuid4()}.bin"
        key = await app.state.loader.save_upload(file_name, data)
        return AttachmentPayload(
            file_name=file_name,
            mime_type=file.content_type or "application/octet-stream",
            size_bytes=len(data),
            url=f"{settings.upload_base_url.rstrip('/')}/{key}",
            storage_key=key,
        )

    return app
