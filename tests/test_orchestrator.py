"""Tests for chatrelay.orchestrator and the provider adapters.

Upstream calls go through httpx.MockTransport; every test inspects the
request the provider would have received.
"""

from __future__ import annotations

import base64
import json
import zlib

import httpx
import pytest

from chatrelay.attachments import AttachmentLoader
from chatrelay.errors import (
    AttachmentUnavailableError,
    ConfigurationError,
    UnsupportedAttachmentError,
    UpstreamError,
)
from chatrelay.orchestrator import CompletionOrchestrator, preview_title
from chatrelay.providers.registry import load_models
from chatrelay.schemas.chat import (
    AttachmentPayload,
    ChatMessagePayload,
    CompletionParams,
    CompletionRequest,
    Role,
)
from chatrelay.schemas.gateway import ModelChoice

GROQ = ModelChoice.GROQ_LLAMA_3_1_8B
OPENAI = ModelChoice.GPT_4_1


# ── Factories ──────────────────────────────────────────────────────


def _sse_body(*contents: str) -> bytes:
    frames = [
        "data: " + json.dumps({"choices": [{"delta": {"content": c}}]}) + "\n\n"
        for c in contents
    ]
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


class _BrokenStream(httpx.AsyncByteStream):
    """Response body that fails after its first chunk."""

    def __init__(self, first: bytes) -> None:
        self._first = first

    async def __aiter__(self):
        yield self._first
        raise httpx.ReadError("connection reset by peer")

    async def aclose(self) -> None:
        pass


class _CorruptGzipStream(httpx.AsyncByteStream):
    """Gzip body whose first chunk inflates cleanly and whose second does not."""

    def __init__(self, first: bytes) -> None:
        compressor = zlib.compressobj(wbits=16 + zlib.MAX_WBITS)
        self._first = compressor.compress(first) + compressor.flush(zlib.Z_SYNC_FLUSH)

    async def __aiter__(self):
        yield self._first
        yield b"\xff" * 8

    async def aclose(self) -> None:
        pass


class _Upstream:
    """Records requests and answers with a fixed response."""

    def __init__(self, *contents: str, status: int = 200, body: bytes | None = None,
                 stream: httpx.AsyncByteStream | None = None,
                 headers: dict[str, str] | None = None,
                 error: Exception | None = None) -> None:
        self.calls: list[httpx.Request] = []
        self._contents = contents
        self._status = status
        self._body = body
        self._stream = stream
        self._headers = headers or {}
        self._error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self._error is not None:
            raise self._error
        if self._stream is not None:
            return httpx.Response(self._status, headers=self._headers, stream=self._stream)
        content = self._body if self._body is not None else _sse_body(*self._contents)
        return httpx.Response(
            self._status, content=content, headers={"content-type": "text/event-stream"},
        )

    def json(self, index: int = -1) -> dict:
        return json.loads(self.calls[index].content)


def _make_request(model: ModelChoice = GROQ, text: str = "Hello", **overrides) -> CompletionRequest:
    defaults = {
        "messages": (ChatMessagePayload(role=Role.USER, content=text),),
        "model": model,
    }
    defaults.update(overrides)
    return CompletionRequest(**defaults)


def _make_orchestrator(upstream: _Upstream, upload_dir) -> tuple[CompletionOrchestrator, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return CompletionOrchestrator(load_models(), client, AttachmentLoader(upload_dir)), client


def _make_attachment(**overrides) -> AttachmentPayload:
    defaults = {
        "file_name": "notes.txt",
        "mime_type": "text/plain",
        "size_bytes": 5,
        "url": "http://127.0.0.1:4000/uploads/notes.txt",
        "storage_key": "notes.txt",
    }
    defaults.update(overrides)
    return AttachmentPayload(**defaults)


@pytest.fixture(autouse=True)
def _api_keys(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")


# ══════════════════════════════════════════════════════════════════
# preview_title
# ══════════════════════════════════════════════════════════════════


class TestPreviewTitle:
    def test_short_text_unchanged(self):
        assert preview_title("Hello") == "Hello"

    def test_long_text_cut_with_ellipsis(self):
        text = "x" * 100
        assert preview_title(text) == "x" * 60 + "…"

    def test_exact_limit(self):
        assert preview_title("y" * 60) == "y" * 60


# ══════════════════════════════════════════════════════════════════
# Request building
# ══════════════════════════════════════════════════════════════════


class TestGroqRequests:
    @pytest.mark.asyncio()
    async def test_body_and_headers(self, tmp_path):
        upstream = _Upstream("Hi")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            await orchestrator.complete(_make_request(GROQ, "Hello"))

        request = upstream.calls[0]
        assert str(request.url) == "https://api.groq.com/openai/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer gsk-test"

        body = upstream.json()
        assert body["model"] == "llama-3.1-8b-instant"
        assert body["stream"] is True
        assert "temperature" not in body
        assert "top_p" not in body
        assert body["messages"][0]["role"] == "system"
        assert "<thinking>" in body["messages"][0]["content"]
        assert body["messages"][1] == {"role": "user", "content": "Hello"}

    @pytest.mark.asyncio()
    async def test_params_are_not_forwarded(self, tmp_path):
        upstream = _Upstream("Hi")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            await orchestrator.complete(
                _make_request(GROQ, params=CompletionParams(temperature=0.1, max_tokens=10)),
            )
        body = upstream.json()
        assert "temperature" not in body
        assert "max_tokens" not in body

    @pytest.mark.asyncio()
    async def test_attachments_rejected_before_upstream(self, tmp_path):
        upstream = _Upstream("never")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        message = ChatMessagePayload(
            role=Role.USER, content="Read this", attachments=(_make_attachment(),),
        )
        async with client:
            with pytest.raises(UnsupportedAttachmentError):
                await orchestrator.open_stream(_make_request(GROQ, messages=(message,)))
        assert upstream.calls == []

    @pytest.mark.asyncio()
    async def test_missing_key(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        upstream = _Upstream("never")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            with pytest.raises(ConfigurationError, match="GROQ_API_KEY"):
                await orchestrator.open_stream(_make_request(GROQ))
        assert upstream.calls == []


class TestOpenAIRequests:
    @pytest.mark.asyncio()
    async def test_default_params_and_headers(self, tmp_path):
        upstream = _Upstream("Hi")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            await orchestrator.complete(_make_request(OPENAI, "Hello"))

        request = upstream.calls[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["x-openai-processing-tier"] == "standard"

        body = upstream.json()
        assert body["model"] == "gpt-4.1"
        assert body["temperature"] == 0.7
        assert body["top_p"] == 1.0
        assert body["presence_penalty"] == 0.0
        assert body["frequency_penalty"] == 0.0
        assert body["messages"][1] == {
            "role": "user",
            "content": [{"type": "text", "text": "Hello"}],
        }

    @pytest.mark.asyncio()
    async def test_client_params_replace_defaults(self, tmp_path):
        upstream = _Upstream("Hi")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            await orchestrator.complete(
                _make_request(OPENAI, params=CompletionParams(temperature=0.2, max_tokens=50)),
            )
        body = upstream.json()
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 50
        assert "top_p" not in body

    @pytest.mark.asyncio()
    async def test_image_attachment_inlined_as_data_url(self, tmp_path):
        (tmp_path / "pic.png").write_bytes(b"\x89PNG fake")
        upstream = _Upstream("A cat")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        attachment = _make_attachment(
            file_name="pic.png", mime_type="image/png", storage_key="pic.png",
            url="http://127.0.0.1:4000/uploads/pic.png",
        )
        message = ChatMessagePayload(
            role=Role.USER, content="What is this?", attachments=(attachment,),
        )
        async with client:
            await orchestrator.complete(_make_request(OPENAI, messages=(message,)))

        parts = upstream.json()["messages"][1]["content"]
        assert parts[0] == {"type": "text", "text": "What is this?"}
        encoded = base64.b64encode(b"\x89PNG fake").decode("ascii")
        assert parts[1] == {
            "type": "image_url",
            "image_url": {"url": f"data:image/png;base64,{encoded}"},
        }

    @pytest.mark.asyncio()
    async def test_text_attachment_inlined(self, tmp_path):
        (tmp_path / "notes.txt").write_text("hello", encoding="utf-8")
        upstream = _Upstream("ok")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        message = ChatMessagePayload(role=Role.USER, content="", attachments=(_make_attachment(),))
        async with client:
            await orchestrator.complete(_make_request(OPENAI, messages=(message,)))

        parts = upstream.json()["messages"][1]["content"]
        assert parts == [{"type": "text", "text": "hello"}]

    @pytest.mark.asyncio()
    async def test_missing_attachment_file(self, tmp_path):
        upstream = _Upstream("never")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        message = ChatMessagePayload(
            role=Role.USER, content="Read", attachments=(_make_attachment(storage_key="gone.txt"),),
        )
        async with client:
            with pytest.raises(AttachmentUnavailableError):
                await orchestrator.open_stream(_make_request(OPENAI, messages=(message,)))
        assert upstream.calls == []


# ══════════════════════════════════════════════════════════════════
# Upstream responses
# ══════════════════════════════════════════════════════════════════


class TestUpstreamResponses:
    @pytest.mark.asyncio()
    async def test_complete_returns_answer_without_reasoning(self, tmp_path):
        upstream = _Upstream("<thinking>let me ", "see</thinking>", "The answer", " is 4.")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            answer = await orchestrator.complete(_make_request(GROQ, "2+2?"))
        assert answer == "The answer is 4."

    @pytest.mark.asyncio()
    async def test_error_status_carries_status_and_body(self, tmp_path):
        upstream = _Upstream(status=429, body=b'{"error": {"message": "rate limit reached"}}')
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            with pytest.raises(UpstreamError) as excinfo:
                await orchestrator.open_stream(_make_request(GROQ))
        assert excinfo.value.status == 429
        assert "rate limit reached" in excinfo.value.body
        assert excinfo.value.status_code == 502

    @pytest.mark.asyncio()
    async def test_transport_failure(self, tmp_path):
        upstream = _Upstream(error=httpx.ConnectError("name resolution failed"))
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            with pytest.raises(UpstreamError) as excinfo:
                await orchestrator.open_stream(_make_request(GROQ))
        assert excinfo.value.status is None

    @pytest.mark.asyncio()
    async def test_stream_is_open_before_body_is_read(self, tmp_path):
        upstream = _Upstream("one", "two")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            stream = await orchestrator.open_stream(_make_request(GROQ))
            try:
                deltas = [d async for d in stream.deltas()]
            finally:
                await stream.aclose()
        assert deltas == ["one", "two"]
        assert stream.model == "llama-3.1-8b-instant"

    @pytest.mark.asyncio()
    async def test_drop_mid_stream_keeps_partial_answer(self, tmp_path):
        upstream = _Upstream(stream=_BrokenStream(_sse_body("partial ")[:-len(b"data: [DONE]\n\n")]))
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            answer = await orchestrator.complete(_make_request(GROQ))
        assert answer == "partial "

    @pytest.mark.asyncio()
    async def test_undecodable_body_keeps_partial_answer(self, tmp_path):
        first = _sse_body("Partial")[:-len(b"data: [DONE]\n\n")]
        upstream = _Upstream(
            stream=_CorruptGzipStream(first), headers={"content-encoding": "gzip"},
        )
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            answer = await orchestrator.complete(_make_request(GROQ))
            title = await orchestrator.title_or_preview("Why is the sky blue?", GROQ)
        assert answer == "Partial"
        assert title == "Partial"

    @pytest.mark.asyncio()
    async def test_system_prompt_can_be_skipped(self, tmp_path):
        upstream = _Upstream("ok")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            await orchestrator.complete(_make_request(GROQ, inject_system_prompt=False))
        messages = upstream.json()["messages"]
        assert [m["role"] for m in messages] == ["user"]


# ══════════════════════════════════════════════════════════════════
# Titles
# ══════════════════════════════════════════════════════════════════


class TestTitles:
    @pytest.mark.asyncio()
    async def test_generate_title_first_line(self, tmp_path):
        upstream = _Upstream("  Monads explained\n", "Some extra line")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            title = await orchestrator.generate_title("What is a monad?", GROQ)
        assert title == "Monads explained"

        messages = upstream.json()["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert "<thinking>" not in messages[0]["content"]
        assert messages[1]["content"] == "Question: What is a monad?"

    @pytest.mark.asyncio()
    async def test_generate_title_empty_raises(self, tmp_path):
        upstream = _Upstream("<thinking>only reasoning</thinking>", "   ")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            with pytest.raises(UpstreamError):
                await orchestrator.generate_title("Hello", GROQ)

    @pytest.mark.asyncio()
    async def test_title_falls_back_to_preview_on_error(self, tmp_path):
        upstream = _Upstream(status=500, body=b"internal error")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        text = "Explain the difference between processes and threads in operating systems"
        async with client:
            title = await orchestrator.title_or_preview(text, GROQ)
        assert title == text[:60] + "…"

    @pytest.mark.asyncio()
    async def test_title_falls_back_when_key_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        upstream = _Upstream("unused")
        orchestrator, client = _make_orchestrator(upstream, tmp_path)
        async with client:
            title = await orchestrator.title_or_preview("Short question", GROQ)
        assert title == "Short question"
