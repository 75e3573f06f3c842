"""Completion orchestrator for the chat relay.

Turns a CompletionRequest into an upstream call. Validates the request
against the selected model, resolves credentials, prepends the system
instruction, opens the provider stream, and either hands the open stream
back (streamed mode) or drains it into the answer text (buffered mode).

Title generation reuses the buffered path with its own two-message
context and falls back to a preview of the user's text.
"""

from __future__ import annotations

import logging

import httpx

from chatrelay.attachments import AttachmentLoader
from chatrelay.errors import RelayError, UnsupportedAttachmentError, UpstreamError
from chatrelay.keys import require_api_key
from chatrelay.prompts import system_prompt, title_prompt
from chatrelay.providers.base import CompletionStream, ModelProvider
from chatrelay.providers.openai_compat import create_provider
from chatrelay.providers.registry import resolve_model
from chatrelay.schemas.chat import ChatMessagePayload, CompletionRequest, Role
from chatrelay.schemas.gateway import ModelChoice, ModelConfig
from chatrelay.schemas.streaming import TaggedSpan
from chatrelay.streaming.classifier import DEFAULT_MARKERS, answer_text

logger = logging.getLogger(__name__)

TITLE_PREVIEW_CHARS = 60
TITLE_MAX_WORDS = 6


def preview_title(text: str, limit: int = TITLE_PREVIEW_CHARS) -> str:
    """First ``limit`` characters of the text, with an ellipsis when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


class CompletionOrchestrator:
    """Runs completions against the providers of the model registry.

    One instance serves the whole process; it holds no per-request state.

    Args:
        registry: Model registry loaded from models.toml.
        client: Shared HTTP client (connection pool) for upstream calls.
        loader: Resolves attachments into inline content.
        title_preview_chars: Length of the fallback title preview.
    """

    def __init__(
        self,
        registry: dict[str, ModelConfig],
        client: httpx.AsyncClient,
        loader: AttachmentLoader,
        *,
        title_preview_chars: int = TITLE_PREVIEW_CHARS,
    ) -> None:
        self._registry = registry
        self._client = client
        self._loader = loader
        self._title_preview_chars = title_preview_chars
        self._system_prompt = system_prompt(DEFAULT_MARKERS)
        self._title_prompt = title_prompt(TITLE_MAX_WORDS)

    def model_config(self, model: ModelChoice) -> ModelConfig:
        return resolve_model(self._registry, model)

    def _prepare(
        self, request: CompletionRequest,
    ) -> tuple[ModelProvider, tuple[ChatMessagePayload, ...]]:
        config = resolve_model(self._registry, request.model)

        if request.has_attachments and not config.supports_attachments:
            raise UnsupportedAttachmentError(
                f"{config.display_name} does not accept files or images; "
                "select a model with attachment support"
            )

        provider = create_provider(config, require_api_key(config.api_key_env))

        messages = request.messages
        if request.inject_system_prompt:
            system = ChatMessagePayload(role=Role.SYSTEM, content=self._system_prompt)
            messages = (system, *messages)
        return provider, messages

    async def open_stream(self, request: CompletionRequest) -> CompletionStream:
        """Open the upstream stream for a request.

        Returns as soon as the provider accepted the request; no body byte
        has been read yet. The caller owns the returned stream.

        Raises:
            UnsupportedAttachmentError: Attachments sent to a model without
                attachment support. No upstream call is made.
            ConfigurationError: The model's API key is not configured.
            AttachmentUnavailableError: A stored attachment cannot be read.
            UpstreamError: The provider refused the request.
        """
        provider, messages = self._prepare(request)
        return await provider.open_stream(self._client, messages, request.params, self._loader)

    async def complete(self, request: CompletionRequest) -> str:
        """Run a completion to the end and return the answer text.

        A connection dropped mid-stream keeps whatever answer arrived.
        """
        stream = await self.open_stream(request)
        spans: list[TaggedSpan] = []
        try:
            async for span in stream.spans():
                spans.append(span)
        except UpstreamError as e:
            logger.warning("Upstream dropped during buffered completion, keeping partial answer: %s", e)
        finally:
            await stream.aclose()
        return answer_text(spans)

    async def generate_title(self, text: str, model: ModelChoice) -> str:
        """Ask the model for a short title summarizing ``text``.

        Raises:
            UpstreamError: If the model returns no usable title, or any
                error of complete().
        """
        request = CompletionRequest(
            messages=(
                ChatMessagePayload(role=Role.SYSTEM, content=self._title_prompt),
                ChatMessagePayload(role=Role.USER, content=f"Question: {text}"),
            ),
            model=model,
            inject_system_prompt=False,
        )
        summary = await self.complete(request)
        lines = summary.strip().splitlines()
        title = lines[0].strip() if lines else ""
        if not title:
            raise UpstreamError("The model returned an empty title")
        return title

    async def title_or_preview(self, text: str, model: ModelChoice) -> str:
        """Generated title, or a preview of the text when generation fails."""
        try:
            return await self.generate_title(text, model)
        except RelayError as e:
            logger.warning("Title generation failed, using preview: %s", e)
            return preview_title(text, self._title_preview_chars)
