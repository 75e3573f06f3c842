"""Abstract base class for all model providers.

Defines the ModelProvider interface that every upstream adapter must
implement. The orchestrator interacts exclusively through this interface;
it never builds provider requests itself.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import httpx

from chatrelay.attachments import AttachmentLoader
from chatrelay.errors import UpstreamError
from chatrelay.schemas.chat import ChatMessagePayload, CompletionParams
from chatrelay.schemas.gateway import ModelConfig
from chatrelay.schemas.streaming import TaggedSpan
from chatrelay.streaming.classifier import classify
from chatrelay.streaming.decoder import iter_deltas

logger = logging.getLogger(__name__)


class CompletionStream:
    """An open upstream response whose body has not been read yet.

    Owns the httpx response: whoever consumes the stream must call
    ``aclose()`` once done, whether or not it was read to the end.
    """

    def __init__(self, response: httpx.Response, model: str) -> None:
        self._response = response
        self.model = model

    def deltas(self) -> AsyncIterator[str]:
        return iter_deltas(self._response.aiter_bytes())

    def spans(self) -> AsyncIterator[TaggedSpan]:
        return classify(self.deltas())

    async def aclose(self) -> None:
        await self._response.aclose()


class ModelProvider(ABC):
    """Abstract interface for any chat-completions upstream.

    Initialized from a ModelConfig loaded from the TOML registry and the
    API key resolved for it. Subclasses decide how messages and sampling
    parameters are encoded in the request body.
    """

    def __init__(self, config: ModelConfig, api_key: str) -> None:
        self._config = config
        self._api_key = api_key

    # ── Identity ──────────────────────────────────────────────

    @property
    def model_id(self) -> str:
        """Model identifier sent upstream."""
        return self._config.model

    @property
    def display_name(self) -> str:
        """Human-friendly model name for logs and CLI output."""
        return self._config.display_name

    # ── Request building ──────────────────────────────────────

    @abstractmethod
    async def format_messages(
        self,
        messages: tuple[ChatMessagePayload, ...],
        loader: AttachmentLoader,
    ) -> list[dict[str, Any]]:
        """Encode conversation messages for the request body.

        Args:
            messages: Conversation in order, system instruction included.
            loader: Resolves attachments into inline image or text parts.

        Raises:
            AttachmentUnavailableError: If an attachment cannot be read.
        """

    def build_body(
        self,
        messages: list[dict[str, Any]],
        params: CompletionParams | None,
    ) -> dict[str, Any]:
        """Assemble the JSON body. Unset sampling parameters are omitted."""
        body: dict[str, Any] = {
            "model": self.model_id,
            "messages": messages,
            "stream": True,
        }
        if self._config.sends_sampling_params:
            params = params or CompletionParams.defaults()
            body.update(params.model_dump(exclude_none=True))
        return body

    def build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            **self._config.extra_headers,
        }

    # ── Core interface ────────────────────────────────────────

    async def open_stream(
        self,
        client: httpx.AsyncClient,
        messages: tuple[ChatMessagePayload, ...],
        params: CompletionParams | None,
        loader: AttachmentLoader,
    ) -> CompletionStream:
        """Send a streaming completion request and return once headers arrive.

        Returns:
            A CompletionStream positioned before the first body byte.

        Raises:
            UpstreamError: If the request cannot be sent or the provider
                answers with a non-success status.
        """
        body = self.build_body(await self.format_messages(messages, loader), params)
        url = f"{self._config.api_base.rstrip('/')}/chat/completions"
        request = client.build_request("POST", url, json=body, headers=self.build_headers())

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.display_name} request failed: {e}") from e

        if response.status_code >= 400:
            try:
                raw = await response.aread()
            except httpx.HTTPError:
                raw = b""
            finally:
                await response.aclose()
            text = raw.decode("utf-8", errors="replace")
            logger.warning(
                "%s returned HTTP %d: %.200s", self.display_name, response.status_code, text,
            )
            raise UpstreamError(
                f"{self.display_name} returned HTTP {response.status_code}: {text}",
                status=response.status_code,
                body=text,
            )

        logger.info("Opened %s stream (%d messages)", self.model_id, len(messages))
        return CompletionStream(response, self.model_id)
