"""Chat-completions providers.

Groq and OpenAI speak the same streaming protocol but accept different
message shapes: Groq's models here take plain string content only, while
OpenAI models take a list of text and image parts so attachments can be
inlined.
"""

from __future__ import annotations

from typing import Any

from chatrelay.attachments import AttachmentLoader, InlineImage
from chatrelay.providers.base import ModelProvider
from chatrelay.schemas.chat import ChatMessagePayload
from chatrelay.schemas.gateway import ModelConfig, Provider


class GroqProvider(ModelProvider):
    """Plain-text provider: each message is ``{"role", "content"}``."""

    async def format_messages(
        self,
        messages: tuple[ChatMessagePayload, ...],
        loader: AttachmentLoader,
    ) -> list[dict[str, Any]]:
        return [{"role": msg.role.value, "content": msg.content} for msg in messages]


class OpenAIProvider(ModelProvider):
    """Multipart provider: message content is a list of text/image parts."""

    async def format_messages(
        self,
        messages: tuple[ChatMessagePayload, ...],
        loader: AttachmentLoader,
    ) -> list[dict[str, Any]]:
        formatted: list[dict[str, Any]] = []
        for msg in messages:
            parts: list[dict[str, Any]] = []
            if msg.content.strip():
                parts.append({"type": "text", "text": msg.content})
            for attachment in msg.attachments:
                inline = await loader.resolve(attachment)
                if isinstance(inline, InlineImage):
                    parts.append({"type": "image_url", "image_url": {"url": inline.url}})
                else:
                    parts.append({"type": "text", "text": inline.text})
            if not parts:
                parts.append({"type": "text", "text": ""})
            formatted.append({"role": msg.role.value, "content": parts})
        return formatted


_PROVIDER_CLASSES: dict[Provider, type[ModelProvider]] = {
    Provider.GROQ: GroqProvider,
    Provider.OPENAI: OpenAIProvider,
}


def create_provider(config: ModelConfig, api_key: str) -> ModelProvider:
    """Instantiate the provider adapter for a registry entry."""
    return _PROVIDER_CLASSES[config.provider](config, api_key)
