"""Conversation schemas: stored sessions, messages, attachments, and the
request bodies accepted by the HTTP API.

Snapshots are serialized with snake_case keys; only the outbound stream
envelope (see schemas.streaming) uses camelCase correlation keys.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from chatrelay.schemas.gateway import DEFAULT_MODEL, ModelChoice


class Role(StrEnum):
    """Author of a conversation message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class AttachmentPayload(BaseModel):
    """Attachment metadata as uploaded by, and echoed back to, the client."""

    file_name: str = Field(description="Original file name")
    mime_type: str = Field(description="MIME type reported at upload")
    size_bytes: int = Field(ge=0, description="File size in bytes")
    url: str = Field(description="Public URL of the stored file")
    storage_key: str | None = Field(
        default=None, description="File name inside the upload directory",
    )


class ChatAttachment(BaseModel):
    """Attachment row linked to a stored message."""

    id: str
    message_id: str
    file_name: str
    mime_type: str
    size_bytes: int
    url: str
    storage_key: str
    created_at: datetime

    def to_payload(self) -> AttachmentPayload:
        return AttachmentPayload(
            file_name=self.file_name,
            mime_type=self.mime_type,
            size_bytes=self.size_bytes,
            url=self.url,
            storage_key=self.storage_key,
        )


class ChatMessage(BaseModel):
    """A stored message, ordered inside its session by position."""

    id: str
    session_id: str
    role: Role
    content: str
    position: int
    created_at: datetime
    attachments: list[ChatAttachment] = Field(default_factory=list)


class ChatSession(BaseModel):
    """Snapshot of a conversation with all of its messages."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    archived: bool = False
    messages: list[ChatMessage] = Field(default_factory=list)

    def with_blank_message(self, message_id: str) -> ChatSession:
        """Copy of the snapshot with one message's content emptied.

        Used for the opening stream event, where the assistant message
        being generated must appear empty on the client.
        """
        messages = [
            msg.model_copy(update={"content": ""}) if msg.id == message_id else msg
            for msg in self.messages
        ]
        return self.model_copy(update={"messages": messages})


class ChatMessagePayload(BaseModel):
    """Role-tagged message forwarded to the provider."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    attachments: tuple[AttachmentPayload, ...] = ()


class CompletionParams(BaseModel):
    """Sampling parameters forwarded to providers that accept them.

    Unset fields are omitted from the upstream request body.
    """

    temperature: float | None = Field(
        default=None, ge=0.0, le=2.0, description="Randomness of sampling",
    )
    max_tokens: int | None = Field(
        default=None, gt=0, description="Maximum number of generated tokens",
    )
    top_p: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Nucleus sampling mass",
    )
    presence_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    frequency_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    seed: int | None = Field(default=None, description="Best-effort determinism")

    @classmethod
    def defaults(cls) -> CompletionParams:
        """Parameters used when the client sends none at all."""
        return cls(temperature=0.7, top_p=1.0, presence_penalty=0.0, frequency_penalty=0.0)


class CompletionRequest(BaseModel):
    """Immutable view of one completion invocation."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[ChatMessagePayload, ...]
    model: ModelChoice = DEFAULT_MODEL
    params: CompletionParams | None = None
    inject_system_prompt: bool = True

    @property
    def has_attachments(self) -> bool:
        return any(msg.attachments for msg in self.messages)


def conversation_to_payload(messages: list[ChatMessage]) -> tuple[ChatMessagePayload, ...]:
    """Convert stored messages into the provider-facing payload."""
    return tuple(
        ChatMessagePayload(
            role=msg.role,
            content=msg.content,
            attachments=tuple(att.to_payload() for att in msg.attachments),
        )
        for msg in messages
    )


# ── Request bodies ────────────────────────────────────────────────


class CreateSessionRequest(BaseModel):
    title: str | None = None


class CreateMessageRequest(BaseModel):
    content: str
    model: str | None = None
    attachments: list[AttachmentPayload] | None = None
    completion_params: CompletionParams | None = None


class RegenerateRequest(BaseModel):
    message_id: str
    model: str | None = None
    completion_params: CompletionParams | None = None


class CompletionBody(BaseModel):
    """Body of the stateless /api/ai endpoint."""

    messages: list[ChatMessagePayload]
    model: str | None = None


class CompletionReply(BaseModel):
    response: str
