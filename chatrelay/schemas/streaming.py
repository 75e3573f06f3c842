"""Streaming schemas: classified spans and the outbound event envelope.

TaggedSpan is what the classifier produces from provider deltas.
OutboundEvent is what the publisher writes to the client, one per
server-sent event frame.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from chatrelay.schemas.chat import ChatSession


class SpanKind(StrEnum):
    """Classification of a run of generated text."""

    ANSWER = "answer"
    REASONING = "reasoning"


class TaggedSpan(BaseModel):
    """A classified fragment of model output. Never empty."""

    model_config = ConfigDict(frozen=True)

    kind: SpanKind
    text: str = Field(min_length=1)

    @classmethod
    def answer(cls, text: str) -> TaggedSpan:
        return cls(kind=SpanKind.ANSWER, text=text)

    @classmethod
    def reasoning(cls, text: str) -> TaggedSpan:
        return cls(kind=SpanKind.REASONING, text=text)


class EventType(StrEnum):
    """Types of events written to the client stream."""

    SESSION = "session"
    TOKEN = "token"
    REASONING = "reasoning"
    FINAL = "final"
    ERROR = "error"


class OutboundEvent(BaseModel):
    """One event on the client stream, correlated to a session and message.

    Serialized with camelCase correlation keys and without unset payload
    fields, e.g. ``{"type": "token", "chatId": ..., "messageId": ...,
    "content": "..."}``.
    """

    type: EventType
    chat_id: str = Field(serialization_alias="chatId")
    message_id: str = Field(serialization_alias="messageId")
    session: ChatSession | None = Field(
        default=None, description="Snapshot carried by session and final events",
    )
    content: str | None = Field(
        default=None, description="Span text carried by token and reasoning events",
    )
    message: str | None = Field(
        default=None, description="Description carried by error events",
    )

    @classmethod
    def for_span(cls, span: TaggedSpan, chat_id: str, message_id: str) -> OutboundEvent:
        event_type = EventType.TOKEN if span.kind is SpanKind.ANSWER else EventType.REASONING
        return cls(type=event_type, chat_id=chat_id, message_id=message_id, content=span.text)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_sse(self) -> str:
        """Render as a single server-sent event frame."""
        return f"data: {self.to_json()}\n\n"
