"""chatrelay schema definitions.

All Pydantic v2 models shared by the pipeline, the store, and the API.
"""

from chatrelay.schemas.chat import (
    AttachmentPayload,
    ChatAttachment,
    ChatMessage,
    ChatMessagePayload,
    ChatSession,
    CompletionBody,
    CompletionParams,
    CompletionReply,
    CompletionRequest,
    CreateMessageRequest,
    CreateSessionRequest,
    RegenerateRequest,
    Role,
    conversation_to_payload,
)
from chatrelay.schemas.gateway import (
    DEFAULT_MODEL,
    GatewaySettings,
    ModelChoice,
    ModelConfig,
    Provider,
)
from chatrelay.schemas.streaming import EventType, OutboundEvent, SpanKind, TaggedSpan

__all__ = [
    # Chat
    "AttachmentPayload",
    "ChatAttachment",
    "ChatMessage",
    "ChatMessagePayload",
    "ChatSession",
    "CompletionBody",
    "CompletionParams",
    "CompletionReply",
    "CompletionRequest",
    "CreateMessageRequest",
    "CreateSessionRequest",
    "RegenerateRequest",
    "Role",
    "conversation_to_payload",
    # Gateway
    "DEFAULT_MODEL",
    "GatewaySettings",
    "ModelChoice",
    "ModelConfig",
    "Provider",
    # Streaming
    "EventType",
    "OutboundEvent",
    "SpanKind",
    "TaggedSpan",
]
