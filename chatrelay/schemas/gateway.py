"""Gateway configuration schemas.

Defines the closed set of selectable models, the per-model registry entry
loaded from models.toml, and the process-wide settings loaded from
defaults.toml.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class Provider(StrEnum):
    """Upstream provider family. Both speak the chat-completions protocol."""

    GROQ = "groq"
    OPENAI = "openai"


class ModelChoice(StrEnum):
    """Models a client may select.

    Values are the provider model identifiers. Anything a client sends
    that is not one of these (case-insensitively) resolves to the default.
    """

    GROQ_LLAMA_3_1_8B = "llama-3.1-8b-instant"
    GPT_5_1 = "gpt-5.1"
    GPT_5_MINI = "gpt-5-mini"
    GPT_5_NANO = "gpt-5-nano"
    GPT_5_PRO = "gpt-5-pro"
    GPT_5 = "gpt-5"
    GPT_4_1 = "gpt-4.1"

    @classmethod
    def from_client(
        cls, value: str | None, default: ModelChoice | None = None,
    ) -> ModelChoice:
        """Resolve a client-supplied model name, falling back to the default."""
        if value:
            wanted = value.strip().lower()
            for choice in cls:
                if choice.value == wanted:
                    return choice
        return default or DEFAULT_MODEL


DEFAULT_MODEL = ModelChoice.GROQ_LLAMA_3_1_8B


class ModelConfig(BaseModel):
    """Registry entry for one selectable model.

    Loaded from models.toml. Carries the routing information, credential
    lookup, and the capability flags the orchestrator checks before it
    builds an upstream request.
    """

    provider: Provider = Field(description="Provider family")
    model: str = Field(description="Provider model identifier")
    display_name: str = Field(description="Human-friendly model name")
    api_key_env: str = Field(description="Environment variable holding the API key")
    api_base: str = Field(description="Base URL of the chat-completions API")
    supports_attachments: bool = Field(
        default=False, description="Whether file and image parts are accepted",
    )
    sends_sampling_params: bool = Field(
        default=False, description="Whether sampling parameters are forwarded",
    )
    extra_headers: dict[str, str] = Field(
        default_factory=dict, description="Additional headers sent upstream",
    )


class GatewaySettings(BaseModel):
    """Process-wide gateway settings loaded from defaults.toml."""

    db_path: str = Field(
        default="~/.chatrelay/chatrelay.db", description="SQLite database path",
    )
    upload_dir: str = Field(default="uploads", description="Directory for uploaded files")
    upload_base_url: str = Field(
        default="http://127.0.0.1:4000/uploads",
        description="Public base URL under which uploads are served",
    )
    default_model: ModelChoice = Field(default=DEFAULT_MODEL)
    channel_capacity: int = Field(
        default=32, gt=0, description="Outbound event channel capacity per stream",
    )
    request_timeout: float = Field(
        default=120.0, gt=0, description="Upstream read timeout in seconds",
    )
    connect_timeout: float = Field(default=10.0, gt=0)
    max_upload_bytes: int = Field(default=20 * 1024 * 1024, gt=0)
    attachment_text_limit: int = Field(
        default=50_000, gt=0, description="Characters of attachment text inlined",
    )
    title_preview_chars: int = Field(default=60, gt=0)
    default_title: str = Field(default="New conversation")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
