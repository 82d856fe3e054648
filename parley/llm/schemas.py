"""Pydantic DTOs for conversations, messages and provider responses.

These models are the provider-neutral contract between the turn loop,
the providers and persistence. Everything that is cached or persisted is a
pydantic model so it round-trips through JSON unchanged.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system", "tool"]
StopReason = Literal["end_turn", "tool_use", "max_tokens", "stop_sequence", "content_filter"]


def _now() -> datetime:
    return datetime.now(UTC)


# --- Content parts ---


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    media_type: str = "image/png"
    data: str  # base64


class ToolUsePart(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: list[TextPart | ImagePart] = Field(default_factory=list)
    is_error: bool = False


ContentPart = Annotated[
    TextPart | ImagePart | ToolUsePart | ToolResultPart,
    Field(discriminator="type"),
]


# --- Usage / rate limits ---


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class RateLimit(BaseModel):
    """Rate-limit snapshot reported by the provider with a response."""

    requests_remaining: int | None = None
    requests_limit: int | None = None
    requests_reset_at: datetime | None = None
    tokens_remaining: int | None = None
    tokens_limit: int | None = None
    tokens_reset_at: datetime | None = None


# --- Tools ---


class Tool(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any]


class ToolUse(BaseModel):
    """A tool invocation extracted from a model response."""

    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str
    tool_thinking: str = ""


# --- Responses / messages ---


class ProviderResponse(BaseModel):
    """Provider-neutral view of one model response."""

    id: str = ""
    model: str = ""
    status: int = 200
    status_text: str = "OK"
    content: list[ContentPart] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    rate_limit: RateLimit = Field(default_factory=RateLimit)
    stop_reason: StopReason | None = None
    is_tool: bool = False
    tools_used: list[ToolUse] = Field(default_factory=list)
    answer: str = ""
    from_cache: bool = False
    provider_requests: int = 0  # transport calls spent producing this response

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))


class Message(BaseModel):
    """A single message in a conversation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: list[ContentPart]
    provider_response: ProviderResponse | None = None
    created_at: datetime = Field(default_factory=_now)


class Conversation(BaseModel):
    """Tracks a multi-turn, tool-augmented conversation."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    provider_name: str
    model: str
    base_system: str = ""
    project_info: dict[str, str] | None = None  # {"type": "ctags"|"file-listing", "content": ...}
    messages: list[Message] = Field(default_factory=list)
    tools: dict[str, Tool] = Field(default_factory=dict)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    provider_requests: int = 0
    turn_count: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = _now()

    def add_tool(self, tool: Tool) -> None:
        existing = self.tools.get(tool.name)
        if existing is not None and existing != tool:
            raise ValueError(f"Tool already registered with a different definition: {tool.name}")
        self.tools[tool.name] = tool

    def get_tool(self, name: str) -> Tool | None:
        return self.tools.get(name)

    def update_totals(self, usage: TokenUsage, provider_requests: int) -> None:
        self.token_usage = self.token_usage + usage
        self.provider_requests += provider_requests
        self.updated_at = _now()


# --- Per-call options ---

ValidateResponseCallback = Callable[[ProviderResponse, Conversation], "str | None"]


@dataclass
class SpeakOptions:
    """Per-call options for a provider request.

    Not persisted; the validate callback makes it unsuitable for JSON.
    """

    temperature: float | None = None
    max_tokens: int | None = None
    system: str | None = None
    model: str | None = None
    messages: list[Message] | None = None
    tools: list[Tool] | None = None
    validate_response_callback: ValidateResponseCallback | None = None
    extra_instructions: list[str] = field(default_factory=list)
