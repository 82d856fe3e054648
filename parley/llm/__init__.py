"""LLM layer: providers, request cache, usage tracking and validation."""

from parley.llm.cache import RequestCache
from parley.llm.factory import ProviderFactory
from parley.llm.provider import BaseProvider
from parley.llm.schemas import (
    Conversation,
    ImagePart,
    Message,
    ProviderResponse,
    RateLimit,
    SpeakOptions,
    TextPart,
    TokenUsage,
    Tool,
    ToolResultPart,
    ToolUse,
    ToolUsePart,
)
from parley.llm.usage import UsageTracker
from parley.llm.validator import validate_response, validate_tool_input

__all__ = [
    "BaseProvider",
    "Conversation",
    "ImagePart",
    "Message",
    "ProviderFactory",
    "ProviderResponse",
    "RateLimit",
    "RequestCache",
    "SpeakOptions",
    "TextPart",
    "TokenUsage",
    "Tool",
    "ToolResultPart",
    "ToolUse",
    "ToolUsePart",
    "UsageTracker",
    "validate_response",
    "validate_tool_input",
]
