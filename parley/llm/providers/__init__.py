"""Vendor providers."""

from parley.llm.providers.anthropic import AnthropicProvider
from parley.llm.providers.openai import OpenAIProvider

__all__ = ["AnthropicProvider", "OpenAIProvider"]
