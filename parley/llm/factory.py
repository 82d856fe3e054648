"""Provider lookup by name."""

from __future__ import annotations

import asyncio
import logging

from parley.config import Settings
from parley.errors import UnsupportedProvider
from parley.llm.cache import RequestCache
from parley.llm.provider import BaseProvider
from parley.llm.providers import AnthropicProvider, OpenAIProvider
from parley.llm.usage import UsageTracker

logger = logging.getLogger(__name__)

PROVIDERS: dict[str, type[BaseProvider]] = {
    "anthropic": AnthropicProvider,
    "claude": AnthropicProvider,
    "openai": OpenAIProvider,
}


class ProviderFactory:
    """Builds one provider instance per vendor and shares it across conversations.

    All providers share the same request cache and usage tracker.
    """

    def __init__(
        self,
        settings: Settings,
        cache: RequestCache | None = None,
        usage: UsageTracker | None = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self.usage = usage or UsageTracker()
        self._providers: dict[type[BaseProvider], BaseProvider] = {}
        self._lock = asyncio.Lock()

    async def get_provider(self, name: str | None = None) -> BaseProvider:
        """Return the started provider for ``name`` (default provider if None)."""
        key = (name or self._settings.default_provider).lower()
        provider_cls = PROVIDERS.get(key)
        if provider_cls is None:
            raise UnsupportedProvider(f"Unsupported provider: {name}", provider=name)

        async with self._lock:
            provider = self._providers.get(provider_cls)
            if provider is None:
                provider = provider_cls(self._settings, cache=self._cache, usage=self.usage)
                await provider.start()
                self._providers[provider_cls] = provider
                logger.info("Provider %s ready", provider.name)
        return provider

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
