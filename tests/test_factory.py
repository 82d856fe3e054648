"""Tests for provider lookup and component wiring."""

import pytest

from parley.errors import UnsupportedProvider
from parley.llm.factory import ProviderFactory
from parley.llm.providers import AnthropicProvider, OpenAIProvider
from parley.main import create_components, shutdown_components


@pytest.mark.asyncio
async def test_providers_are_shared_per_vendor(settings):
    factory = ProviderFactory(settings)

    default = await factory.get_provider()
    claude = await factory.get_provider("claude")
    openai = await factory.get_provider("OpenAI")

    assert isinstance(default, AnthropicProvider)
    assert claude is default
    assert isinstance(openai, OpenAIProvider)
    assert default._usage is openai._usage is factory.usage

    await factory.close()


@pytest.mark.asyncio
async def test_unknown_provider(settings):
    factory = ProviderFactory(settings)

    with pytest.raises(UnsupportedProvider, match="Unsupported provider: gemini") as exc_info:
        await factory.get_provider("gemini")

    assert exc_info.value.status == 400


@pytest.mark.asyncio
async def test_components_lifecycle(settings):
    components = await create_components(settings)

    assert set(components) == {"database", "cache", "usage", "factory", "persistence"}
    provider = await components["factory"].get_provider()
    assert provider._cache is components["cache"]

    await shutdown_components(components)
