"""parley entry point.

Initializes all components and starts the server:
  Settings -> Database -> RequestCache + UsageTracker -> ProviderFactory -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from parley.config import Settings
from parley.editor.project import ProjectEditor
from parley.llm.cache import RequestCache
from parley.llm.factory import ProviderFactory
from parley.llm.usage import UsageTracker
from parley.storage.database import Database
from parley.storage.persistence import ConversationPersistence

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    The request cache and usage tracker are the only state shared between
    conversations; both are created here once and injected everywhere.
    """
    database = Database(settings)
    await database.connect()

    cache = RequestCache(database, default_ttl=settings.request_cache_ttl)
    purged = await cache.purge_expired()
    if purged:
        logger.info("Dropped %d expired request cache entries at startup", purged)

    usage = UsageTracker()
    factory = ProviderFactory(settings, cache=cache, usage=usage)
    persistence = ConversationPersistence(database)

    return {
        "database": database,
        "cache": cache,
        "usage": usage,
        "factory": factory,
        "persistence": persistence,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down parley...")

    factory = components.get("factory")
    if factory:
        await factory.close()

    usage = components.get("usage")
    if usage:
        await usage.close()

    cache = components.get("cache")
    if cache:
        await cache.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("parley shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in its lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "parley started: provider=%s, max_turns=%d, max_speak_retries=%d",
            settings.default_provider,
            settings.max_turns,
            settings.max_speak_retries,
        )
        yield

        await shutdown_components(components)

    def editor_factory(start_dir: str) -> ProjectEditor:
        return ProjectEditor(start_dir, settings, components["factory"], components["persistence"])

    # Import here to avoid circular imports at module level
    from parley.api.rest import create_app

    return create_app(
        editor_factory=editor_factory,
        persistence=_lazy_component(components, "persistence"),
        database=_lazy_component(components, "database"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting parley on %s:%d", settings.host, settings.port)
    logger.info("Database: %s", settings.db_url)
    logger.info("Default provider: %s", settings.default_provider)

    if settings.default_provider == "anthropic" and not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set -- conversation endpoints will fail")
    if settings.default_provider == "openai" and not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set -- conversation endpoints will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
