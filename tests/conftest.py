"""Test fixtures using a temporary SQLite database per test."""

import pytest
import pytest_asyncio

from parley.config import Settings
from parley.llm.cache import RequestCache
from parley.storage.database import Database
from parley.storage.persistence import ConversationPersistence


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointed at a throwaway database, with fast retries and no ctags."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        OPENAI_API_KEY="test-key",
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'parley.db'}",
        max_turns=3,
        max_speak_retries=3,
        speak_retry_delay=0.0,
        ctags_enabled=False,
        temperature=0.7,
        max_tokens=1024,
    )


@pytest_asyncio.fixture
async def db(settings):
    """Function-scoped database with all tables created."""
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def persistence(db):
    return ConversationPersistence(db)


@pytest_asyncio.fixture
async def cache(db, settings):
    return RequestCache(db, default_ttl=settings.request_cache_ttl)


@pytest.fixture
def project(tmp_path):
    """A git project (just a .git directory) with one text file."""
    root = tmp_path / "project"
    (root / ".git").mkdir(parents=True)
    (root / "src").mkdir()
    (root / "a.txt").write_text("one\ntwo\nthree\n")
    (root / "src" / "main.py").write_text("print('hello')\n")
    return root
