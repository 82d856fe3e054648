"""Request cache: canonical request fingerprint -> previously seen response.

Entries expire after a TTL; there is no other eviction. Writing the same
fingerprint twice is an upsert, and concurrent conversations only ever race
on a key when they sent byte-identical requests, in which case either write
is correct.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any

from sqlalchemy import delete

from parley.llm.schemas import ProviderResponse
from parley.storage.database import Database
from parley.storage.models import RequestCacheRecord

logger = logging.getLogger(__name__)

CACHE_KIND = "messageRequest"


def canonical_json(value: Any) -> str:
    """Serialize to JSON with sorted keys so equal payloads give equal bytes."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def make_cache_key(provider_name: str, payload: dict[str, Any]) -> tuple[str, str, str]:
    """Build the (kind, provider, canonical payload) cache key."""
    return (CACHE_KIND, provider_name, canonical_json(payload))


def fingerprint(key: tuple[str, ...]) -> str:
    """Hash a cache key into a fixed-size fingerprint."""
    return hashlib.sha256("\x00".join(key).encode("utf-8")).hexdigest()


class RequestCache:
    """TTL cache of provider responses backed by the parley database."""

    def __init__(self, database: Database, default_ttl: int = 3 * 24 * 60 * 60) -> None:
        self._db = database
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> ProviderResponse | None:
        """Return the cached response (flagged ``from_cache``) or None on miss."""
        async with self._db.session() as session:
            record = await session.get(RequestCacheRecord, key)
            if record is not None and record.expires_at <= time.time():
                await session.delete(record)
                await session.commit()
                record = None
        if record is None:
            self.misses += 1
            return None
        self.hits += 1
        response = ProviderResponse.model_validate_json(record.response)
        response.from_cache = True
        return response

    async def set(
        self,
        key: str,
        response: ProviderResponse,
        provider_name: str = "",
        ttl: int | None = None,
    ) -> None:
        expires_at = time.time() + (ttl if ttl is not None else self.default_ttl)
        stored = response.model_copy(update={"from_cache": False})
        async with self._db.session() as session:
            await session.merge(
                RequestCacheRecord(
                    fingerprint=key,
                    provider_name=provider_name,
                    response=stored.model_dump_json(),
                    expires_at=expires_at,
                )
            )
            await session.commit()

    async def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""
        async with self._db.session() as session:
            result = await session.execute(
                delete(RequestCacheRecord).where(RequestCacheRecord.expires_at <= time.time())
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d expired request cache entries", removed)
        return removed

    async def close(self) -> None:
        """Flush housekeeping on shutdown."""
        try:
            await self.purge_expired()
        except Exception:
            logger.warning("Request cache purge on shutdown failed")
        logger.info("Request cache closed (hits=%d, misses=%d)", self.hits, self.misses)
