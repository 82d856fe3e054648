"""Track remaining per-provider quota across all conversations.

One tracker is shared by every conversation in the process. Each completed
(non-cached) provider call does one read-modify-write on that provider's
record under a per-provider lock. The numbers are estimates only: they steer
nothing but logging and the status endpoint, so a stale value never affects
conversation content.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime

from parley.llm.schemas import RateLimit, TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class ProviderQuota:
    """Locally tracked quota for one provider."""

    provider_name: str
    requests_remaining: int | None = None
    tokens_remaining: int | None = None
    requests_reset_at: datetime | None = None
    tokens_reset_at: datetime | None = None
    requests_made: int = 0
    tokens_used: int = 0
    updated_at: datetime | None = None


class UsageTracker:
    """Per-provider quota tracker.

    The first response carrying a rate-limit snapshot seeds the record;
    afterwards each call decrements requests by one and tokens by the
    reported total. Once the tracked reset time has passed, the next
    snapshot replaces the estimate (the provider's window rolled over).
    """

    def __init__(self) -> None:
        self._quotas: dict[str, ProviderQuota] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def record(self, provider_name: str, usage: TokenUsage, rate_limit: RateLimit | None = None) -> ProviderQuota:
        """Account for one completed provider call."""
        async with self._locks[provider_name]:
            quota = self._quotas.get(provider_name)
            if quota is None:
                quota = ProviderQuota(provider_name=provider_name)
                self._quotas[provider_name] = quota
                self._seed(quota, rate_limit)
            elif rate_limit is not None and _window_rolled(quota, rate_limit):
                self._seed(quota, rate_limit)
            else:
                if quota.requests_remaining is not None:
                    quota.requests_remaining -= 1
                if quota.tokens_remaining is not None:
                    quota.tokens_remaining -= usage.total_tokens
            quota.requests_made += 1
            quota.tokens_used += usage.total_tokens
            quota.updated_at = datetime.now(UTC)

            if quota.requests_remaining is not None and quota.requests_remaining <= 0:
                logger.warning("provider[%s] local request quota exhausted", provider_name)
            return quota

    def get(self, provider_name: str) -> ProviderQuota | None:
        return self._quotas.get(provider_name)

    def snapshot(self) -> dict[str, ProviderQuota]:
        return dict(self._quotas)

    async def close(self) -> None:
        for quota in self._quotas.values():
            logger.info(
                "provider[%s] usage: %d requests, %d tokens",
                quota.provider_name,
                quota.requests_made,
                quota.tokens_used,
            )
        self._quotas.clear()

    @staticmethod
    def _seed(quota: ProviderQuota, rate_limit: RateLimit | None) -> None:
        if rate_limit is None:
            return
        quota.requests_remaining = rate_limit.requests_remaining
        quota.tokens_remaining = rate_limit.tokens_remaining
        quota.requests_reset_at = rate_limit.requests_reset_at
        quota.tokens_reset_at = rate_limit.tokens_reset_at


def _window_rolled(quota: ProviderQuota, rate_limit: RateLimit) -> bool:
    if rate_limit.requests_reset_at is None or quota.requests_reset_at is None:
        return False
    return datetime.now(UTC) >= quota.requests_reset_at
