"""Test doubles shared by the test modules: a scripted provider and response builders."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from parley.config import Settings
from parley.llm.cache import RequestCache
from parley.llm.provider import BaseProvider
from parley.llm.schemas import (
    Conversation,
    ProviderResponse,
    RateLimit,
    SpeakOptions,
    TextPart,
    TokenUsage,
    ToolUsePart,
)
from parley.llm.usage import UsageTracker


def text_response(text: str = "Done.", **kwargs: Any) -> ProviderResponse:
    """A plain end_turn response."""
    kwargs.setdefault("stop_reason", "end_turn")
    kwargs.setdefault("usage", TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15))
    return ProviderResponse(
        id=f"msg_{uuid.uuid4().hex[:12]}",
        model="scripted-model",
        content=[TextPart(text=text)],
        **kwargs,
    )


def tool_response(*calls: tuple[str, dict], text: str = "", stop_reason: str = "tool_use") -> ProviderResponse:
    """A tool_use response with one block per (name, input) pair."""
    content: list[Any] = [TextPart(text=text)] if text else []
    for name, tool_input in calls:
        content.append(ToolUsePart(id=f"toolu_{uuid.uuid4().hex[:12]}", name=name, input=tool_input))
    return ProviderResponse(
        id=f"msg_{uuid.uuid4().hex[:12]}",
        model="scripted-model",
        content=content,
        stop_reason=stop_reason,
        is_tool=True,
        usage=TokenUsage(input_tokens=20, output_tokens=10, total_tokens=30),
    )


def status_response(status: int, reset_in: float | None = None) -> ProviderResponse:
    """A non-2xx transport outcome, optionally carrying a rate-limit reset time."""
    rate_limit = RateLimit()
    if reset_in is not None:
        rate_limit = RateLimit(requests_reset_at=datetime.now(UTC) + timedelta(seconds=reset_in))
    return ProviderResponse(status=status, status_text=f"HTTP {status}", rate_limit=rate_limit)


class ScriptedProvider(BaseProvider):
    """Provider whose transport replays a queue of responses (or raises queued exceptions).

    Every payload sent is recorded, and backoff sleeps are recorded instead
    of slept.
    """

    name = "scripted"

    def __init__(
        self,
        settings: Settings,
        responses: list[ProviderResponse | Exception] | None = None,
        cache: RequestCache | None = None,
        usage: UsageTracker | None = None,
        on_send: Callable[[int], None] | None = None,
    ) -> None:
        super().__init__(settings, cache=cache, usage=usage)
        self.responses = list(responses or [])
        self.payloads: list[dict[str, Any]] = []
        self.sleeps: list[float] = []
        self.on_send = on_send

        async def record_sleep(seconds: float) -> None:
            self.sleeps.append(seconds)

        self._sleep = record_sleep

    @property
    def default_model(self) -> str:
        return "scripted-model"

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def prepare_request(self, conversation: Conversation, options: SpeakOptions) -> dict[str, Any]:
        return {
            "model": options.model or conversation.model,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "system": self.build_system_prompt(conversation, options),
            "messages": [
                {"role": m.role, "content": [p.model_dump(mode="json") for p in m.content]}
                for m in self.request_messages(conversation, options)
            ],
            "tools": sorted(t.name for t in self.request_tools(conversation, options)),
        }

    async def send(self, payload: dict[str, Any]) -> ProviderResponse:
        self.payloads.append(payload)
        if self.on_send is not None:
            self.on_send(len(self.payloads))
        if not self.responses:
            raise AssertionError("No scripted response left")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item.model_copy(deep=True)


class StaticFactory:
    """ProviderFactory stand-in that always hands out the same provider."""

    def __init__(self, provider: BaseProvider) -> None:
        self.provider = provider
        self.requested: list[str | None] = []

    async def get_provider(self, name: str | None = None) -> BaseProvider:
        self.requested.append(name)
        return self.provider

    async def close(self) -> None:
        pass
