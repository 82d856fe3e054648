"""Anthropic Messages API provider (direct httpx, no SDK)."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

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
    ToolResultPart,
    ToolUsePart,
)

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": "end_turn",
    "tool_use": "tool_use",
    "max_tokens": "max_tokens",
    "stop_sequence": "stop_sequence",
    "pause_turn": "end_turn",
    "refusal": "content_filter",
}


def build_anthropic_headers(api_key: str) -> dict[str, str]:
    """Auth headers for Anthropic API calls.

    OAT tokens (sk-ant-oat*) need Bearer auth plus the oauth beta headers;
    regular API keys use x-api-key.
    """
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    if api_key and "sk-ant-oat" in api_key:
        headers["authorization"] = f"Bearer {api_key}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
        headers["anthropic-dangerous-direct-browser-access"] = "true"
    elif api_key:
        headers["x-api-key"] = api_key
    else:
        logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")
    return headers


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_reset(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        reset = datetime.fromisoformat(value)
    except ValueError:
        return None
    if reset.tzinfo is None:
        reset = reset.replace(tzinfo=UTC)
    return reset


def parse_rate_limit(headers: httpx.Headers) -> RateLimit:
    """Read the anthropic-ratelimit-* headers (plus retry-after on 429)."""
    requests_reset_at = _parse_reset(headers.get("anthropic-ratelimit-requests-reset"))
    retry_after = headers.get("retry-after")
    if retry_after is not None:
        try:
            retry_at = datetime.now(UTC) + timedelta(seconds=float(retry_after))
        except ValueError:
            retry_at = None
        if retry_at is not None and (requests_reset_at is None or retry_at > requests_reset_at):
            requests_reset_at = retry_at
    return RateLimit(
        requests_remaining=_parse_int(headers.get("anthropic-ratelimit-requests-remaining")),
        requests_limit=_parse_int(headers.get("anthropic-ratelimit-requests-limit")),
        requests_reset_at=requests_reset_at,
        tokens_remaining=_parse_int(headers.get("anthropic-ratelimit-tokens-remaining")),
        tokens_limit=_parse_int(headers.get("anthropic-ratelimit-tokens-limit")),
        tokens_reset_at=_parse_reset(headers.get("anthropic-ratelimit-tokens-reset")),
    )


def _format_part(part: Any) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": part.media_type, "data": part.data},
        }
    if isinstance(part, ToolUsePart):
        return {"type": "tool_use", "id": part.id, "name": part.name, "input": part.input}
    if isinstance(part, ToolResultPart):
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": part.tool_use_id,
            "content": [_format_part(p) for p in part.content],
        }
        if part.is_error:
            block["is_error"] = True
        return block
    raise TypeError(f"Unsupported content part: {type(part).__name__}")


def format_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert conversation messages to Anthropic API format.

    System messages are dropped (the system prompt travels separately) and
    consecutive same-role messages are merged, since the API requires
    alternating user/assistant turns.
    """
    formatted: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue
        role = "assistant" if message.role == "assistant" else "user"
        blocks = [_format_part(p) for p in message.content]
        if not blocks:
            continue
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": role, "content": blocks})
    return formatted


def _parse_content(blocks: list[dict[str, Any]]) -> list[Any]:
    content: list[Any] = []
    for block in blocks:
        block_type = block.get("type")
        if block_type == "text":
            content.append(TextPart(text=block.get("text", "")))
        elif block_type == "tool_use":
            content.append(ToolUsePart(id=block["id"], name=block["name"], input=block.get("input") or {}))
        else:
            logger.debug("Skipping unsupported content block type: %s", block_type)
    return content


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    max_output_tokens = 8192

    @property
    def default_model(self) -> str:
        return self._settings.anthropic_model

    def _build_client(self) -> httpx.AsyncClient:
        client = httpx.AsyncClient(
            base_url=self._settings.anthropic_base_url,
            headers=build_anthropic_headers(self._settings.anthropic_api_key),
            timeout=self._timeout(),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("provider[%s] httpx client initialized", self.name)
        return client

    async def prepare_request(self, conversation: Conversation, options: SpeakOptions) -> dict[str, Any]:
        temperature = options.temperature if options.temperature is not None else self._settings.temperature
        payload: dict[str, Any] = {
            "model": options.model or conversation.model,
            "max_tokens": options.max_tokens or self._settings.max_tokens,
            "temperature": temperature,
            "system": [
                {
                    "type": "text",
                    "text": self.build_system_prompt(conversation, options),
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": format_messages(self.request_messages(conversation, options)),
        }
        tools = self.request_tools(conversation, options)
        if tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema} for t in tools
            ]
        return payload

    async def send(self, payload: dict[str, Any]) -> ProviderResponse:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")

        response = await self._http.post("/v1/messages", json=payload)
        rate_limit = parse_rate_limit(response.headers)

        if response.status_code != 200:
            try:
                error_data = response.json()
                error_type = error_data.get("error", {}).get("type", "unknown")
                error_msg = error_data.get("error", {}).get("message", "unknown error")
            except ValueError:
                error_type = "http_error"
                error_msg = f"HTTP {response.status_code}: {response.text[:500]}"
            return ProviderResponse(
                model=payload.get("model", ""),
                status=response.status_code,
                status_text=f"{error_type} - {error_msg}",
                rate_limit=rate_limit,
            )

        data = response.json()
        content = _parse_content(data.get("content", []))
        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)
        stop_reason = data.get("stop_reason")
        return ProviderResponse(
            id=data.get("id", ""),
            model=data.get("model", payload.get("model", "")),
            content=content,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            rate_limit=rate_limit,
            stop_reason=_STOP_REASONS.get(stop_reason),
            is_tool=any(isinstance(p, ToolUsePart) for p in content),
        )
