"""OpenAI Chat Completions provider (direct httpx, no SDK)."""

from __future__ import annotations

import json
import logging
import re
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

_FINISH_REASONS = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "content_filter",
}

# "1s", "6m0s", "20ms", "1h2m3.5s"
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | None) -> float | None:
    """Parse an x-ratelimit-reset-* duration into seconds."""
    if not value:
        return None
    matches = _DURATION_RE.findall(value)
    if not matches:
        try:
            return float(value)
        except ValueError:
            return None
    return sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in matches)


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _reset_at(value: str | None) -> datetime | None:
    seconds = parse_duration(value)
    if seconds is None:
        return None
    return datetime.now(UTC) + timedelta(seconds=seconds)


def parse_rate_limit(headers: httpx.Headers) -> RateLimit:
    """Read the x-ratelimit-* headers."""
    requests_reset_at = _reset_at(headers.get("x-ratelimit-reset-requests"))
    retry_at = _reset_at(headers.get("retry-after"))
    if retry_at is not None and (requests_reset_at is None or retry_at > requests_reset_at):
        requests_reset_at = retry_at
    return RateLimit(
        requests_remaining=_parse_int(headers.get("x-ratelimit-remaining-requests")),
        requests_limit=_parse_int(headers.get("x-ratelimit-limit-requests")),
        requests_reset_at=requests_reset_at,
        tokens_remaining=_parse_int(headers.get("x-ratelimit-remaining-tokens")),
        tokens_limit=_parse_int(headers.get("x-ratelimit-limit-tokens")),
        tokens_reset_at=_reset_at(headers.get("x-ratelimit-reset-tokens")),
    )


def _user_part(part: TextPart | ImagePart) -> dict[str, Any]:
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": f"data:{part.media_type};base64,{part.data}"}}
    return {"type": "text", "text": part.text}


def _result_text(part: ToolResultPart) -> str:
    text = "\n".join(p.text for p in part.content if isinstance(p, TextPart))
    if any(isinstance(p, ImagePart) for p in part.content):
        text += "\n(image content attached in the following user message)"
    return text


def format_messages(system: str, messages: list[Message]) -> list[dict[str, Any]]:
    """Convert conversation messages to Chat Completions format.

    Tool results become ``tool`` role messages; images inside tool results
    are re-sent as a user message because tool messages only carry text.
    """
    formatted: list[dict[str, Any]] = [{"role": "system", "content": system}]
    for message in messages:
        if message.role == "system":
            formatted.append(
                {"role": "system", "content": "\n".join(p.text for p in message.content if isinstance(p, TextPart))}
            )
            continue

        if message.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant"}
            text = "".join(p.text for p in message.content if isinstance(p, TextPart))
            entry["content"] = text or None
            tool_calls = [
                {
                    "id": p.id,
                    "type": "function",
                    "function": {"name": p.name, "arguments": json.dumps(p.input, sort_keys=True)},
                }
                for p in message.content
                if isinstance(p, ToolUsePart)
            ]
            if tool_calls:
                entry["tool_calls"] = tool_calls
            formatted.append(entry)
            continue

        user_parts: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ToolResultPart):
                formatted.append({"role": "tool", "tool_call_id": part.tool_use_id, "content": _result_text(part)})
                user_parts.extend(_user_part(p) for p in part.content if isinstance(p, ImagePart))
            elif isinstance(part, (TextPart, ImagePart)):
                user_parts.append(_user_part(part))
        if user_parts:
            formatted.append({"role": "user", "content": user_parts})
    return formatted


def _parse_message(message: dict[str, Any]) -> list[Any]:
    content: list[Any] = []
    if message.get("content"):
        content.append(TextPart(text=message["content"]))
    for call in message.get("tool_calls") or []:
        function = call.get("function", {})
        arguments = function.get("arguments") or "{}"
        try:
            tool_input = json.loads(arguments)
        except json.JSONDecodeError:
            logger.warning("Tool call %s has malformed JSON arguments", call.get("id"))
            tool_input = {}
        if not isinstance(tool_input, dict):
            tool_input = {}
        content.append(ToolUsePart(id=call.get("id", ""), name=function.get("name", ""), input=tool_input))
    return content


class OpenAIProvider(BaseProvider):
    name = "openai"
    max_output_tokens = 16384

    @property
    def default_model(self) -> str:
        return self._settings.openai_model

    def _build_client(self) -> httpx.AsyncClient:
        api_key = self._settings.openai_api_key
        if not api_key:
            logger.warning("OPENAI_API_KEY is not set -- API calls will fail")
        client = httpx.AsyncClient(
            base_url=self._settings.openai_base_url,
            headers={"authorization": f"Bearer {api_key}", "content-type": "application/json"},
            timeout=self._timeout(),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("provider[%s] httpx client initialized", self.name)
        return client

    async def prepare_request(self, conversation: Conversation, options: SpeakOptions) -> dict[str, Any]:
        temperature = options.temperature if options.temperature is not None else self._settings.temperature
        payload: dict[str, Any] = {
            "model": options.model or conversation.model,
            "max_completion_tokens": options.max_tokens or self._settings.max_tokens,
            "temperature": temperature,
            "messages": format_messages(
                self.build_system_prompt(conversation, options),
                self.request_messages(conversation, options),
            ),
        }
        tools = self.request_tools(conversation, options)
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
                }
                for t in tools
            ]
            payload["tool_choice"] = "auto"
        return payload

    async def send(self, payload: dict[str, Any]) -> ProviderResponse:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")

        response = await self._http.post("/chat/completions", json=payload)
        rate_limit = parse_rate_limit(response.headers)

        if response.status_code != 200:
            try:
                error = response.json().get("error") or {}
                error_type = error.get("type") or error.get("code") or "unknown"
                error_msg = error.get("message", "unknown error")
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
        choices = data.get("choices") or [{}]
        choice = choices[0]
        content = _parse_message(choice.get("message") or {})
        usage = data.get("usage") or {}
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)
        return ProviderResponse(
            id=data.get("id", ""),
            model=data.get("model", payload.get("model", "")),
            content=content,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=usage.get("total_tokens", input_tokens + output_tokens),
            ),
            rate_limit=rate_limit,
            stop_reason=_FINISH_REASONS.get(choice.get("finish_reason")),
            is_tool=any(isinstance(p, ToolUsePart) for p in content),
        )
