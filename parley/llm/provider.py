"""Provider base class: resilient request client and retrying speak wrapper.

Each vendor subclasses ``BaseProvider`` and supplies the request shaping
(``prepare_request``), the transport call (``send``), stop-reason
interpretation (``check_stop_reason``) and, optionally, the hook that adjusts
options after a validation failure (``modify_speak_options``).

Two retry loops live here:

* ``speak_with_plus`` retries *transport* outcomes: 429 waits for the
  provider's reset time, 5xx backs off exponentially, anything else fails.
* ``speak_with_retry`` retries *validation* outcomes around it and owns the
  conversation's running totals.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import httpx

from parley.config import Settings
from parley.errors import (
    ConversationCancelled,
    ParleyError,
    ProviderError,
    ProviderRetryExhausted,
    SpeakRetryExhausted,
    ValidationFailure,
)
from parley.llm.cache import RequestCache, fingerprint, make_cache_key
from parley.llm.schemas import (
    Conversation,
    Message,
    ProviderResponse,
    SpeakOptions,
    TextPart,
    TokenUsage,
    Tool,
    ToolResultPart,
    ToolUse,
    ToolUsePart,
)
from parley.llm.usage import UsageTracker
from parley.llm.validator import validate_response

logger = logging.getLogger(__name__)

_REFORMAT_INSTRUCTION = (
    "Your previous response was rejected ({reason}). Respond again and make sure "
    "every tool call names a registered tool and its input matches that tool's input schema exactly."
)


class BaseProvider:
    """Common request/retry machinery shared by all providers."""

    name: str = ""
    max_output_tokens: int = 8192

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        cache: RequestCache | None = None,
        usage: UsageTracker | None = None,
    ) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None
        self._cache = cache
        self._usage = usage
        self.max_speak_retries = settings.max_speak_retries
        self.request_cache_ttl = settings.request_cache_ttl
        self._sleep = asyncio.sleep

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Create the httpx client unless one was injected."""
        if self._http is None:
            self._http = self._build_client()
            self._owns_http = True

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _build_client(self) -> httpx.AsyncClient:
        raise NotImplementedError(f"{type(self).__name__} must implement _build_client()")

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._settings.api_timeout_connect,
            read=self._settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )

    @property
    def cache_enabled(self) -> bool:
        return self._cache is not None and not self._settings.ignore_llm_request_cache

    # ------------------------------------------------------------------
    # Provider capabilities (overridden per vendor)
    # ------------------------------------------------------------------

    @property
    def default_model(self) -> str:
        raise NotImplementedError

    async def prepare_request(self, conversation: Conversation, options: SpeakOptions) -> dict[str, Any]:
        raise NotImplementedError(f"{type(self).__name__} must implement prepare_request()")

    async def send(self, payload: dict[str, Any]) -> ProviderResponse:
        raise NotImplementedError(f"{type(self).__name__} must implement send()")

    def check_stop_reason(self, response: ProviderResponse) -> None:
        """Log stop reasons that deserve attention."""
        if response.stop_reason == "max_tokens":
            logger.warning("provider[%s] response stopped at the max_tokens limit", self.name)
        elif response.stop_reason == "content_filter":
            logger.warning("provider[%s] response was cut by the content filter", self.name)
        elif response.stop_reason is None:
            logger.warning("provider[%s] response carried no stop reason", self.name)

    def modify_speak_options(
        self,
        conversation: Conversation,
        options: SpeakOptions,
        validation_failed_reason: str,
        response: ProviderResponse | None = None,
    ) -> None:
        """Adjust the next attempt after a validation failure.

        Halves the temperature, asks the model to re-format, raises the
        output budget after a truncated tool call, and answers each rejected
        tool_use with an error tool_result so the next request stays
        well-formed. A rejected plain answer gets a user turn carrying the
        reason, so the request does not end on the rejected assistant turn.
        """
        current = options.temperature if options.temperature is not None else self._settings.temperature
        options.temperature = max(0.0, round(current * 0.5, 3))

        instruction = _REFORMAT_INSTRUCTION.format(reason=validation_failed_reason)
        if instruction not in options.extra_instructions:
            options.extra_instructions.append(instruction)

        if validation_failed_reason == "Tool input exceeded max tokens":
            current_max = options.max_tokens or self._settings.max_tokens
            options.max_tokens = min(current_max * 2, self.max_output_tokens)

        if response is not None and response.tools_used:
            conversation.add_message(
                Message(
                    role="user",
                    content=[
                        ToolResultPart(
                            tool_use_id=tool_use.tool_use_id,
                            content=[TextPart(text=f"Tool call rejected: {validation_failed_reason}")],
                            is_error=True,
                        )
                        for tool_use in response.tools_used
                    ],
                )
            )
        elif response is not None:
            conversation.add_message(
                Message(
                    role="user",
                    content=[TextPart(text=f"Your previous answer was rejected: {validation_failed_reason}")],
                )
            )

    # ------------------------------------------------------------------
    # Shared request shaping helpers
    # ------------------------------------------------------------------

    def create_conversation(self, model: str | None = None, base_system: str = "") -> Conversation:
        return Conversation(provider_name=self.name, model=model or self.default_model, base_system=base_system)

    def build_system_prompt(self, conversation: Conversation, options: SpeakOptions) -> str:
        """Base system prompt + project details + any re-formatting instructions."""
        system = options.system if options.system is not None else conversation.base_system
        info = conversation.project_info
        if info and info.get("content"):
            if info.get("type") == "ctags":
                system += f"\n\n<project-details>\n<ctags>\n{info['content']}\n</ctags>\n</project-details>"
            elif info.get("type") == "file-listing":
                system += (
                    f"\n\n<project-details>\n<file-listing>\n{info['content']}\n</file-listing>\n</project-details>"
                )
        for instruction in options.extra_instructions:
            system += f"\n\n{instruction}"
        return system

    def request_messages(self, conversation: Conversation, options: SpeakOptions) -> list[Message]:
        return options.messages if options.messages is not None else conversation.messages

    def request_tools(self, conversation: Conversation, options: SpeakOptions) -> list[Tool]:
        return options.tools if options.tools is not None else list(conversation.tools.values())

    # ------------------------------------------------------------------
    # Request client
    # ------------------------------------------------------------------

    async def speak_with_plus(
        self,
        conversation: Conversation,
        options: SpeakOptions | None = None,
    ) -> ProviderResponse:
        """Issue one logical request: cache, transport retry, extraction."""
        response, cache_key = await self._speak(conversation, options or SpeakOptions())
        if cache_key is not None:
            await self._cache_set(cache_key, response)
        return response

    async def _speak(
        self,
        conversation: Conversation,
        options: SpeakOptions,
    ) -> tuple[ProviderResponse, str | None]:
        """Like ``speak_with_plus`` but leaves the cache write to the caller.

        Returns the response and the cache key it should be stored under,
        which is None when caching is off or the response came from cache.
        """
        payload = await self.prepare_request(conversation, options)

        cache_key: str | None = None
        if self.cache_enabled:
            cache_key = fingerprint(make_cache_key(self.name, payload))
            logger.debug("provider[%s] using cache key: %s", self.name, cache_key)
            cached = await self._cache_get(cache_key)
            if cached is not None:
                logger.info("provider[%s] speak_with_plus: using cached response", self.name)
                cached.provider_requests = 0
                conversation.add_message(
                    Message(role="assistant", content=cached.content, provider_response=cached)
                )
                return cached, None

        response = await self._send_with_backoff(conversation, payload)

        if self._usage is not None:
            await self._usage.record(self.name, response.usage, response.rate_limit)

        self.check_stop_reason(response)
        if response.is_tool:
            self.extract_tool_use(response)
        else:
            response.answer = next((p.text for p in response.content if isinstance(p, TextPart)), "")

        response.from_cache = False
        conversation.add_message(Message(role="assistant", content=response.content, provider_response=response))
        return response, cache_key

    async def _send_with_backoff(self, conversation: Conversation, payload: dict[str, Any]) -> ProviderResponse:
        max_retries = self.max_speak_retries
        delay = self._settings.initial_backoff
        attempts = 0

        while attempts < max_retries:
            attempts += 1
            try:
                async with asyncio.timeout(self._settings.request_deadline):
                    response = await self.send(payload)
            except ProviderError:
                raise
            except Exception as e:
                raise ProviderError(
                    f"Unexpected error calling LLM service: {e!r}",
                    model=conversation.model,
                    provider=self.name,
                    conversation_id=conversation.id,
                    args={"reason": repr(e)},
                    attempts=attempts,
                ) from e

            status = response.status
            if 200 <= status < 300:
                response.provider_requests = attempts
                return response

            if status == 429:
                wait = self._rate_limit_wait(response, delay)
                logger.warning(
                    "provider[%s] Rate limit exceeded. Waiting for %.2fs before retrying.", self.name, wait
                )
            elif status >= 500:
                wait = delay
                delay *= 2
                logger.warning(
                    "provider[%s] Server error (%d). Retrying in %.2fs.", self.name, status, wait
                )
            else:
                raise ProviderError(
                    f"Error calling LLM service: {response.status_text}",
                    model=conversation.model,
                    provider=self.name,
                    conversation_id=conversation.id,
                    args={"status": status},
                    attempts=attempts,
                )

            if attempts < max_retries:
                await self._sleep(wait)

        raise ProviderRetryExhausted(
            "Max retries reached when calling LLM service.",
            model=conversation.model,
            provider=self.name,
            conversation_id=conversation.id,
            args={"retries": max_retries},
            attempts=attempts,
        )

    @staticmethod
    def _rate_limit_wait(response: ProviderResponse, delay: float) -> float:
        reset_at = response.rate_limit.requests_reset_at
        if reset_at is None:
            return delay
        remaining = (reset_at - datetime.now(UTC)).total_seconds()
        return max(remaining, delay)

    async def _cache_get(self, key: str) -> ProviderResponse | None:
        try:
            return await self._cache.get(key)
        except Exception:
            logger.warning("provider[%s] request cache read failed; calling provider", self.name, exc_info=True)
            return None

    async def _cache_set(self, key: str, response: ProviderResponse) -> None:
        try:
            await self._cache.set(key, response, provider_name=self.name, ttl=self.request_cache_ttl)
        except Exception:
            logger.warning("provider[%s] request cache write failed", self.name, exc_info=True)

    @staticmethod
    def extract_tool_use(response: ProviderResponse) -> None:
        """Populate ``tools_used`` from the content stream.

        Text before a tool_use block is that tool's thinking; text after the
        last tool_use block is appended to the last tool's thinking.
        """
        response.tools_used = []
        thinking = ""
        for part in response.content:
            if isinstance(part, TextPart):
                thinking += part.text
            elif isinstance(part, ToolUsePart):
                response.tools_used.append(
                    ToolUse(
                        tool_name=part.name,
                        tool_input=part.input,
                        tool_use_id=part.id,
                        tool_thinking=thinking,
                    )
                )
                thinking = ""
        if thinking and response.tools_used:
            response.tools_used[-1].tool_thinking += thinking

    # ------------------------------------------------------------------
    # Retrying speak wrapper
    # ------------------------------------------------------------------

    async def speak_with_retry(
        self,
        conversation: Conversation,
        options: SpeakOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ProviderResponse:
        """Return a validated response, retrying on validation or client failure.

        Token usage and provider requests accumulated across all attempts are
        added to the conversation whether or not this succeeds. Each attempt
        that reaches the provider counts as one request; cached responses add
        nothing. Only responses that pass validation are written to the cache.
        """
        retry_options = replace(options) if options else SpeakOptions()
        retry_options.extra_instructions = list(retry_options.extra_instructions)
        max_retries = self.max_speak_retries
        retries = 0
        fail_reason = ""
        last_error: ParleyError | None = None
        total_usage = TokenUsage()
        total_requests = 0

        try:
            while retries < max_retries:
                if cancel_event is not None and cancel_event.is_set():
                    raise ConversationCancelled("Conversation cancelled", conversation_id=conversation.id)
                retries += 1
                try:
                    response, cache_key = await self._speak(conversation, retry_options)
                except ProviderError as e:
                    total_requests += 1
                    logger.error("provider[%s] speak_with_retry: error calling speak_with_plus: %s", self.name, e)
                    fail_reason = f"caught error: {e.message}"
                    last_error = e
                else:
                    if not response.from_cache:
                        total_usage = total_usage + response.usage
                        total_requests += 1

                    reason = validate_response(
                        response,
                        conversation.tools,
                        retry_options.validate_response_callback,
                        conversation,
                    )
                    if reason is None:
                        if cache_key is not None:
                            await self._cache_set(cache_key, response)
                        return response

                    self.modify_speak_options(conversation, retry_options, reason, response)
                    fail_reason = f"validation: {reason}"
                    last_error = ValidationFailure(reason, conversation_id=conversation.id)

                logger.warning(
                    "provider[%s] Request to %s failed. Retrying (%d/%d) - %s",
                    self.name,
                    self.name,
                    retries,
                    max_retries,
                    fail_reason,
                )
                if retries < max_retries:
                    await self._sleep(self._settings.speak_retry_delay)
        finally:
            conversation.update_totals(total_usage, total_requests)

        logger.error("provider[%s] Max retries reached. Request to %s failed.", self.name, self.name)
        raise SpeakRetryExhausted(
            "Request failed after multiple retries.",
            model=conversation.model,
            provider=self.name,
            conversation_id=conversation.id,
            args={"reason": fail_reason, "retries": {"max": max_retries, "current": retries}},
        ) from last_error
