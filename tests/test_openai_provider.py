"""Wire-level tests for OpenAIProvider using httpx.MockTransport."""

import json

import httpx
import pytest

from parley.editor.tools import REQUEST_FILES_TOOL
from parley.llm.providers.openai import OpenAIProvider, format_messages, parse_duration, parse_rate_limit
from parley.llm.schemas import (
    Conversation,
    ImagePart,
    Message,
    SpeakOptions,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)

COMPLETION_BODY = {
    "id": "chatcmpl-1",
    "model": "gpt-test",
    "choices": [
        {
            "index": 0,
            "finish_reason": "tool_calls",
            "message": {
                "role": "assistant",
                "content": "Reading the file.",
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "request_files", "arguments": '{"fileNames": ["a.txt"]}'},
                    }
                ],
            },
        }
    ],
    "usage": {"prompt_tokens": 50, "completion_tokens": 10, "total_tokens": 60},
}


def _provider(settings, handler) -> OpenAIProvider:
    http = httpx.AsyncClient(base_url="https://api.test/v1", transport=httpx.MockTransport(handler))
    return OpenAIProvider(settings, http=http)


def test_parse_duration():
    assert parse_duration("6m0s") == 360.0
    assert parse_duration("20ms") == pytest.approx(0.02)
    assert parse_duration("1s") == 1.0
    assert parse_duration("7") == 7.0
    assert parse_duration(None) is None
    assert parse_duration("soon") is None


def test_rate_limit_headers():
    headers = httpx.Headers(
        {
            "x-ratelimit-remaining-requests": "99",
            "x-ratelimit-limit-requests": "100",
            "x-ratelimit-reset-requests": "2s",
            "x-ratelimit-remaining-tokens": "9000",
        }
    )

    rate_limit = parse_rate_limit(headers)

    assert rate_limit.requests_remaining == 99
    assert rate_limit.requests_limit == 100
    assert rate_limit.tokens_remaining == 9000
    assert rate_limit.requests_reset_at is not None
    assert rate_limit.tokens_reset_at is None


def test_format_messages_maps_tool_calls_and_results():
    messages = [
        Message(role="user", content=[TextPart(text="read a.txt")]),
        Message(
            role="assistant",
            content=[
                TextPart(text="Sure."),
                ToolUsePart(id="call_1", name="request_files", input={"fileNames": ["a.txt"]}),
            ],
        ),
        Message(
            role="user",
            content=[
                ToolResultPart(tool_use_id="call_1", content=[TextPart(text="<file/>")]),
                TextPart(text="Tool use feedback"),
            ],
        ),
    ]

    formatted = format_messages("Be brief.", messages)

    assert formatted[0] == {"role": "system", "content": "Be brief."}
    assert formatted[1] == {"role": "user", "content": [{"type": "text", "text": "read a.txt"}]}
    assistant = formatted[2]
    assert assistant["content"] == "Sure."
    assert assistant["tool_calls"][0]["function"] == {
        "name": "request_files",
        "arguments": '{"fileNames": ["a.txt"]}',
    }
    assert formatted[3] == {"role": "tool", "tool_call_id": "call_1", "content": "<file/>"}
    assert formatted[4] == {"role": "user", "content": [{"type": "text", "text": "Tool use feedback"}]}


def test_images_in_tool_results_are_resent_as_user_content():
    messages = [
        Message(
            role="user",
            content=[
                ToolResultPart(
                    tool_use_id="call_1",
                    content=[TextPart(text="screenshot"), ImagePart(media_type="image/png", data="AAAA")],
                )
            ],
        )
    ]

    formatted = format_messages("sys", messages)

    assert formatted[1]["role"] == "tool"
    assert "image content attached" in formatted[1]["content"]
    assert formatted[2]["content"][0]["image_url"]["url"] == "data:image/png;base64,AAAA"


@pytest.mark.asyncio
async def test_prepare_request_payload(settings):
    conversation = Conversation(provider_name="openai", model="gpt-test", base_system="Be brief.")
    conversation.add_tool(REQUEST_FILES_TOOL)
    conversation.add_message(Message(role="user", content=[TextPart(text="hi")]))

    async with httpx.AsyncClient() as http:
        provider = OpenAIProvider(settings, http=http)
        payload = await provider.prepare_request(conversation, SpeakOptions(max_tokens=500))

    assert payload["max_completion_tokens"] == 500
    assert payload["temperature"] == settings.temperature
    assert payload["tool_choice"] == "auto"
    assert payload["tools"][0]["function"]["name"] == "request_files"


@pytest.mark.asyncio
async def test_send_parses_tool_calls(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=COMPLETION_BODY)

    provider = _provider(settings, handler)
    response = await provider.send({"model": "gpt-test", "messages": []})

    assert seen["path"] == "/v1/chat/completions"
    assert response.stop_reason == "tool_use"
    assert response.is_tool
    assert response.usage.total_tokens == 60
    assert response.content[0] == TextPart(text="Reading the file.")
    assert response.content[1].input == {"fileNames": ["a.txt"]}


@pytest.mark.asyncio
async def test_malformed_arguments_become_empty_input(settings):
    body = json.loads(json.dumps(COMPLETION_BODY))
    body["choices"][0]["message"]["tool_calls"][0]["function"]["arguments"] = '{"fileNames": ['

    provider = _provider(settings, lambda request: httpx.Response(200, json=body))
    response = await provider.send({"model": "gpt-test"})

    assert response.content[1].input == {}


@pytest.mark.asyncio
async def test_length_finish_reason_maps_to_max_tokens(settings):
    body = {
        "id": "chatcmpl-2",
        "choices": [{"finish_reason": "length", "message": {"role": "assistant", "content": "partial"}}],
        "usage": {"prompt_tokens": 5, "completion_tokens": 7},
    }

    provider = _provider(settings, lambda request: httpx.Response(200, json=body))
    response = await provider.send({"model": "gpt-test"})

    assert response.stop_reason == "max_tokens"
    assert not response.is_tool
    assert response.usage.total_tokens == 12


@pytest.mark.asyncio
async def test_error_status_is_reported(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            500, json={"error": {"type": "server_error", "message": "The server had an error"}}
        )

    provider = _provider(settings, handler)
    response = await provider.send({"model": "gpt-test"})

    assert response.status == 500
    assert not response.ok
    assert response.status_text == "server_error - The server had an error"
