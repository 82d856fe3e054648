"""Response validation for tool-bearing model responses.

``validate_response`` is side-effect free: it inspects a response against
the tools registered on a conversation and returns ``None`` when the
response is usable or a human-readable reason when it is not.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match

from parley.llm.schemas import Conversation, ProviderResponse, Tool, ValidateResponseCallback

logger = logging.getLogger(__name__)


def validate_tool_input(tool: Tool, tool_input: object) -> str | None:
    """Validate one tool input against the tool's JSON Schema."""
    try:
        Draft202012Validator.check_schema(tool.input_schema)
    except SchemaError as e:
        return f"Tool {tool.name} has an invalid input schema: {e.message}"
    error = best_match(Draft202012Validator(tool.input_schema).iter_errors(tool_input))
    if error is None:
        return None
    location = "/".join(str(p) for p in error.absolute_path)
    where = f" at {location}" if location else ""
    return f"Tool input validation failed for {tool.name}{where}: {error.message}"


def validate_response(
    response: ProviderResponse,
    tools: Mapping[str, Tool],
    callback: ValidateResponseCallback | None = None,
    conversation: Conversation | None = None,
) -> str | None:
    """Return None if ``response`` is valid, otherwise the failure reason.

    Checks, in order:
    1. A tool call cut off by the output-token limit.
    2. Every tool invocation names a registered tool and its input matches
       that tool's schema. The first failure wins.
    3. The optional caller callback.
    """
    if response.is_tool and response.stop_reason == "max_tokens":
        logger.error("Tool input exceeded max tokens")
        return "Tool input exceeded max tokens"

    if response.is_tool:
        for tool_use in response.tools_used:
            tool = tools.get(tool_use.tool_name)
            if tool is None:
                logger.error("Tool not found: %s", tool_use.tool_name)
                return f"Tool not found: {tool_use.tool_name}"
            reason = validate_tool_input(tool, tool_use.tool_input)
            if reason:
                logger.error("%s", reason)
                return reason

    if callback is not None:
        reason = callback(response, conversation)
        if reason:
            logger.error("Callback validation failed: %s", reason)
            return reason

    return None
