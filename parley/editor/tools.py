"""Tool dispatcher and the default project-editing tools.

Provides:
- ToolDispatcher: registers tools, dispatches ToolUse records to handlers
- Default tools giving the model access to the project:
  - request_files: add file contents to the conversation
  - vector_search: search the project through an EmbeddingSearch backend
  - apply_patch: apply a unified diff through the Patch Manager

Handlers return a ToolOutcome. Failures inside a tool are reported back to
the model as error feedback instead of ending the conversation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from parley.editor.patches import PatchManager
from parley.errors import ParleyError
from parley.llm.schemas import ImagePart, TextPart, Tool, ToolUse

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    """Result of one tool invocation.

    ``feedback`` is the one-line summary that goes into the follow-up
    prompt; ``parts`` become the tool_result content for the tool_use id.
    """

    feedback: str
    parts: list[TextPart | ImagePart] = field(default_factory=list)
    is_error: bool = False


ToolHandler = Callable[..., Awaitable[ToolOutcome]]


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the model.

    Each handler is an async callable that accepts the tool input as
    keyword arguments and returns a ToolOutcome.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool, handler: ToolHandler) -> None:
        """Register a tool handler with its definition."""
        self._handlers[tool.name] = handler
        self._tools[tool.name] = tool

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    async def dispatch(self, tool_use: ToolUse) -> ToolOutcome:
        """Run the handler for ``tool_use``. Never raises for tool-local errors."""
        name = tool_use.tool_name
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("Unknown tool used: %s", name)
            return ToolOutcome(feedback=f"Unknown tool used: {name}", is_error=True)
        try:
            return await handler(**tool_use.tool_input)
        except ParleyError as e:
            logger.warning("Tool %s failed: %s", name, e.message)
            return ToolOutcome(feedback=f"Error using tool {name}: {e.message}", is_error=True)
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolOutcome(feedback=f"Error using tool {name}: {e}", is_error=True)


# ---------------------------------------------------------------------------
# Embedding search backend
# ---------------------------------------------------------------------------


class EmbeddingSearch(Protocol):
    async def search(self, query: str) -> list[Any]: ...


class NullEmbeddingSearch:
    """Embedding search with no index behind it; always returns no results."""

    async def search(self, query: str) -> list[Any]:
        logger.info("Searching embeddings for: %s", query)
        return []


# ---------------------------------------------------------------------------
# Default tool definitions
# ---------------------------------------------------------------------------

REQUEST_FILES_TOOL = Tool(
    name="request_files",
    description="Request files to be added to the chat",
    input_schema={
        "type": "object",
        "properties": {
            "fileNames": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Array of file names to be added to the chat",
            },
        },
        "required": ["fileNames"],
    },
)

VECTOR_SEARCH_TOOL = Tool(
    name="vector_search",
    description="Perform a vector search on the project files",
    input_schema={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query to use for vector search",
            },
        },
        "required": ["query"],
    },
)

APPLY_PATCH_TOOL = Tool(
    name="apply_patch",
    description="Apply a patch to a file",
    input_schema={
        "type": "object",
        "properties": {
            "filePath": {
                "type": "string",
                "description": "The path of the file to be patched, relative to the project root",
            },
            "patch": {
                "type": "string",
                "description": "The patch to be applied in unified diff format",
            },
        },
        "required": ["filePath", "patch"],
    },
)


def file_xml(file_path: str, content: str, size: int, last_modified: datetime) -> str:
    return (
        f'<file path="{file_path}" size="{size}" last_modified="{last_modified.isoformat()}">\n'
        f"{content}\n</file>"
    )


def register_default_tools(
    dispatcher: ToolDispatcher,
    patches: PatchManager,
    embedding_search: EmbeddingSearch | None = None,
) -> ToolDispatcher:
    """Register request_files, vector_search and apply_patch on ``dispatcher``."""
    search_backend = embedding_search or NullEmbeddingSearch()

    async def request_files(fileNames: list[str]) -> ToolOutcome:  # noqa: N803
        added: list[str] = []
        errors: list[str] = []
        parts: list[TextPart | ImagePart] = []
        for file_name in fileNames:
            try:
                path, content = await patches.read(file_name)
                stat = await asyncio.to_thread(path.stat)
            except ParleyError as e:
                logger.error("Error adding file %s: %s", file_name, e.message)
                errors.append(e.message)
                continue
            modified = datetime.fromtimestamp(stat.st_mtime, UTC)
            parts.append(TextPart(text=file_xml(file_name, content, len(content.encode("utf-8")), modified)))
            added.append(file_name)
            logger.info("File %s added to messages by tool", file_name)

        lines = []
        if added:
            lines.append(f"Files added to the conversation: {', '.join(added)}")
        lines.extend(f"Error adding file: {error}" for error in errors)
        if not lines:
            lines.append("No files requested")
        return ToolOutcome(feedback="\n".join(lines), parts=parts, is_error=not added and bool(errors))

    async def vector_search(query: str) -> ToolOutcome:
        results = await search_backend.search(query)
        parts: list[TextPart | ImagePart] = []
        if results:
            parts.append(
                TextPart(
                    text="\n".join(r if isinstance(r, str) else json.dumps(r, default=str) for r in results)
                )
            )
        return ToolOutcome(
            feedback=f'Vector search completed for query: "{query}". {len(results)} results found.',
            parts=parts,
        )

    async def apply_patch(filePath: str, patch: str) -> ToolOutcome:  # noqa: N803
        await patches.apply(filePath, patch)
        return ToolOutcome(feedback=f"Patch applied successfully to file: {filePath}")

    dispatcher.register(REQUEST_FILES_TOOL, request_files)
    dispatcher.register(VECTOR_SEARCH_TOOL, vector_search)
    dispatcher.register(APPLY_PATCH_TOOL, apply_patch)
    return dispatcher
