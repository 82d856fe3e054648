"""REST API for parley.

Endpoints:
  POST /api/v1/conversation               - Start a conversation
  POST /api/v1/conversation/{id}          - Continue a conversation
  GET  /api/v1/conversation/{id}          - Get a stored conversation
  POST /api/v1/conversation/{id}/revert   - Revert the last applied patch
  GET  /api/v1/conversations              - List conversations
  GET  /health                            - Health check (DB connectivity)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from parley.config import Settings
from parley.editor.project import ProjectEditor
from parley.errors import ConversationNotFound, ParleyError
from parley.llm.schemas import Conversation, ProviderResponse
from parley.storage.database import Database
from parley.storage.persistence import ConversationPersistence

logger = logging.getLogger(__name__)

EditorFactory = Callable[[str], ProjectEditor]


def _parse_date(value: str | None, end_of_day: bool = False) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if end_of_day and len(value) == 10:
        parsed += timedelta(days=1)
    return parsed


def turn_result(response: ProviderResponse, conversation: Conversation | None) -> dict[str, Any]:
    """JSON body describing the outcome of one speak_with_llm call."""
    result: dict[str, Any] = {
        "conversationId": conversation.id if conversation else None,
        "answer": response.answer or response.text(),
        "toolsUsed": [
            {"name": t.tool_name, "input": t.tool_input, "thinking": t.tool_thinking} for t in response.tools_used
        ],
        "stopReason": response.stop_reason,
        "fromCache": response.from_cache,
    }
    if conversation is not None:
        result["turnCount"] = conversation.turn_count
        result["providerRequests"] = conversation.provider_requests
        result["usage"] = conversation.token_usage.model_dump()
    return result


def create_app(
    editor_factory: EditorFactory,
    persistence: ConversationPersistence,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def error_response(e: Exception, action: str) -> JSONResponse:
        if isinstance(e, ParleyError):
            logger.error("%s failed: %s", action, e.message)
            return JSONResponse(e.to_dict(include_context=settings.show_error_details), status_code=e.status)
        logger.exception("%s failed", action)
        message = str(e) if settings.show_error_details else "Internal server error"
        return JSONResponse({"kind": "internal", "message": message}, status_code=500)

    async def read_body(request: Request) -> dict[str, Any] | JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        return body

    def missing(body: dict[str, Any], *fields: str) -> JSONResponse | None:
        for name in fields:
            if not body.get(name):
                return JSONResponse({"error": f"Missing {name}"}, status_code=400)
        return None

    async def start_conversation(request: Request) -> JSONResponse:
        """POST /api/v1/conversation - Start a conversation."""
        body = await read_body(request)
        if isinstance(body, JSONResponse):
            return body
        if error := missing(body, "prompt", "startDir"):
            return error
        try:
            editor = editor_factory(body["startDir"])
            response = await editor.speak_with_llm(body["prompt"], provider=body.get("provider"), model=body.get("model"))
            return JSONResponse(turn_result(response, editor.conversation))
        except Exception as e:
            return error_response(e, "startConversation")

    async def continue_conversation(request: Request) -> JSONResponse:
        """POST /api/v1/conversation/{id} - Continue a conversation."""
        conversation_id = request.path_params["id"]
        body = await read_body(request)
        if isinstance(body, JSONResponse):
            return body
        if error := missing(body, "prompt", "startDir"):
            return error
        try:
            editor = editor_factory(body["startDir"])
            response = await editor.speak_with_llm(
                body["prompt"],
                provider=body.get("provider"),
                model=body.get("model"),
                conversation_id=conversation_id,
            )
            return JSONResponse(turn_result(response, editor.conversation))
        except Exception as e:
            return error_response(e, "continueConversation")

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /api/v1/conversation/{id} - Stored conversation."""
        conversation_id = request.path_params["id"]
        try:
            conversation = await persistence.load(conversation_id)
            if conversation is None:
                raise ConversationNotFound(
                    f"Conversation not found: {conversation_id}", conversation_id=conversation_id
                )
            patch_log = await persistence.get_patch_log(conversation_id)
            data = conversation.model_dump(mode="json")
            data["patchLog"] = [{"seq": p.seq, "filePath": p.file_path} for p in patch_log]
            return JSONResponse(data)
        except Exception as e:
            return error_response(e, "getConversation")

    async def revert_patch(request: Request) -> JSONResponse:
        """POST /api/v1/conversation/{id}/revert - Undo the newest patch."""
        conversation_id = request.path_params["id"]
        body = await read_body(request)
        if isinstance(body, JSONResponse):
            return body
        if error := missing(body, "startDir"):
            return error
        try:
            editor = editor_factory(body["startDir"])
            entry = await editor.revert_last_patch(conversation_id)
            return JSONResponse(
                {"conversationId": conversation_id, "reverted": {"seq": entry.seq, "filePath": entry.file_path}}
            )
        except Exception as e:
            return error_response(e, "revertLastPatch")

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /api/v1/conversations - Conversation summaries, newest first.

        Query params: limit, offset, startDate, endDate, llmProviderName.
        A date-only endDate includes that whole day.
        """
        params = request.query_params
        try:
            limit = int(params.get("limit", "20"))
            offset = int(params.get("offset", "0"))
        except ValueError:
            return JSONResponse({"error": "limit and offset must be integers"}, status_code=400)
        if limit < 1 or offset < 0:
            return JSONResponse({"error": "limit must be >= 1 and offset >= 0"}, status_code=400)
        try:
            start_date = _parse_date(params.get("startDate"))
            end_date = _parse_date(params.get("endDate"), end_of_day=True)
        except ValueError:
            return JSONResponse({"error": "startDate and endDate must be ISO 8601 dates"}, status_code=400)
        try:
            conversations = await persistence.list_conversations(
                limit=limit,
                offset=offset,
                start_date=start_date,
                end_date=end_date,
                provider_name=params.get("llmProviderName") or None,
            )
            return JSONResponse({"conversations": conversations, "limit": limit, "offset": offset})
        except Exception as e:
            return error_response(e, "listConversations")

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/api/v1/conversation", start_conversation, methods=["POST"]),
        Route("/api/v1/conversation/{id}", continue_conversation, methods=["POST"]),
        Route("/api/v1/conversation/{id}", get_conversation, methods=["GET"]),
        Route("/api/v1/conversation/{id}/revert", revert_patch, methods=["POST"]),
        Route("/api/v1/conversations", list_conversations),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
