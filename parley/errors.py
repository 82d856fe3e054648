"""Error taxonomy for parley.

Every error carries a ``kind`` and a free-text message plus whatever
contextual fields apply (file path, operation, conversation id, provider).
The HTTP layer renders them through ``to_dict()``; the retry loops branch on
the exception class, never on message text.
"""

from __future__ import annotations

from typing import Any


class ParleyError(Exception):
    """Base class for all errors raised by parley."""

    kind = "parley"
    status = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self, include_context: bool = True) -> dict[str, Any]:
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if include_context and self.context:
            body["context"] = {k: _jsonable(v) for k, v in self.context.items()}
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, {self.context!r})"


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


# ---------------------------------------------------------------------------
# Provider / LLM errors
# ---------------------------------------------------------------------------


class ProviderError(ParleyError):
    """Calling the LLM provider failed (transport, protocol or HTTP status)."""

    kind = "llm"
    status = 502

    def __init__(
        self,
        message: str,
        *,
        model: str | None = None,
        provider: str | None = None,
        conversation_id: str | None = None,
        args: dict[str, Any] | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(
            message,
            model=model,
            provider=provider,
            conversation_id=conversation_id,
            args=args,
        )
        self.model = model
        self.provider = provider
        self.conversation_id = conversation_id
        self.args_detail = args or {}
        self.attempts = attempts  # transport calls made before failing


class ProviderRetryExhausted(ProviderError):
    """Transport retry budget spent on 429/5xx responses."""


class SpeakRetryExhausted(ProviderError):
    """Validation retry budget spent without a valid response."""


class UnsupportedProvider(ParleyError):
    kind = "llm"
    status = 400


class ValidationFailure(ParleyError):
    """A response was structurally or semantically invalid."""

    kind = "validation"
    status = 422


# ---------------------------------------------------------------------------
# File handling errors
# ---------------------------------------------------------------------------


class FileHandlingError(ParleyError):
    kind = "file_handling"
    status = 400

    def __init__(
        self,
        message: str,
        *,
        file_path: str | None = None,
        operation: str | None = None,
        conversation_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            file_path=file_path,
            operation=operation,
            conversation_id=conversation_id,
        )
        self.file_path = file_path
        self.operation = operation


class FileAccessDenied(FileHandlingError):
    status = 403


class FileNotFound(FileHandlingError):
    status = 404


class FilePermissionDenied(FileHandlingError):
    status = 403


class PatchConflict(FileHandlingError):
    status = 409


class RevertConflict(FileHandlingError):
    status = 409


class PatchLogEmpty(FileHandlingError):
    status = 409


# ---------------------------------------------------------------------------
# Conversation / project errors
# ---------------------------------------------------------------------------


class ProjectRootNotFound(ParleyError):
    kind = "project"
    status = 400


class ConversationNotFound(ParleyError):
    kind = "conversation"
    status = 404


class ConversationCancelled(ParleyError):
    kind = "cancelled"
    status = 499
