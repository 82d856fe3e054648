"""Conversation and patch-log persistence.

Conversations are stored as a single JSON document per row (the pydantic
model dump) with a few denormalized columns for listing. The patch log is
one row per applied patch, ordered by ``seq`` within a conversation; only
the newest row is ever removed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel
from sqlalchemy import delete, func, select

from parley.llm.schemas import Conversation
from parley.storage.database import Database
from parley.storage.models import ConversationRecord, PatchLogRecord

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class PatchLogEntry(BaseModel):
    """One applied patch. ``pre_image`` is the file content before the patch."""

    conversation_id: str
    seq: int
    file_path: str
    patch: str
    pre_image: str | None = None


class ConversationPersistence:
    """Saves/loads conversations and maintains the per-conversation patch log."""

    def __init__(self, database: Database) -> None:
        self._db = database

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def save(self, conversation: Conversation) -> None:
        record = ConversationRecord(
            id=conversation.id,
            provider_name=conversation.provider_name,
            model=conversation.model,
            turn_count=conversation.turn_count,
            provider_requests=conversation.provider_requests,
            total_tokens=conversation.token_usage.total_tokens,
            data=conversation.model_dump_json(),
            created_at=conversation.created_at,
            updated_at=datetime.now(UTC),
        )
        async with self._db.session() as session:
            await session.merge(record)
            await session.commit()
        logger.debug("Saved conversation %s (%d messages)", conversation.id, len(conversation.messages))

    async def load(self, conversation_id: str) -> Conversation | None:
        async with self._db.session() as session:
            record = await session.get(ConversationRecord, conversation_id)
        if record is None:
            return None
        return Conversation.model_validate_json(record.data)

    async def list_conversations(
        self,
        limit: int = 20,
        offset: int = 0,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        provider_name: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return conversation summaries, most recently updated first.

        ``start_date`` (inclusive) and ``end_date`` (exclusive) bound the
        creation time; naive datetimes are taken as UTC.
        """
        stmt = select(ConversationRecord)
        if start_date is not None:
            stmt = stmt.where(ConversationRecord.created_at >= _as_utc(start_date))
        if end_date is not None:
            stmt = stmt.where(ConversationRecord.created_at < _as_utc(end_date))
        if provider_name:
            stmt = stmt.where(ConversationRecord.provider_name == provider_name)
        stmt = (
            stmt.order_by(ConversationRecord.updated_at.desc(), ConversationRecord.id)
            .limit(limit)
            .offset(offset)
        )
        async with self._db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            {
                "id": r.id,
                "provider_name": r.provider_name,
                "model": r.model,
                "turn_count": r.turn_count,
                "provider_requests": r.provider_requests,
                "total_tokens": r.total_tokens,
                "created_at": r.created_at.isoformat() if r.created_at else None,
                "updated_at": r.updated_at.isoformat() if r.updated_at else None,
            }
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Patch log
    # ------------------------------------------------------------------

    async def log_patch(
        self,
        conversation_id: str,
        file_path: str,
        patch: str,
        pre_image: str | None = None,
    ) -> PatchLogEntry:
        async with self._db.session() as session:
            current = await session.scalar(
                select(func.max(PatchLogRecord.seq)).where(PatchLogRecord.conversation_id == conversation_id)
            )
            seq = (current or 0) + 1
            session.add(
                PatchLogRecord(
                    conversation_id=conversation_id,
                    seq=seq,
                    file_path=file_path,
                    patch=patch,
                    pre_image=pre_image,
                )
            )
            await session.commit()
        return PatchLogEntry(
            conversation_id=conversation_id,
            seq=seq,
            file_path=file_path,
            patch=patch,
            pre_image=pre_image,
        )

    async def get_patch_log(self, conversation_id: str) -> list[PatchLogEntry]:
        stmt = (
            select(PatchLogRecord)
            .where(PatchLogRecord.conversation_id == conversation_id)
            .order_by(PatchLogRecord.seq)
        )
        async with self._db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_entry(r) for r in rows]

    async def last_patch(self, conversation_id: str) -> PatchLogEntry | None:
        stmt = (
            select(PatchLogRecord)
            .where(PatchLogRecord.conversation_id == conversation_id)
            .order_by(PatchLogRecord.seq.desc())
            .limit(1)
        )
        async with self._db.session() as session:
            row = (await session.execute(stmt)).scalars().first()
        return _to_entry(row) if row else None

    async def remove_last_patch(self, conversation_id: str) -> PatchLogEntry | None:
        """Pop the newest patch log entry. Returns it, or None if the log is empty."""
        async with self._db.session() as session:
            row = (
                await session.execute(
                    select(PatchLogRecord)
                    .where(PatchLogRecord.conversation_id == conversation_id)
                    .order_by(PatchLogRecord.seq.desc())
                    .limit(1)
                )
            ).scalars().first()
            if row is None:
                return None
            entry = _to_entry(row)
            await session.execute(delete(PatchLogRecord).where(PatchLogRecord.id == row.id))
            await session.commit()
        return entry


def _to_entry(record: PatchLogRecord) -> PatchLogEntry:
    return PatchLogEntry(
        conversation_id=record.conversation_id,
        seq=record.seq,
        file_path=record.file_path,
        patch=record.patch,
        pre_image=record.pre_image,
    )
