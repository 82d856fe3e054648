"""SQLAlchemy ORM models for conversations, the patch log and the request cache."""

from datetime import datetime

from sqlalchemy import (
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


class ConversationRecord(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider_name: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(200), nullable=False)
    turn_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    provider_requests: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    data: Mapped[str] = mapped_column(Text, nullable=False)  # Conversation JSON
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PatchLogRecord(Base):
    __tablename__ = "patch_log"
    __table_args__ = (UniqueConstraint("conversation_id", "seq", name="uq_patch_log_conversation_seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    patch: Mapped[str] = mapped_column(Text, nullable=False)
    pre_image: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RequestCacheRecord(Base):
    __tablename__ = "request_cache"

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider_name: Mapped[str] = mapped_column(String(50), nullable=False)
    response: Mapped[str] = mapped_column(Text, nullable=False)  # ProviderResponse JSON
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)  # epoch seconds
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
