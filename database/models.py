"""
SQLAlchemy ORM models: Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type for attachment handles; on PG the dialect maps JSON to jsonb,
    on MySQL it uses native JSON, on SQLite it serializes to TEXT.
  - Inbound primary keys are the platform's message ids, so re-fetching the
    same event can never create a second row.
  - Outbound primary keys are integers assigned by the database. Each inbound
    message gets at most one outbound row (unique source_item_id).
  - Rows are never deleted; status columns carry the lifecycle.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Index, JSON, ForeignKey,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Inbound queue
# ──────────────────────────────────────────────────────────────

class InboundRow(Base):
    __tablename__ = "inbound_queue"

    id: Mapped[str] = mapped_column(String(256), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(128), nullable=False)
    conversation_name: Mapped[str] = mapped_column(String(256), default="")
    thread_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    text: Mapped[str] = mapped_column(Text, default="")

    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False)
    attachment_refs: Mapped[Any] = mapped_column(JSON, default=list)

    status: Mapped[str] = mapped_column(String(32), default="pending")
    last_error: Mapped[str] = mapped_column(Text, default="")
    guard_reason: Mapped[str] = mapped_column(String(64), default="")

    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_inbound_status_enqueued", "status", "enqueued_at"),
        Index("ix_inbound_thread", "conversation_id", "thread_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbound queue
# ──────────────────────────────────────────────────────────────

class OutboundRow(Base):
    __tablename__ = "outbound_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_item_id: Mapped[str] = mapped_column(
        String(256), ForeignKey("inbound_queue.id"), nullable=False, unique=True,
    )
    conversation_id: Mapped[str] = mapped_column(String(128), nullable=False)
    thread_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reply_text: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(32), default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_outbound_status_created", "status", "created_at"),
        Index("ix_outbound_thread_sent", "conversation_id", "thread_id", "sent_at"),
    )
