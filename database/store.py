"""
SqlQueueStore: Portable SQL queue store for PostgreSQL, MySQL, SQLite.

Each mutation runs in its own short transaction. Status changes use a
conditional UPDATE (`WHERE id = ? AND status = ?`) so a row can only move
from the state it was read in. SQLite lock contention is retried
immediately a bounded number of times; any other database failure is
raised as StoreError and aborts the caller's tick.
"""
from __future__ import annotations

import functools
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import retry, retry_if_exception, stop_after_attempt

from core.errors import IllegalTransitionError, ItemNotFoundError, StorageInitError, StoreError
from database.models import InboundRow, OutboundRow
from database.session import get_engine, init_db, make_session_factory, session_scope
from database.store_base import (
    BaseQueueStore, check_inbound_transition, check_outbound_transition,
)
from models.schemas import (
    EnqueueResult, HistoryMessage, InboundItem, InboundStatus,
    OutboundItem, OutboundStatus, QueueStats, RecoveryStats, SentReply,
)

logger = structlog.get_logger()

_CONTENTION_ATTEMPTS = 3


def _is_contention(exc: BaseException) -> bool:
    if not isinstance(exc, OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _store_operation(fn):
    """Retry lock contention immediately, then surface database failures as StoreError."""
    retrying = retry(
        retry=retry_if_exception(_is_contention),
        stop=stop_after_attempt(_CONTENTION_ATTEMPTS),
        reraise=True,
    )(fn)

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await retrying(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error("store_operation_failed", operation=fn.__name__, error=str(e))
            raise StoreError(f"{fn.__name__} failed: {e}") from e

    return wrapper


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _thread_filter(column, thread_id: Optional[str]):
    return column.is_(None) if thread_id is None else column == thread_id


class SqlQueueStore(BaseQueueStore):
    """
    Persistent queue store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(
        self,
        engine: AsyncEngine = None,
        max_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(max_retries=max_retries)
        self._engine = engine or get_engine()
        self._factory = make_session_factory(self._engine)
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    async def init(self) -> None:
        try:
            await init_db(self._engine)
        except (SQLAlchemyError, OSError) as e:
            raise StorageInitError(f"Could not initialize queue store: {e}") from e
        logger.info("sql_store_initialized", dialect=self._engine.dialect.name)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── Inbound ───────────────────────────────────────────

    @_store_operation
    async def enqueue_inbound(self, item: InboundItem) -> EnqueueResult:
        now = self._now()
        try:
            async with session_scope(self._factory) as db:
                if await db.get(InboundRow, item.id) is not None:
                    return EnqueueResult(item_id=item.id, inserted=False)
                db.add(InboundRow(
                    id=item.id,
                    conversation_id=item.conversation_id,
                    conversation_name=item.conversation_name,
                    thread_id=item.thread_id,
                    actor_id=item.actor_id,
                    text=item.text,
                    has_attachments=item.has_attachments or bool(item.attachment_refs),
                    attachment_refs=list(item.attachment_refs),
                    status=InboundStatus.PENDING.value,
                    enqueued_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            # Lost an insert race for the same id
            return EnqueueResult(item_id=item.id, inserted=False)
        return EnqueueResult(item_id=item.id, inserted=True)

    @_store_operation
    async def claim_pending_inbound(self, limit: int) -> list[InboundItem]:
        async with session_scope(self._factory) as db:
            stmt = (
                select(InboundRow)
                .where(InboundRow.status == InboundStatus.PENDING.value)
                .order_by(InboundRow.enqueued_at.asc(), InboundRow.id.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_inbound(row) for row in result.scalars()]

    @_store_operation
    async def set_inbound_status(
        self, item_id: str, status: InboundStatus,
        error: str = "", guard_reason: str = "",
    ) -> None:
        now = self._now()
        async with session_scope(self._factory) as db:
            row = await db.get(InboundRow, item_id)
            if row is None:
                raise ItemNotFoundError("inbound", item_id)
            current = row.status
            check_inbound_transition(item_id, current, status)

            values = {"status": status.value, "updated_at": now}
            if status in (InboundStatus.PROCESSED, InboundStatus.ERROR):
                values["processed_at"] = now
            if error:
                values["last_error"] = error
            if guard_reason:
                values["guard_reason"] = guard_reason

            result = await db.execute(
                update(InboundRow)
                .where(and_(InboundRow.id == item_id, InboundRow.status == current))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise IllegalTransitionError("inbound", item_id, current, status.value)

    @_store_operation
    async def get_inbound(self, item_id: str) -> Optional[InboundItem]:
        async with session_scope(self._factory) as db:
            row = await db.get(InboundRow, item_id)
            return self._row_to_inbound(row) if row else None

    # ── Outbound ──────────────────────────────────────────

    @_store_operation
    async def enqueue_outbound(
        self, source_item_id: str, conversation_id: str,
        thread_id: Optional[str], text: str,
    ) -> int:
        now = self._now()
        try:
            async with session_scope(self._factory) as db:
                existing = await db.scalar(
                    select(OutboundRow.id).where(OutboundRow.source_item_id == source_item_id)
                )
                if existing is not None:
                    return existing
                row = OutboundRow(
                    source_item_id=source_item_id,
                    conversation_id=conversation_id,
                    thread_id=thread_id,
                    reply_text=text,
                    status=OutboundStatus.PENDING.value,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
                db.add(row)
                await db.flush()
                return row.id
        except IntegrityError:
            # Lost an insert race for the same source item
            existing = await self.get_outbound_for_source(source_item_id)
            if existing is None:
                raise
            return existing.id

    @_store_operation
    async def get_outbound_for_source(self, source_item_id: str) -> Optional[OutboundItem]:
        async with session_scope(self._factory) as db:
            row = await db.scalar(
                select(OutboundRow).where(OutboundRow.source_item_id == source_item_id)
            )
            return self._row_to_outbound(row) if row is not None else None

    @_store_operation
    async def claim_pending_outbound(self, limit: int) -> list[OutboundItem]:
        async with session_scope(self._factory) as db:
            stmt = (
                select(OutboundRow)
                .where(and_(
                    OutboundRow.status == OutboundStatus.PENDING.value,
                    OutboundRow.retry_count < self.max_retries,
                ))
                .order_by(OutboundRow.created_at.asc(), OutboundRow.id.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_outbound(row) for row in result.scalars()]

    @_store_operation
    async def set_outbound_status(
        self, item_id: int, status: OutboundStatus, error: str = "",
    ) -> None:
        now = self._now()
        async with session_scope(self._factory) as db:
            row = await db.get(OutboundRow, item_id)
            if row is None:
                raise ItemNotFoundError("outbound", item_id)
            current = row.status
            check_outbound_transition(item_id, current, status)

            values = {"status": status.value, "updated_at": now}
            if status == OutboundStatus.ERROR:
                values["retry_count"] = OutboundRow.retry_count + 1
            if status == OutboundStatus.SENT:
                values["sent_at"] = now
            if error:
                values["last_error"] = error

            result = await db.execute(
                update(OutboundRow)
                .where(and_(OutboundRow.id == item_id, OutboundRow.status == current))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise IllegalTransitionError("outbound", item_id, current, status.value)

    @_store_operation
    async def get_outbound(self, item_id: int) -> Optional[OutboundItem]:
        async with session_scope(self._factory) as db:
            row = await db.get(OutboundRow, item_id)
            return self._row_to_outbound(row) if row else None

    @_store_operation
    async def requeue_failed_outbound(self) -> int:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                update(OutboundRow)
                .where(and_(
                    OutboundRow.status == OutboundStatus.ERROR.value,
                    OutboundRow.retry_count < self.max_retries,
                ))
                .values(status=OutboundStatus.PENDING.value, updated_at=self._now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # ── Recovery ──────────────────────────────────────────

    @_store_operation
    async def recover_stale(self, grace_seconds: float) -> RecoveryStats:
        now = self._now()
        cutoff = now - timedelta(seconds=grace_seconds)
        async with session_scope(self._factory) as db:
            inbound = await db.execute(
                update(InboundRow)
                .where(and_(
                    InboundRow.status == InboundStatus.PROCESSING.value,
                    InboundRow.updated_at < cutoff,
                ))
                .values(status=InboundStatus.PENDING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            outbound = await db.execute(
                update(OutboundRow)
                .where(and_(
                    OutboundRow.status == OutboundStatus.SENDING.value,
                    OutboundRow.updated_at < cutoff,
                ))
                .values(status=OutboundStatus.PENDING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return RecoveryStats(
                inbound_reset=inbound.rowcount or 0,
                outbound_reset=outbound.rowcount or 0,
            )

    # ── History ───────────────────────────────────────────

    @_store_operation
    async def list_sent_replies(self, since: datetime) -> list[SentReply]:
        async with session_scope(self._factory) as db:
            stmt = (
                select(OutboundRow, InboundRow.actor_id)
                .outerjoin(InboundRow, InboundRow.id == OutboundRow.source_item_id)
                .where(and_(
                    OutboundRow.status == OutboundStatus.SENT.value,
                    OutboundRow.sent_at >= since,
                ))
                .order_by(OutboundRow.sent_at.asc())
            )
            result = await db.execute(stmt)
            return [
                SentReply(
                    conversation_id=row.conversation_id,
                    thread_id=row.thread_id,
                    actor_id=actor_id or "",
                    sent_at=_as_utc(row.sent_at),
                )
                for row, actor_id in result.all()
            ]

    @_store_operation
    async def get_thread_history(
        self, conversation_id: str, thread_id: Optional[str],
        limit: int = 20, exclude_item_id: Optional[str] = None,
    ) -> list[HistoryMessage]:
        if limit <= 0:
            return []
        async with session_scope(self._factory) as db:
            inbound_stmt = (
                select(InboundRow)
                .where(and_(
                    InboundRow.conversation_id == conversation_id,
                    _thread_filter(InboundRow.thread_id, thread_id),
                ))
                .order_by(InboundRow.enqueued_at.desc())
                .limit(limit + 1)
            )
            outbound_stmt = (
                select(OutboundRow)
                .where(and_(
                    OutboundRow.conversation_id == conversation_id,
                    _thread_filter(OutboundRow.thread_id, thread_id),
                    OutboundRow.status == OutboundStatus.SENT.value,
                ))
                .order_by(OutboundRow.sent_at.desc())
                .limit(limit)
            )
            inbound_rows = (await db.execute(inbound_stmt)).scalars().all()
            outbound_rows = (await db.execute(outbound_stmt)).scalars().all()

        messages = [
            HistoryMessage(text=row.text, actor_id=row.actor_id,
                           timestamp=_as_utc(row.enqueued_at))
            for row in inbound_rows if row.id != exclude_item_id
        ]
        messages.extend(
            HistoryMessage(text=row.reply_text, is_own_reply=True,
                           timestamp=_as_utc(row.sent_at))
            for row in outbound_rows
        )
        messages.sort(key=lambda m: m.timestamp)
        return messages[-limit:]

    @_store_operation
    async def stats(self) -> QueueStats:
        inbound = {s.value: 0 for s in InboundStatus}
        outbound = {s.value: 0 for s in OutboundStatus}
        async with session_scope(self._factory) as db:
            rows = await db.execute(
                select(InboundRow.status, func.count()).group_by(InboundRow.status)
            )
            for status, count in rows.all():
                inbound[status] = count
            rows = await db.execute(
                select(OutboundRow.status, func.count()).group_by(OutboundRow.status)
            )
            for status, count in rows.all():
                outbound[status] = count
            parked = await db.scalar(
                select(func.count()).select_from(OutboundRow).where(and_(
                    OutboundRow.status != OutboundStatus.SENT.value,
                    OutboundRow.retry_count >= self.max_retries,
                ))
            )
        return QueueStats(inbound=inbound, outbound=outbound, parked=parked or 0)

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _row_to_inbound(row: InboundRow) -> InboundItem:
        return InboundItem(
            id=row.id,
            conversation_id=row.conversation_id,
            conversation_name=row.conversation_name or "",
            thread_id=row.thread_id,
            actor_id=row.actor_id,
            text=row.text or "",
            has_attachments=bool(row.has_attachments),
            attachment_refs=list(row.attachment_refs or []),
            enqueued_at=_as_utc(row.enqueued_at),
            updated_at=_as_utc(row.updated_at),
            status=InboundStatus(row.status),
            processed_at=_as_utc(row.processed_at),
            last_error=row.last_error or "",
            guard_reason=row.guard_reason or "",
        )

    @staticmethod
    def _row_to_outbound(row: OutboundRow) -> OutboundItem:
        return OutboundItem(
            id=row.id,
            source_item_id=row.source_item_id,
            conversation_id=row.conversation_id,
            thread_id=row.thread_id,
            reply_text=row.reply_text,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
            status=OutboundStatus(row.status),
            sent_at=_as_utc(row.sent_at),
            last_error=row.last_error or "",
            retry_count=row.retry_count or 0,
        )
