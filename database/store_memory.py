"""
InMemoryQueueStore: Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlQueueStore
  - Safe within a single event loop (no awaits inside a mutation)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import itertools
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from core.errors import ItemNotFoundError
from database.store_base import (
    BaseQueueStore, check_inbound_transition, check_outbound_transition,
)
from models.schemas import (
    EnqueueResult, HistoryMessage, InboundItem, InboundStatus,
    OutboundItem, OutboundStatus, QueueStats, RecoveryStats, SentReply,
)

logger = structlog.get_logger()


class InMemoryQueueStore(BaseQueueStore):
    """Same semantics as SqlQueueStore, kept in plain dicts."""

    def __init__(self, max_retries: int = 3, clock: Callable[[], float] = time.time):
        super().__init__(max_retries=max_retries)
        self._clock = clock
        self._inbound: dict[str, InboundItem] = {}
        self._outbound: dict[int, OutboundItem] = {}
        self._outbound_by_source: dict[str, int] = {}
        self._outbound_ids = itertools.count(1)
        logger.info("inmemory_store_initialized")

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    # ── Inbound ───────────────────────────────────────────

    async def enqueue_inbound(self, item: InboundItem) -> EnqueueResult:
        if item.id in self._inbound:
            return EnqueueResult(item_id=item.id, inserted=False)
        now = self._now()
        self._inbound[item.id] = item.model_copy(deep=True, update={
            "status": InboundStatus.PENDING,
            "enqueued_at": now,
            "updated_at": now,
            "has_attachments": item.has_attachments or bool(item.attachment_refs),
        })
        return EnqueueResult(item_id=item.id, inserted=True)

    async def claim_pending_inbound(self, limit: int) -> list[InboundItem]:
        pending = [i for i in self._inbound.values() if i.status == InboundStatus.PENDING]
        pending.sort(key=lambda i: (i.enqueued_at, i.id))
        return [i.model_copy(deep=True) for i in pending[:limit]]

    async def set_inbound_status(
        self, item_id: str, status: InboundStatus,
        error: str = "", guard_reason: str = "",
    ) -> None:
        item = self._inbound.get(item_id)
        if item is None:
            raise ItemNotFoundError("inbound", item_id)
        check_inbound_transition(item_id, item.status.value, status)

        now = self._now()
        item.status = status
        item.updated_at = now
        if status in (InboundStatus.PROCESSED, InboundStatus.ERROR):
            item.processed_at = now
        if error:
            item.last_error = error
        if guard_reason:
            item.guard_reason = guard_reason

    async def get_inbound(self, item_id: str) -> Optional[InboundItem]:
        item = self._inbound.get(item_id)
        return item.model_copy(deep=True) if item else None

    # ── Outbound ──────────────────────────────────────────

    async def enqueue_outbound(
        self, source_item_id: str, conversation_id: str,
        thread_id: Optional[str], text: str,
    ) -> int:
        existing = self._outbound_by_source.get(source_item_id)
        if existing is not None:
            return existing
        now = self._now()
        item_id = next(self._outbound_ids)
        self._outbound[item_id] = OutboundItem(
            id=item_id,
            source_item_id=source_item_id,
            conversation_id=conversation_id,
            thread_id=thread_id,
            reply_text=text,
            created_at=now,
            updated_at=now,
        )
        self._outbound_by_source[source_item_id] = item_id
        return item_id

    async def get_outbound_for_source(self, source_item_id: str) -> Optional[OutboundItem]:
        item_id = self._outbound_by_source.get(source_item_id)
        return self._outbound[item_id].model_copy() if item_id is not None else None

    async def claim_pending_outbound(self, limit: int) -> list[OutboundItem]:
        pending = [
            o for o in self._outbound.values()
            if o.status == OutboundStatus.PENDING and o.retry_count < self.max_retries
        ]
        pending.sort(key=lambda o: (o.created_at, o.id))
        return [o.model_copy() for o in pending[:limit]]

    async def set_outbound_status(
        self, item_id: int, status: OutboundStatus, error: str = "",
    ) -> None:
        item = self._outbound.get(item_id)
        if item is None:
            raise ItemNotFoundError("outbound", item_id)
        check_outbound_transition(item_id, item.status.value, status)

        now = self._now()
        item.status = status
        item.updated_at = now
        if status == OutboundStatus.ERROR:
            item.retry_count += 1
        if status == OutboundStatus.SENT:
            item.sent_at = now
        if error:
            item.last_error = error

    async def get_outbound(self, item_id: int) -> Optional[OutboundItem]:
        item = self._outbound.get(item_id)
        return item.model_copy() if item else None

    async def requeue_failed_outbound(self) -> int:
        count = 0
        now = self._now()
        for item in self._outbound.values():
            if item.status == OutboundStatus.ERROR and item.retry_count < self.max_retries:
                item.status = OutboundStatus.PENDING
                item.updated_at = now
                count += 1
        return count

    # ── Recovery ──────────────────────────────────────────

    async def recover_stale(self, grace_seconds: float) -> RecoveryStats:
        now = self._now()
        cutoff = now - timedelta(seconds=grace_seconds)
        stats = RecoveryStats()
        for item in self._inbound.values():
            if item.status == InboundStatus.PROCESSING and item.updated_at < cutoff:
                item.status = InboundStatus.PENDING
                item.updated_at = now
                stats.inbound_reset += 1
        for item in self._outbound.values():
            if item.status == OutboundStatus.SENDING and item.updated_at < cutoff:
                item.status = OutboundStatus.PENDING
                item.updated_at = now
                stats.outbound_reset += 1
        return stats

    # ── History ───────────────────────────────────────────

    async def list_sent_replies(self, since: datetime) -> list[SentReply]:
        replies = []
        for o in self._outbound.values():
            if o.status != OutboundStatus.SENT or o.sent_at is None or o.sent_at < since:
                continue
            source = self._inbound.get(o.source_item_id)
            replies.append(SentReply(
                conversation_id=o.conversation_id,
                thread_id=o.thread_id,
                actor_id=source.actor_id if source else "",
                sent_at=o.sent_at,
            ))
        replies.sort(key=lambda r: r.sent_at)
        return replies

    async def get_thread_history(
        self, conversation_id: str, thread_id: Optional[str],
        limit: int = 20, exclude_item_id: Optional[str] = None,
    ) -> list[HistoryMessage]:
        messages = [
            HistoryMessage(text=i.text, actor_id=i.actor_id, timestamp=i.enqueued_at)
            for i in self._inbound.values()
            if i.thread_key == (conversation_id, thread_id) and i.id != exclude_item_id
        ]
        messages.extend(
            HistoryMessage(text=o.reply_text, is_own_reply=True, timestamp=o.sent_at)
            for o in self._outbound.values()
            if o.thread_key == (conversation_id, thread_id)
            and o.status == OutboundStatus.SENT and o.sent_at is not None
        )
        messages.sort(key=lambda m: m.timestamp)
        return messages[-limit:] if limit > 0 else []

    async def stats(self) -> QueueStats:
        inbound = {s.value: 0 for s in InboundStatus}
        outbound = {s.value: 0 for s in OutboundStatus}
        for i in self._inbound.values():
            inbound[i.status.value] += 1
        parked = 0
        for o in self._outbound.values():
            outbound[o.status.value] += 1
            if o.status != OutboundStatus.SENT and o.retry_count >= self.max_retries:
                parked += 1
        return QueueStats(inbound=inbound, outbound=outbound, parked=parked)
