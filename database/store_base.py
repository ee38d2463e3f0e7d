"""
Abstract Queue Store: Interface for all storage backends.

Implementations:
  - SqlQueueStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryQueueStore (dict-based, single-process, no persistence)

Lifecycle rules shared by every backend:

  inbound:   pending → processing → processed | error
  outbound:  pending → sending → sent | error | pending (rate limited)
             error → pending (retry while retry_count < max_retries)

Any other status change raises IllegalTransitionError. The only sanctioned
backwards moves are the stale-row sweep (recover_stale) and the retry
requeue, both of which are explicit store operations.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from core.errors import IllegalTransitionError
from models.schemas import (
    EnqueueResult, HistoryMessage, InboundItem, InboundStatus,
    OutboundItem, OutboundStatus, QueueStats, RecoveryStats, SentReply,
)

INBOUND_TRANSITIONS: dict[InboundStatus, set[InboundStatus]] = {
    InboundStatus.PENDING: {InboundStatus.PROCESSING},
    InboundStatus.PROCESSING: {InboundStatus.PROCESSED, InboundStatus.ERROR},
    InboundStatus.PROCESSED: set(),
    InboundStatus.ERROR: set(),
}

OUTBOUND_TRANSITIONS: dict[OutboundStatus, set[OutboundStatus]] = {
    OutboundStatus.PENDING: {OutboundStatus.SENDING},
    OutboundStatus.SENDING: {OutboundStatus.SENT, OutboundStatus.ERROR, OutboundStatus.PENDING},
    OutboundStatus.SENT: set(),
    OutboundStatus.ERROR: {OutboundStatus.PENDING},
}


def check_inbound_transition(item_id: str, current: str, requested: InboundStatus) -> None:
    if requested not in INBOUND_TRANSITIONS[InboundStatus(current)]:
        raise IllegalTransitionError("inbound", item_id, current, requested.value)


def check_outbound_transition(item_id: int, current: str, requested: OutboundStatus) -> None:
    if requested not in OUTBOUND_TRANSITIONS[OutboundStatus(current)]:
        raise IllegalTransitionError("outbound", item_id, current, requested.value)


class BaseQueueStore(ABC):
    """Interface that all queue store backends must implement."""

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries

    async def init(self) -> None:
        """Prepare the backend (create tables, etc.). Idempotent."""

    async def close(self) -> None:
        """Release backend resources."""

    # ── Inbound ───────────────────────────────────────────────

    @abstractmethod
    async def enqueue_inbound(self, item: InboundItem) -> EnqueueResult:
        """Insert if absent. A duplicate id is a silent no-op."""
        ...

    @abstractmethod
    async def claim_pending_inbound(self, limit: int) -> list[InboundItem]:
        """Pending items, oldest first. Does not change their status."""
        ...

    @abstractmethod
    async def set_inbound_status(
        self, item_id: str, status: InboundStatus,
        error: str = "", guard_reason: str = "",
    ) -> None:
        ...

    @abstractmethod
    async def get_inbound(self, item_id: str) -> Optional[InboundItem]:
        ...

    # ── Outbound ──────────────────────────────────────────────

    @abstractmethod
    async def enqueue_outbound(
        self, source_item_id: str, conversation_id: str,
        thread_id: Optional[str], text: str,
    ) -> int:
        """Queue a reply. A source item that already has a reply keeps it; its id is returned."""
        ...

    @abstractmethod
    async def get_outbound_for_source(self, source_item_id: str) -> Optional[OutboundItem]:
        ...

    @abstractmethod
    async def claim_pending_outbound(self, limit: int) -> list[OutboundItem]:
        """Pending items under the retry cap, oldest first. Does not change their status."""
        ...

    @abstractmethod
    async def set_outbound_status(
        self, item_id: int, status: OutboundStatus, error: str = "",
    ) -> None:
        """`error` increments retry_count; `sent` stamps sent_at."""
        ...

    @abstractmethod
    async def get_outbound(self, item_id: int) -> Optional[OutboundItem]:
        ...

    @abstractmethod
    async def requeue_failed_outbound(self) -> int:
        """Move errored rows still under the retry cap back to pending."""
        ...

    # ── Recovery ──────────────────────────────────────────────

    @abstractmethod
    async def recover_stale(self, grace_seconds: float) -> RecoveryStats:
        """Reset processing/sending rows untouched for longer than the grace period."""
        ...

    # ── History ───────────────────────────────────────────────

    @abstractmethod
    async def list_sent_replies(self, since: datetime) -> list[SentReply]:
        ...

    @abstractmethod
    async def get_thread_history(
        self, conversation_id: str, thread_id: Optional[str],
        limit: int = 20, exclude_item_id: Optional[str] = None,
    ) -> list[HistoryMessage]:
        """Inbound texts and delivered replies of one thread, oldest first."""
        ...

    @abstractmethod
    async def stats(self) -> QueueStats:
        ...
