"""
Core data models for the reply relay.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class InboundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class OutboundStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    ERROR = "error"


# ──────────────────────────────────────────────────────────────
#  Raw events: what the fetch side hands us
# ──────────────────────────────────────────────────────────────

class RawEvent(BaseModel):
    """One newly observed external event, as returned by a Fetcher."""
    external_id: str                          # platform message id, stable across fetches
    conversation_id: str
    thread_id: Optional[str] = None           # None → top-level message
    actor_id: str
    text: str = ""
    attachment_refs: list[str] = []
    conversation_name: str = ""


# ──────────────────────────────────────────────────────────────
#  Queue items
# ──────────────────────────────────────────────────────────────

class InboundItem(BaseModel):
    """One external event awaiting a reply."""
    id: str
    conversation_id: str
    thread_id: Optional[str] = None
    actor_id: str
    text: str = ""
    has_attachments: bool = False
    attachment_refs: list[str] = []
    conversation_name: str = ""
    enqueued_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    status: InboundStatus = InboundStatus.PENDING
    processed_at: Optional[datetime] = None
    last_error: str = ""
    guard_reason: str = ""                    # set when the loop guard silenced this item

    @classmethod
    def from_raw_event(cls, event: RawEvent) -> InboundItem:
        return cls(
            id=event.external_id,
            conversation_id=event.conversation_id,
            thread_id=event.thread_id,
            actor_id=event.actor_id,
            text=event.text,
            has_attachments=bool(event.attachment_refs),
            attachment_refs=list(event.attachment_refs),
            conversation_name=event.conversation_name,
        )

    @property
    def thread_key(self) -> tuple[str, Optional[str]]:
        return (self.conversation_id, self.thread_id)


class OutboundItem(BaseModel):
    """One generated reply awaiting delivery."""
    id: int
    source_item_id: str
    conversation_id: str
    thread_id: Optional[str] = None
    reply_text: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    status: OutboundStatus = OutboundStatus.PENDING
    sent_at: Optional[datetime] = None
    last_error: str = ""
    retry_count: int = 0

    @property
    def thread_key(self) -> tuple[str, Optional[str]]:
        return (self.conversation_id, self.thread_id)


# ──────────────────────────────────────────────────────────────
#  History: context for the loop guard and the generator
# ──────────────────────────────────────────────────────────────

class HistoryMessage(BaseModel):
    """A single message in a thread, either from a participant or our own reply."""
    text: str
    actor_id: str = ""
    is_own_reply: bool = False
    timestamp: datetime = Field(default_factory=_utcnow)


class SentReply(BaseModel):
    """A delivered reply, joined with the actor whose message triggered it."""
    conversation_id: str
    thread_id: Optional[str] = None
    actor_id: str = ""
    sent_at: datetime


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class EnqueueResult(BaseModel):
    item_id: str
    inserted: bool


class EmitResult(BaseModel):
    """Outcome of one delivery attempt reported by an Emitter."""
    delivered: bool
    rate_limited: bool = False
    error: str = ""


class RecoveryStats(BaseModel):
    inbound_reset: int = 0
    outbound_reset: int = 0


class QueueStats(BaseModel):
    inbound: dict[str, int] = {}
    outbound: dict[str, int] = {}
    parked: int = 0                           # outbound rows that exhausted their retries
