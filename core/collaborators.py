"""
Collaborator interfaces: The only way the relay talks to the outside.

  Fetcher    newly observed platform events (crosses the rate-limited boundary)
  Generator  reply text for one inbound item (does not touch the boundary)
  Emitter    delivers one reply (crosses the rate-limited boundary)

Implementations raise CollaboratorError subclasses for failures they can
classify; anything else is treated as a transient row failure.
"""
from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from models.schemas import EmitResult, HistoryMessage, InboundItem, OutboundItem, RawEvent


@runtime_checkable
class Fetcher(Protocol):
    async def fetch(self, conversation_filter: Sequence[str]) -> list[RawEvent]:
        """Events observed since the last poll. An empty filter means every conversation."""
        ...


@runtime_checkable
class Generator(Protocol):
    async def generate(self, item: InboundItem, history: Sequence[HistoryMessage]) -> str:
        ...


@runtime_checkable
class Emitter(Protocol):
    async def emit(self, item: OutboundItem) -> EmitResult:
        ...
