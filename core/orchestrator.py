"""
Orchestrator: Drives one scheduling step (a tick) of the relay.

Priority rule: outbound work always wins. A tick that finds pending
replies only sends; fetching and generation wait for a tick where the
outbound queue is empty.

  tick ──▶ sweep stale rows, requeue retryable errors
       ──▶ pending outbound? ──yes──▶ SEND batch ──▶ done
                 │ no
                 ▼
           FETCH (after a rate limiter slot) ──▶ enqueue inbound
                 ▼
           pending inbound? ──yes──▶ PROCESS batch ──▶ done
                 │ no
                 ▼
               idle

Row-level failures are recorded on the row and never abort the batch.
Store failures propagate and abort the tick; the runner logs them and the
next tick starts from the persisted state.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass
from typing import Optional

import structlog
from structlog.contextvars import bound_contextvars

from config.settings import QueueConfig
from core.collaborators import Emitter, Fetcher, Generator
from core.errors import RateLimitedError
from core.loop_guard import LoopGuard
from core.rate_limiter import PersistentRateLimiter
from core.tick_lock import TickLock
from database.store_base import BaseQueueStore
from models.schemas import (
    InboundItem, InboundStatus, OutboundItem, OutboundStatus, RecoveryStats,
)

logger = structlog.get_logger()


@dataclass
class TickReport:
    """What one tick did. `branch` is one of send, process, idle, skipped, cancelled."""
    tick_id: str
    branch: str = "idle"
    recovered: int = 0
    requeued: int = 0
    sent: int = 0
    rate_limited: int = 0
    failed: int = 0
    fetched: int = 0
    enqueued: int = 0
    processed: int = 0
    vetoed: int = 0
    errors: int = 0
    timeouts: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}"


class Orchestrator:
    """
    Owns the tick. All state lives in the injected store, rate limiter
    and loop guard; the orchestrator itself only holds the shutdown flag.
    """

    def __init__(
        self,
        store: BaseQueueStore,
        rate_limiter: PersistentRateLimiter,
        guard: LoopGuard,
        fetcher: Fetcher,
        generator: Generator,
        emitter: Emitter,
        tick_lock: Optional[TickLock] = None,
        config: QueueConfig = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.guard = guard
        self.fetcher = fetcher
        self.generator = generator
        self.emitter = emitter
        self.tick_lock = tick_lock
        self.config = config or QueueConfig()
        self._tick_mutex = asyncio.Lock()
        self._shutdown = asyncio.Event()

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def startup(self) -> RecoveryStats:
        """Prepare the store, reset rows abandoned by a crash, reload guard windows."""
        await self.store.init()
        recovered = await self.store.recover_stale(self.config.stale_grace_seconds)
        replies = await self.guard.rebuild_from_history(self.store)
        logger.info("orchestrator_started",
                    inbound_reset=recovered.inbound_reset,
                    outbound_reset=recovered.outbound_reset,
                    replies_replayed=replies)
        return recovered

    def request_shutdown(self) -> None:
        self._shutdown.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    # ══════════════════════════════════════════════════════════
    #  TICK
    # ══════════════════════════════════════════════════════════

    async def tick(self) -> TickReport:
        report = TickReport(tick_id=uuid.uuid4().hex[:12])

        if self._tick_mutex.locked():
            report.branch = "skipped"
            logger.info("tick_skipped", tick_id=report.tick_id, reason="tick_in_progress")
            return report

        async with self._tick_mutex:
            if self.tick_lock is not None and not self.tick_lock.acquire():
                report.branch = "skipped"
                logger.info("tick_skipped", tick_id=report.tick_id, reason="lock_held")
                return report
            try:
                with bound_contextvars(tick_id=report.tick_id):
                    await self._run_tick(report)
                    logger.info("tick_completed", **{
                        k: v for k, v in report.as_dict().items() if k != "tick_id"
                    })
            finally:
                if self.tick_lock is not None:
                    self.tick_lock.release()
        return report

    async def _run_tick(self, report: TickReport) -> None:
        if self.shutting_down:
            report.branch = "cancelled"
            return

        try:
            recovered = await self.store.recover_stale(self.config.stale_grace_seconds)
            report.recovered = recovered.inbound_reset + recovered.outbound_reset
            report.requeued = await self.store.requeue_failed_outbound()

            # ── Priority branch: replies first ─────────────────
            outbound = await self.store.claim_pending_outbound(self.config.batch_size)
            if outbound:
                report.branch = "send"
                await self._send(outbound, report)
                return

            if self.shutting_down:
                report.branch = "cancelled"
                return

            # ── Intake ─────────────────────────────────────────
            await self._fetch(report)

            if self.shutting_down:
                report.branch = "cancelled"
                return

            inbound = await self.store.claim_pending_inbound(self.config.batch_size)
            if not inbound:
                report.branch = "idle"
                return

            report.branch = "process"
            await self._process(inbound, report)
        finally:
            self.guard.cleanup()

    # ══════════════════════════════════════════════════════════
    #  SEND
    # ══════════════════════════════════════════════════════════

    async def _send(self, batch: list[OutboundItem], report: TickReport) -> None:
        marked: list[OutboundItem] = []
        attempted = 0
        release_reason = "tick aborted"
        try:
            for row in batch:
                await self.store.set_outbound_status(row.id, OutboundStatus.SENDING)
                marked.append(row)

            max_wait_ms = int(self.config.max_slot_wait_seconds * 1000)
            for row in batch:
                if self.shutting_down:
                    release_reason = "shutdown"
                    return

                slot = await self.rate_limiter.await_slot(max_wait_ms=max_wait_ms)
                if not slot.allowed:
                    release_reason = "rate limited"
                    report.rate_limited += len(batch) - attempted
                    logger.info("outbound_slot_unavailable",
                                wait_ms=slot.wait_ms, returned=len(batch) - attempted)
                    return

                attempted += 1
                await self._send_one(row, report)
        finally:
            # A row whose emit was started is left to the stale sweep
            unattempted = marked[attempted:]
            if unattempted:
                await self._release_outbound(unattempted, release_reason)

    async def _send_one(self, row: OutboundItem, report: TickReport) -> None:
        timeout = self.config.emit_timeout_seconds
        try:
            result = await asyncio.wait_for(self.emitter.emit(row), timeout=timeout)
        except asyncio.TimeoutError:
            await self.store.set_outbound_status(
                row.id, OutboundStatus.ERROR,
                error=f"emit timed out after {_format_seconds(timeout)}s",
            )
            report.failed += 1
            report.timeouts += 1
            logger.warning("outbound_timeout", outbound_id=row.id, timeout_s=timeout)
            return
        except RateLimitedError as e:
            await self.store.set_outbound_status(row.id, OutboundStatus.PENDING, error=str(e))
            report.rate_limited += 1
            logger.info("outbound_rate_limited", outbound_id=row.id, retry_after=e.retry_after)
            return
        except Exception as e:
            await self.store.set_outbound_status(row.id, OutboundStatus.ERROR, error=str(e))
            report.failed += 1
            logger.error("outbound_failed", outbound_id=row.id, error=str(e))
            return

        if result.delivered:
            await self.store.set_outbound_status(row.id, OutboundStatus.SENT)
            source = await self.store.get_inbound(row.source_item_id)
            self.guard.record_response(
                row.conversation_id, row.thread_id,
                actor_id=source.actor_id if source else "",
            )
            report.sent += 1
            logger.info("outbound_sent",
                        outbound_id=row.id,
                        source_item_id=row.source_item_id,
                        conversation_id=row.conversation_id,
                        thread_id=row.thread_id)
        elif result.rate_limited:
            await self.store.set_outbound_status(
                row.id, OutboundStatus.PENDING, error=result.error or "rate limited",
            )
            report.rate_limited += 1
            logger.info("outbound_rate_limited", outbound_id=row.id)
        else:
            await self.store.set_outbound_status(
                row.id, OutboundStatus.ERROR, error=result.error or "delivery failed",
            )
            report.failed += 1
            logger.error("outbound_failed", outbound_id=row.id, error=result.error)

    async def _release_outbound(self, rows: list[OutboundItem], reason: str) -> None:
        for row in rows:
            await self.store.set_outbound_status(row.id, OutboundStatus.PENDING, error=reason)

    # ══════════════════════════════════════════════════════════
    #  FETCH
    # ══════════════════════════════════════════════════════════

    async def _fetch(self, report: TickReport) -> None:
        slot = await self.rate_limiter.await_slot(
            max_wait_ms=int(self.config.max_slot_wait_seconds * 1000),
        )
        if not slot.allowed:
            logger.info("fetch_skipped", reason="rate_limited", wait_ms=slot.wait_ms)
            return

        timeout = self.config.fetch_timeout_seconds
        try:
            events = await asyncio.wait_for(
                self.fetcher.fetch(list(self.config.conversation_filter)), timeout=timeout,
            )
        except asyncio.TimeoutError:
            report.timeouts += 1
            logger.warning("fetch_timeout", timeout_s=timeout)
            return
        except Exception as e:
            report.errors += 1
            logger.error("fetch_failed", error=str(e))
            return

        report.fetched = len(events)
        for event in events:
            result = await self.store.enqueue_inbound(InboundItem.from_raw_event(event))
            if result.inserted:
                report.enqueued += 1
        if events:
            logger.info("inbound_fetched", fetched=report.fetched, enqueued=report.enqueued)

    # ══════════════════════════════════════════════════════════
    #  PROCESS
    # ══════════════════════════════════════════════════════════

    async def _process(self, batch: list[InboundItem], report: TickReport) -> None:
        for item in batch:
            await self.store.set_inbound_status(item.id, InboundStatus.PROCESSING)

        for index, item in enumerate(batch):
            if self.shutting_down:
                # Rows already marked processing are picked up by the stale sweep
                logger.info("process_interrupted", remaining=len(batch) - index)
                return
            await self._process_one(item, report)

    async def _process_one(self, item: InboundItem, report: TickReport) -> None:
        existing = await self.store.get_outbound_for_source(item.id)
        if existing is not None:
            # Reply was queued before a crash cut the tick short
            await self.store.set_inbound_status(item.id, InboundStatus.PROCESSED)
            logger.info("reply_already_queued", item_id=item.id, outbound_id=existing.id)
            return

        history = await self.store.get_thread_history(
            item.conversation_id, item.thread_id,
            limit=self.config.history_limit, exclude_item_id=item.id,
        )

        decision = self.guard.should_allow(item, history)
        if not decision.allowed:
            await self.store.set_inbound_status(
                item.id, InboundStatus.PROCESSED, guard_reason=decision.reason,
            )
            report.vetoed += 1
            logger.info("reply_vetoed",
                        item_id=item.id,
                        conversation_id=item.conversation_id,
                        thread_id=item.thread_id,
                        reason=decision.reason)
            return

        timeout = self.config.generate_timeout_seconds
        try:
            text = await asyncio.wait_for(
                self.generator.generate(item, history), timeout=timeout,
            )
        except asyncio.TimeoutError:
            text = self.config.generation_timeout_message.format(
                timeout=_format_seconds(timeout),
            )
            report.timeouts += 1
            logger.warning("generation_timeout", item_id=item.id, timeout_s=timeout)
        except Exception as e:
            await self.store.set_inbound_status(item.id, InboundStatus.ERROR, error=str(e))
            report.errors += 1
            logger.error("generation_failed", item_id=item.id, error=str(e))
            return

        if not text or not text.strip():
            await self.store.set_inbound_status(
                item.id, InboundStatus.ERROR, error="generator returned an empty reply",
            )
            report.errors += 1
            logger.error("generation_failed", item_id=item.id, error="empty reply")
            return

        sanitized = self.guard.sanitize_response(text)
        outbound_id = await self.store.enqueue_outbound(
            item.id, item.conversation_id, item.thread_id, sanitized.text,
        )
        await self.store.set_inbound_status(item.id, InboundStatus.PROCESSED)
        report.processed += 1
        logger.info("reply_queued",
                    item_id=item.id,
                    outbound_id=outbound_id,
                    sanitized=sanitized.modified)
