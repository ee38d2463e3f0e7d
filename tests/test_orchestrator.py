"""
Tests for the orchestrator tick.

Covers:
  - Priority scheduling (outbound before fetch)
  - End-to-end flows: basic, duplicate fetch, rate-limited send, circle veto
  - Collaborator failures and timeouts
  - Tick-level mutual exclusion and cooperative shutdown
  - Startup recovery
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import (
    FakeEmitter, FakeFetcher, FakeGenerator,
    inbound_item, raw_event, seed_sent_reply,
)
from config.settings import QueueConfig
from core.errors import GenerationError, RateLimitedError, StoreError
from core.tick_lock import TickLock
from database.store_memory import InMemoryQueueStore
from models.schemas import EmitResult, InboundStatus, OutboundStatus, RecoveryStats


async def _outbound_rows(store):
    rows = []
    outbound_id = 1
    while True:
        row = await store.get_outbound(outbound_id)
        if row is None:
            return rows
        rows.append(row)
        outbound_id += 1


def _drain(limiter):
    while limiter.try_acquire().allowed:
        pass


class FlakyStore(InMemoryQueueStore):
    """Memory store whose status writes fail for chosen target statuses."""

    def __init__(self, clock, fail_inbound=None, fail_outbound=None, fail_after=0):
        super().__init__(clock=clock)
        self.fail_inbound = dict(fail_inbound or {})
        self.fail_outbound = dict(fail_outbound or {})
        self.fail_after = fail_after

    def _maybe_fail(self, failures, status):
        if failures.get(status, 0) <= 0:
            return
        if self.fail_after > 0:
            self.fail_after -= 1
            return
        failures[status] -= 1
        raise StoreError(f"write of {status.value} failed")

    async def set_inbound_status(self, item_id, status, error="", guard_reason=""):
        self._maybe_fail(self.fail_inbound, status)
        await super().set_inbound_status(item_id, status, error=error, guard_reason=guard_reason)

    async def set_outbound_status(self, item_id, status, error=""):
        self._maybe_fail(self.fail_outbound, status)
        await super().set_outbound_status(item_id, status, error=error)


# ──────────────────────────────────────────────────────────────
#  Priority scheduling
# ──────────────────────────────────────────────────────────────

class TestPriority:
    @pytest.mark.asyncio
    async def test_pending_outbound_means_no_fetch(self, make_orchestrator, memory_store):
        await memory_store.enqueue_outbound("m0", "C100", "t1", "earlier reply")
        fetcher = FakeFetcher([[raw_event("m1")]])
        orch = make_orchestrator(fetcher=fetcher)

        report = await orch.tick()

        assert report.branch == "send"
        assert report.sent == 1
        assert fetcher.calls == 0
        assert await memory_store.get_inbound("m1") is None

    @pytest.mark.asyncio
    async def test_idle_when_nothing_to_do(self, make_orchestrator):
        fetcher = FakeFetcher()
        orch = make_orchestrator(fetcher=fetcher)
        report = await orch.tick()
        assert report.branch == "idle"
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_fetch_receives_conversation_filter(self, make_orchestrator, queue_config):
        queue_config.conversation_filter = ["C100", "C200"]
        fetcher = FakeFetcher()
        orch = make_orchestrator(fetcher=fetcher)
        await orch.tick()
        assert fetcher.filters == [["C100", "C200"]]

    @pytest.mark.asyncio
    async def test_batch_size_limits_each_tick(self, make_orchestrator, memory_store, queue_config):
        queue_config.batch_size = 2
        for n in range(3):
            await memory_store.enqueue_outbound(f"m{n}", "C100", "t1", f"reply {n}")
        emitter = FakeEmitter()
        orch = make_orchestrator(emitter=emitter)

        report = await orch.tick()
        assert report.sent == 2
        stats = await memory_store.stats()
        assert stats.outbound["pending"] == 1


# ──────────────────────────────────────────────────────────────
#  Scenarios
# ──────────────────────────────────────────────────────────────

class TestScenarios:
    @pytest.mark.asyncio
    async def test_basic_flow(self, make_orchestrator, memory_store, guard):
        fetcher = FakeFetcher([[raw_event("m1", text="AI hello")]])
        generator = FakeGenerator(reply="hi")
        emitter = FakeEmitter()
        orch = make_orchestrator(fetcher=fetcher, generator=generator, emitter=emitter)

        first = await orch.tick()
        assert first.branch == "process"
        assert first.processed == 1

        rows = await _outbound_rows(memory_store)
        assert len(rows) == 1
        assert rows[0].reply_text == "hi"
        assert rows[0].status == OutboundStatus.PENDING
        assert (await memory_store.get_inbound("m1")).status == InboundStatus.PROCESSED

        second = await orch.tick()
        assert second.branch == "send"
        assert (await memory_store.get_outbound(rows[0].id)).status == OutboundStatus.SENT
        assert [o.reply_text for o in emitter.emitted] == ["hi"]
        assert guard.state.active_threads == 1

    @pytest.mark.asyncio
    async def test_duplicate_fetch(self, make_orchestrator, memory_store):
        fetcher = FakeFetcher([[raw_event("m1")], [raw_event("m1")]])
        orch = make_orchestrator(fetcher=fetcher)

        first = await orch.tick()
        assert first.enqueued == 1
        await orch.tick()  # sends the reply
        third = await orch.tick()
        assert third.fetched == 1
        assert third.enqueued == 0

        stats = await memory_store.stats()
        assert sum(stats.inbound.values()) == 1
        assert len(await _outbound_rows(memory_store)) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_send(self, make_orchestrator, memory_store, limiter, clock):
        outbound_id = await memory_store.enqueue_outbound("m1", "C100", "t1", "hello")
        _drain(limiter)
        emitter = FakeEmitter()
        orch = make_orchestrator(emitter=emitter)

        report = await orch.tick()
        assert report.rate_limited == 1
        row = await memory_store.get_outbound(outbound_id)
        assert row.status == OutboundStatus.PENDING
        assert row.retry_count == 0
        assert emitter.emitted == []

        clock.advance(66)
        report = await orch.tick()
        assert report.sent == 1
        assert (await memory_store.get_outbound(outbound_id)).status == OutboundStatus.SENT

    @pytest.mark.asyncio
    async def test_circle_veto(self, make_orchestrator, memory_store, clock):
        repeated = "I restarted the staging worker pool for you"
        for n in range(3):
            await memory_store.enqueue_inbound(inbound_item(f"old{n}", text=f"question {n}"))
            await memory_store.set_inbound_status(f"old{n}", InboundStatus.PROCESSING)
            await memory_store.set_inbound_status(f"old{n}", InboundStatus.PROCESSED)
            clock.advance(1)
            await seed_sent_reply(memory_store, f"old{n}", repeated)
            clock.advance(1)

        fetcher = FakeFetcher([[raw_event("m1", text="still seeing errors on deploy")]])
        generator = FakeGenerator()
        orch = make_orchestrator(fetcher=fetcher, generator=generator)

        report = await orch.tick()
        assert report.vetoed == 1
        item = await memory_store.get_inbound("m1")
        assert item.status == InboundStatus.PROCESSED
        assert item.guard_reason == "conversation_circle"
        assert generator.calls == []
        assert len(await _outbound_rows(memory_store)) == 3

    @pytest.mark.asyncio
    async def test_thread_cap_from_delivered_replies(self, make_orchestrator, memory_store, guard):
        for n in range(10):
            guard.record_response("C100", "1700000000.000100", actor_id=f"U{n}")
        fetcher = FakeFetcher([[raw_event("m1")]])
        orch = make_orchestrator(fetcher=fetcher)

        report = await orch.tick()
        assert report.vetoed == 1
        assert (await memory_store.get_inbound("m1")).guard_reason == "thread_limit_exceeded"

    @pytest.mark.asyncio
    async def test_emergency_stop_silences_everything(self, make_orchestrator, memory_store, guard):
        guard.activate_emergency_stop("operator")
        fetcher = FakeFetcher([[raw_event("m1"), raw_event("m2", thread_id="t2")]])
        generator = FakeGenerator()
        orch = make_orchestrator(fetcher=fetcher, generator=generator)

        report = await orch.tick()
        assert report.vetoed == 2
        assert generator.calls == []
        for item_id in ("m1", "m2"):
            item = await memory_store.get_inbound(item_id)
            assert item.status == InboundStatus.PROCESSED
            assert item.guard_reason == "emergency_stop"

    @pytest.mark.asyncio
    async def test_reply_is_sanitized(self, make_orchestrator, memory_store):
        fetcher = FakeFetcher([[raw_event("m1")]])
        generator = FakeGenerator(reply="Ask the AI desk")
        orch = make_orchestrator(fetcher=fetcher, generator=generator)
        await orch.tick()
        rows = await _outbound_rows(memory_store)
        assert rows[0].reply_text == "Ask the ** desk"

    @pytest.mark.asyncio
    async def test_generator_sees_thread_history(self, make_orchestrator, memory_store, clock):
        await memory_store.enqueue_inbound(inbound_item("old", text="earlier question"))
        clock.advance(5)
        fetcher = FakeFetcher([[raw_event("m1", text="follow-up question")]])
        generator = FakeGenerator()
        orch = make_orchestrator(fetcher=fetcher, generator=generator)

        await orch.tick()
        history_for_m1 = generator.histories[generator.calls.index("m1")]
        assert [m.text for m in history_for_m1] == ["earlier question"]


# ──────────────────────────────────────────────────────────────
#  Failures
# ──────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_generation_failure_marks_error(self, make_orchestrator, memory_store):
        fetcher = FakeFetcher([[raw_event("m1"), raw_event("m2", thread_id="t2")]])
        generator = FakeGenerator(error=GenerationError("model unavailable"))
        orch = make_orchestrator(fetcher=fetcher, generator=generator)

        report = await orch.tick()
        assert report.errors == 2
        for item_id in ("m1", "m2"):
            item = await memory_store.get_inbound(item_id)
            assert item.status == InboundStatus.ERROR
            assert item.last_error == "model unavailable"
        assert await _outbound_rows(memory_store) == []

    @pytest.mark.asyncio
    async def test_empty_reply_is_a_failure(self, make_orchestrator, memory_store):
        fetcher = FakeFetcher([[raw_event("m1")]])
        orch = make_orchestrator(fetcher=fetcher, generator=FakeGenerator(reply="   "))
        report = await orch.tick()
        assert report.errors == 1
        assert (await memory_store.get_inbound("m1")).status == InboundStatus.ERROR

    @pytest.mark.asyncio
    async def test_one_bad_row_does_not_stop_the_batch(self, make_orchestrator, memory_store):
        def reply(item):
            if item.id == "m1":
                raise RuntimeError("boom")
            return f"answer for {item.id}"

        class PickyGenerator(FakeGenerator):
            async def generate(self, item, history):
                self.calls.append(item.id)
                return reply(item)

        fetcher = FakeFetcher([[raw_event("m1"), raw_event("m2", thread_id="t2")]])
        orch = make_orchestrator(fetcher=fetcher, generator=PickyGenerator())

        report = await orch.tick()
        assert report.errors == 1
        assert report.processed == 1
        assert (await memory_store.get_inbound("m2")).status == InboundStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_generation_timeout_queues_canned_reply(self, make_orchestrator, memory_store, queue_config):
        queue_config.generate_timeout_seconds = 0.05
        fetcher = FakeFetcher([[raw_event("m1")]])
        orch = make_orchestrator(fetcher=fetcher, generator=FakeGenerator(delay=5))

        report = await orch.tick()
        assert report.timeouts == 1
        assert report.processed == 1
        rows = await _outbound_rows(memory_store)
        assert len(rows) == 1
        assert "0.05 seconds" in rows[0].reply_text
        assert (await memory_store.get_inbound("m1")).status == InboundStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_emit_timeout_counts_a_retry(self, make_orchestrator, memory_store, queue_config):
        queue_config.emit_timeout_seconds = 0.05
        outbound_id = await memory_store.enqueue_outbound("m1", "C100", "t1", "hello")
        orch = make_orchestrator(emitter=FakeEmitter(delay=5))

        report = await orch.tick()
        assert report.failed == 1
        assert report.timeouts == 1
        row = await memory_store.get_outbound(outbound_id)
        assert row.status == OutboundStatus.ERROR
        assert row.retry_count == 1

    @pytest.mark.asyncio
    async def test_emit_failures_retry_until_parked(self, make_orchestrator, memory_store, clock):
        outbound_id = await memory_store.enqueue_outbound("m1", "C100", "t1", "hello")
        emitter = FakeEmitter([EmitResult(delivered=False, error="channel_not_found")] * 3)
        fetcher = FakeFetcher()
        orch = make_orchestrator(emitter=emitter, fetcher=fetcher)

        for _ in range(3):
            report = await orch.tick()
            assert report.branch == "send"
            clock.advance(70)

        row = await memory_store.get_outbound(outbound_id)
        assert row.status == OutboundStatus.ERROR
        assert row.retry_count == 3

        report = await orch.tick()
        assert report.branch == "idle"
        assert len(emitter.emitted) == 3
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_platform_rate_limit_has_no_penalty(self, make_orchestrator, memory_store):
        first = await memory_store.enqueue_outbound("m1", "C100", "t1", "one")
        second = await memory_store.enqueue_outbound("m2", "C100", "t1", "two")
        emitter = FakeEmitter([
            RateLimitedError(retry_after=30),
            EmitResult(delivered=False, rate_limited=True),
        ])
        orch = make_orchestrator(emitter=emitter)

        report = await orch.tick()
        assert report.rate_limited == 2
        for outbound_id in (first, second):
            row = await memory_store.get_outbound(outbound_id)
            assert row.status == OutboundStatus.PENDING
            assert row.retry_count == 0

    @pytest.mark.asyncio
    async def test_slot_denied_returns_rest_of_batch(self, make_orchestrator, memory_store, limiter):
        ids = [await memory_store.enqueue_outbound(f"m{n}", "C100", "t1", f"r{n}") for n in range(3)]
        for _ in range(4):
            limiter.try_acquire()  # one token left
        orch = make_orchestrator()

        report = await orch.tick()
        assert report.sent == 1
        assert report.rate_limited == 2
        statuses = [(await memory_store.get_outbound(i)).status for i in ids]
        assert statuses == [OutboundStatus.SENT, OutboundStatus.PENDING, OutboundStatus.PENDING]

    @pytest.mark.asyncio
    async def test_fetch_failure_still_processes_backlog(self, make_orchestrator, memory_store):
        await memory_store.enqueue_inbound(inbound_item("m1"))
        fetcher = FakeFetcher(error=ConnectionError("platform down"))
        orch = make_orchestrator(fetcher=fetcher)

        report = await orch.tick()
        assert report.errors == 1
        assert report.branch == "process"
        assert report.processed == 1

    @pytest.mark.asyncio
    async def test_fetch_skipped_without_slot(self, make_orchestrator, memory_store, limiter):
        await memory_store.enqueue_inbound(inbound_item("m1"))
        _drain(limiter)
        fetcher = FakeFetcher([[raw_event("m2")]])
        orch = make_orchestrator(fetcher=fetcher)

        report = await orch.tick()
        assert fetcher.calls == 0
        assert report.processed == 1

    @pytest.mark.asyncio
    async def test_store_failure_aborts_tick_and_releases_lock(self, make_orchestrator, queue_config):
        broken = AsyncMock()
        broken.recover_stale = AsyncMock(return_value=RecoveryStats())
        broken.requeue_failed_outbound = AsyncMock(side_effect=StoreError("disk full"))
        orch = make_orchestrator(store=broken)

        with pytest.raises(StoreError):
            await orch.tick()

        other = TickLock(queue_config.lock_path)
        assert other.acquire()
        other.release()

    @pytest.mark.asyncio
    async def test_crash_after_queueing_reply_never_answers_twice(
        self, make_orchestrator, clock, queue_config,
    ):
        store = FlakyStore(clock=clock, fail_inbound={InboundStatus.PROCESSED: 1})
        generator = FakeGenerator(reply="only answer")
        emitter = FakeEmitter()
        orch = make_orchestrator(
            store=store, generator=generator, emitter=emitter,
            fetcher=FakeFetcher([[raw_event("m1")]]),
        )

        with pytest.raises(StoreError):
            await orch.tick()
        assert (await store.get_inbound("m1")).status == InboundStatus.PROCESSING

        clock.advance(queue_config.stale_grace_seconds + 100)
        send = await orch.tick()
        assert send.recovered == 1
        assert send.sent == 1

        process = await orch.tick()
        assert process.branch == "process"
        assert (await store.get_inbound("m1")).status == InboundStatus.PROCESSED

        assert generator.calls == ["m1"]
        assert [o.reply_text for o in emitter.emitted] == ["only answer"]
        assert len(await _outbound_rows(store)) == 1

    @pytest.mark.asyncio
    async def test_send_aborted_by_store_returns_unattempted_rows(self, make_orchestrator, clock):
        store = FlakyStore(clock=clock, fail_outbound={OutboundStatus.SENT: 1})
        ids = [await store.enqueue_outbound(f"m{n}", "C100", "t1", f"r{n}") for n in range(3)]
        emitter = FakeEmitter()
        orch = make_orchestrator(store=store, emitter=emitter)

        with pytest.raises(StoreError):
            await orch.tick()

        statuses = [(await store.get_outbound(i)).status for i in ids]
        # The row whose emit already ran is left for the stale sweep
        assert statuses == [OutboundStatus.SENDING, OutboundStatus.PENDING, OutboundStatus.PENDING]
        assert len(emitter.emitted) == 1

        report = await orch.tick()
        assert report.sent == 2
        assert (await store.get_outbound(ids[0])).status == OutboundStatus.SENDING

        clock.advance(700)
        report = await orch.tick()
        assert report.recovered == 1
        assert report.sent == 1
        statuses = [(await store.get_outbound(i)).status for i in ids]
        assert statuses == [OutboundStatus.SENT] * 3

    @pytest.mark.asyncio
    async def test_failure_while_marking_batch_leaves_nothing_sending(self, make_orchestrator, clock):
        store = FlakyStore(clock=clock, fail_outbound={OutboundStatus.SENDING: 1}, fail_after=1)
        ids = [await store.enqueue_outbound(f"m{n}", "C100", "t1", f"r{n}") for n in range(3)]
        emitter = FakeEmitter()
        orch = make_orchestrator(store=store, emitter=emitter)

        with pytest.raises(StoreError):
            await orch.tick()

        statuses = [(await store.get_outbound(i)).status for i in ids]
        assert statuses == [OutboundStatus.PENDING] * 3
        assert emitter.emitted == []


# ──────────────────────────────────────────────────────────────
#  Concurrency & lifecycle
# ──────────────────────────────────────────────────────────────

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_skips_tick(self, make_orchestrator, queue_config):
        store = AsyncMock()
        fetcher = FakeFetcher()
        orch = make_orchestrator(store=store, fetcher=fetcher)

        holder = TickLock(queue_config.lock_path)
        assert holder.acquire()
        try:
            report = await orch.tick()
        finally:
            holder.release()

        assert report.branch == "skipped"
        assert store.method_calls == []
        assert fetcher.calls == 0

    @pytest.mark.asyncio
    async def test_overlapping_tick_in_process_is_skipped(self, make_orchestrator, queue_config):
        queue_config.generate_timeout_seconds = 5
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowGenerator(FakeGenerator):
            async def generate(self, item, history):
                started.set()
                await release.wait()
                return "done"

        orch = make_orchestrator(
            fetcher=FakeFetcher([[raw_event("m1")]]), generator=SlowGenerator(),
        )
        first = asyncio.create_task(orch.tick())
        await started.wait()
        second = await orch.tick()
        release.set()
        first_report = await first

        assert second.branch == "skipped"
        assert first_report.processed == 1

    @pytest.mark.asyncio
    async def test_shutdown_returns_unsent_rows(self, make_orchestrator, memory_store):
        ids = [await memory_store.enqueue_outbound(f"m{n}", "C100", "t1", f"r{n}") for n in range(3)]
        orch = make_orchestrator()

        class StoppingEmitter(FakeEmitter):
            async def emit(self, item):
                orch.request_shutdown()
                return await super().emit(item)

        orch.emitter = StoppingEmitter()
        report = await orch.tick()

        assert report.sent == 1
        statuses = [(await memory_store.get_outbound(i)).status for i in ids]
        assert statuses == [OutboundStatus.SENT, OutboundStatus.PENDING, OutboundStatus.PENDING]

    @pytest.mark.asyncio
    async def test_shutdown_before_tick(self, make_orchestrator):
        fetcher = FakeFetcher()
        orch = make_orchestrator(fetcher=fetcher)
        orch.request_shutdown()
        report = await orch.tick()
        assert report.branch == "cancelled"
        assert fetcher.calls == 0

    @pytest.mark.asyncio
    async def test_startup_recovers_and_rebuilds(self, make_orchestrator, memory_store, guard, clock):
        await memory_store.enqueue_inbound(inbound_item("stuck"))
        await memory_store.set_inbound_status("stuck", InboundStatus.PROCESSING)
        await seed_sent_reply(memory_store, "stuck", "earlier reply")
        clock.advance(601)

        orch = make_orchestrator()
        recovered = await orch.startup()

        assert recovered.inbound_reset == 1
        assert (await memory_store.get_inbound("stuck")).status == InboundStatus.PENDING
        assert guard.state.active_threads == 1

    @pytest.mark.asyncio
    async def test_works_without_tick_lock(self, memory_store, limiter, guard):
        from core.orchestrator import Orchestrator

        orch = Orchestrator(
            store=memory_store, rate_limiter=limiter, guard=guard,
            fetcher=FakeFetcher([[raw_event("m1")]]), generator=FakeGenerator(),
            emitter=FakeEmitter(), config=QueueConfig(),
        )
        report = await orch.tick()
        assert report.processed == 1
