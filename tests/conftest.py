"""Shared test fixtures for the reply relay."""
import asyncio
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from config.settings import LoopGuardConfig, QueueConfig
from core.loop_guard import LoopGuard
from core.orchestrator import Orchestrator
from core.rate_limiter import PersistentRateLimiter
from core.tick_lock import TickLock
from database.session import create_engine_for_url
from database.store import SqlQueueStore
from database.store_memory import InMemoryQueueStore
from models.schemas import EmitResult, InboundItem, OutboundStatus, RawEvent


@pytest.fixture(autouse=True)
def reset_cached_settings():
    import config.settings as settings_module
    yield
    settings_module._settings = None


# ──────────────────────────────────────────────────────────────
#  Time
# ──────────────────────────────────────────────────────────────

class FakeClock:
    """Deterministic stand-in for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    """Sleep that moves the fake clock instead of waiting. Records each duration."""
    calls: list[float] = []

    async def _sleep(seconds: float) -> None:
        calls.append(seconds)
        clock.advance(seconds)

    _sleep.calls = calls
    return _sleep


# ──────────────────────────────────────────────────────────────
#  Collaborators
# ──────────────────────────────────────────────────────────────

class FakeFetcher:
    def __init__(self, batches: Optional[list[list[RawEvent]]] = None, error: Exception = None):
        self.batches = list(batches or [])
        self.error = error
        self.calls = 0
        self.filters: list[list[str]] = []

    async def fetch(self, conversation_filter):
        self.calls += 1
        self.filters.append(list(conversation_filter))
        if self.error:
            raise self.error
        return self.batches.pop(0) if self.batches else []


class FakeGenerator:
    def __init__(
        self,
        reply: Any = "Here is what you asked for.",
        error: Exception = None,
        delay: float = 0.0,
    ):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: list[str] = []
        self.histories: list[list] = []

    async def generate(self, item, history):
        self.calls.append(item.id)
        self.histories.append(list(history))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reply(item) if callable(self.reply) else self.reply


class FakeEmitter:
    def __init__(self, results: Optional[list] = None, delay: float = 0.0):
        # Each entry is an EmitResult or an exception to raise; default is delivered
        self.results = list(results or [])
        self.delay = delay
        self.emitted: list[Any] = []

    async def emit(self, item):
        self.emitted.append(item)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.results.pop(0) if self.results else EmitResult(delivered=True)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def raw_event(
    external_id: str,
    text: str = "How do I rotate the staging credentials?",
    conversation_id: str = "C100",
    thread_id: Optional[str] = "1700000000.000100",
    actor_id: str = "U200",
) -> RawEvent:
    return RawEvent(
        external_id=external_id,
        conversation_id=conversation_id,
        thread_id=thread_id,
        actor_id=actor_id,
        text=text,
    )


def inbound_item(external_id: str, **kwargs) -> InboundItem:
    return InboundItem.from_raw_event(raw_event(external_id, **kwargs))


async def seed_sent_reply(store, source_id: str, text: str,
                          conversation_id: str = "C100",
                          thread_id: Optional[str] = "1700000000.000100") -> int:
    """Put a delivered reply into the store through the legal transitions."""
    outbound_id = await store.enqueue_outbound(source_id, conversation_id, thread_id, text)
    await store.set_outbound_status(outbound_id, OutboundStatus.SENDING)
    await store.set_outbound_status(outbound_id, OutboundStatus.SENT)
    return outbound_id


# ──────────────────────────────────────────────────────────────
#  Components
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def memory_store(clock) -> InMemoryQueueStore:
    return InMemoryQueueStore(clock=clock)


@pytest_asyncio.fixture
async def sql_store(tmp_path, clock):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'queue.db'}")
    store = SqlQueueStore(engine=engine, clock=clock)
    await store.init()
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path, clock):
    """Every queue store backend, with identical expectations."""
    if request.param == "memory":
        yield InMemoryQueueStore(clock=clock)
        return
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'queue.db'}")
    sql = SqlQueueStore(engine=engine, clock=clock)
    await sql.init()
    yield sql
    await sql.close()


@pytest.fixture
def limiter(tmp_path, clock, fake_sleep) -> PersistentRateLimiter:
    return PersistentRateLimiter(
        state_file=tmp_path / "rate_limit_state.json",
        clock=clock,
        sleep=fake_sleep,
    )


@pytest.fixture
def guard_config() -> LoopGuardConfig:
    return LoopGuardConfig()


@pytest.fixture
def guard(guard_config, clock) -> LoopGuard:
    return LoopGuard(guard_config, clock=clock)


@pytest.fixture
def queue_config(tmp_path) -> QueueConfig:
    return QueueConfig(lock_path=str(tmp_path / "tick.lock"))


@pytest.fixture
def make_orchestrator(memory_store, limiter, guard, queue_config, tmp_path) -> Callable[..., Orchestrator]:
    """Build an orchestrator over the shared fixtures; any component can be overridden."""

    def _make(**overrides) -> Orchestrator:
        components = {
            "store": memory_store,
            "rate_limiter": limiter,
            "guard": guard,
            "fetcher": FakeFetcher(),
            "generator": FakeGenerator(),
            "emitter": FakeEmitter(),
            "tick_lock": TickLock(queue_config.lock_path),
            "config": queue_config,
        }
        components.update(overrides)
        return Orchestrator(**components)

    return _make
