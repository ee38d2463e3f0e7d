"""
Loop Guard: Decides whether a reply may be emitted.

Pre-generation checks run as an ordered pipeline; the first veto wins:

  1. emergency_stop            global circuit breaker (auto or manual)
  2. thread_limit_exceeded     too many replies in this thread in the last hour
  3. actor_rate_limit          too many replies triggered by this actor in the last hour
  4. conversation_circle       our recent replies in the thread repeat each other
  5. high_similarity           the request echoes our own recent replies

After generation, trigger words are masked so a reply cannot re-admit
itself as new work. Replies are recorded only once delivery is confirmed,
so failed sends never count against the caps.

Sliding windows live in memory (GuardState) and can be rebuilt from the
store's delivered-reply history after a restart.
"""
from __future__ import annotations

import re
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

import structlog

from config.settings import LoopGuardConfig
from core.similarity import jaccard, tokenize
from models.schemas import HistoryMessage, InboundItem

logger = structlog.get_logger()

ThreadKey = tuple[str, Optional[str]]


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

@dataclass
class GuardDecision:
    allowed: bool
    reason: str = "approved"
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls) -> GuardDecision:
        return cls(allowed=True)

    @classmethod
    def veto(cls, reason: str, **details: Any) -> GuardDecision:
        return cls(allowed=False, reason=reason, details=details)


@dataclass
class SanitizedText:
    text: str
    modified: bool = False
    triggers: list[str] = field(default_factory=list)


# ──────────────────────────────────────────────────────────────
#  State
# ──────────────────────────────────────────────────────────────

class GuardState:
    """
    Reply timestamps per thread and per actor, plus the emergency stop.

    The emergency stop is stored as an activation time; it is active while
    `now < activated_at + recovery_window`, so recovery needs no timer.
    """

    def __init__(self, recovery_window_seconds: float = 1800):
        self.recovery_window_seconds = recovery_window_seconds
        self._lock = threading.RLock()
        self._thread_replies: dict[ThreadKey, deque[float]] = defaultdict(deque)
        self._actor_replies: dict[str, deque[float]] = defaultdict(deque)
        self._emergency_activated_at: Optional[float] = None
        self._emergency_reason: str = ""

    # ── Sliding windows ───────────────────────────────────

    def record(self, key: ThreadKey, actor_id: str, at: float) -> None:
        with self._lock:
            self._thread_replies[key].append(at)
            if actor_id:
                self._actor_replies[actor_id].append(at)

    def thread_count(self, key: ThreadKey, since: float) -> int:
        with self._lock:
            return sum(1 for ts in self._thread_replies.get(key, ()) if ts > since)

    def actor_count(self, actor_id: str, since: float) -> int:
        with self._lock:
            return sum(1 for ts in self._actor_replies.get(actor_id, ()) if ts > since)

    def total_since(self, since: float) -> int:
        with self._lock:
            return sum(
                1 for times in self._thread_replies.values() for ts in times if ts > since
            )

    def prune(self, before: float) -> None:
        with self._lock:
            for index in (self._thread_replies, self._actor_replies):
                for key in list(index):
                    times = index[key]
                    while times and times[0] <= before:
                        times.popleft()
                    if not times:
                        del index[key]

    @property
    def active_threads(self) -> int:
        with self._lock:
            return len(self._thread_replies)

    @property
    def active_actors(self) -> int:
        with self._lock:
            return len(self._actor_replies)

    # ── Emergency stop ────────────────────────────────────

    def emergency_active(self, now: float) -> bool:
        with self._lock:
            if self._emergency_activated_at is None:
                return False
            return now < self._emergency_activated_at + self.recovery_window_seconds

    def activate_emergency(self, now: float, reason: str) -> None:
        with self._lock:
            self._emergency_activated_at = now
            self._emergency_reason = reason

    def deactivate_emergency(self) -> None:
        with self._lock:
            self._emergency_activated_at = None
            self._emergency_reason = ""

    def emergency_snapshot(self, now: float) -> dict[str, Any]:
        with self._lock:
            activated = self._emergency_activated_at
            active = activated is not None and now < activated + self.recovery_window_seconds
            return {
                "active": active,
                "reason": self._emergency_reason if active else "",
                "activated_at": _iso(activated) if active else None,
                "auto_recover_at": (
                    _iso(activated + self.recovery_window_seconds) if active else None
                ),
            }


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


# ──────────────────────────────────────────────────────────────
#  Checks: each returns a veto or None
# ──────────────────────────────────────────────────────────────

@dataclass
class GuardContext:
    item: InboundItem
    history: Sequence[HistoryMessage]
    now: float
    state: GuardState
    config: LoopGuardConfig


GuardCheck = Callable[[GuardContext], Optional[GuardDecision]]


def check_emergency_stop(ctx: GuardContext) -> Optional[GuardDecision]:
    if ctx.state.emergency_active(ctx.now):
        return GuardDecision.veto("emergency_stop")
    return None


def check_thread_limit(ctx: GuardContext) -> Optional[GuardDecision]:
    since = ctx.now - ctx.config.thread_window_seconds
    count = ctx.state.thread_count(ctx.item.thread_key, since)
    if count >= ctx.config.max_responses_per_thread:
        return GuardDecision.veto("thread_limit_exceeded", count=count)
    return None


def check_actor_rate(ctx: GuardContext) -> Optional[GuardDecision]:
    since = ctx.now - ctx.config.actor_window_seconds
    count = ctx.state.actor_count(ctx.item.actor_id, since)
    if count >= ctx.config.max_responses_per_actor_per_hour:
        return GuardDecision.veto("actor_rate_limit", count=count)
    return None


def check_conversation_circle(ctx: GuardContext) -> Optional[GuardDecision]:
    if not ctx.config.conversation_circle_detection:
        return None

    recent = list(ctx.history)[-ctx.config.circle_window:]
    own = [tokenize(msg.text) for msg in recent if msg.is_own_reply]
    if len(own) < 3:
        return None

    threshold = ctx.config.similarity_threshold
    repeating = sum(
        1 for i, tokens in enumerate(own)
        if any(jaccard(tokens, other) > threshold for j, other in enumerate(own) if j != i)
    )
    if repeating >= 2:
        return GuardDecision.veto("conversation_circle", repeating=repeating)
    return None


def check_request_similarity(ctx: GuardContext) -> Optional[GuardDecision]:
    own = [msg for msg in ctx.history if msg.is_own_reply][-ctx.config.max_similar_responses:]
    if not own:
        return None

    incoming = tokenize(ctx.item.text)
    threshold = ctx.config.similarity_threshold
    similar = sum(1 for msg in own if jaccard(incoming, tokenize(msg.text)) > threshold)
    if similar >= 2:
        return GuardDecision.veto("high_similarity", similar_count=similar)
    return None


DEFAULT_CHECKS: tuple[GuardCheck, ...] = (
    check_emergency_stop,
    check_thread_limit,
    check_actor_rate,
    check_conversation_circle,
    check_request_similarity,
)


# ──────────────────────────────────────────────────────────────
#  Guard
# ──────────────────────────────────────────────────────────────

class LoopGuard:
    """Runs the check pipeline, sanitizes replies, and tracks delivered replies."""

    def __init__(
        self,
        config: LoopGuardConfig = None,
        state: GuardState = None,
        clock: Callable[[], float] = time.time,
        checks: Sequence[GuardCheck] = DEFAULT_CHECKS,
    ):
        self.config = config or LoopGuardConfig()
        self.state = state or GuardState(self.config.recovery_window_seconds)
        self._clock = clock
        self._checks = tuple(checks)
        self._trigger_patterns = [
            re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)
            for word in self.config.trigger_words if word
        ]

    # ── Pre-generation ────────────────────────────────────

    def should_allow(
        self, item: InboundItem, history: Sequence[HistoryMessage] = (),
    ) -> GuardDecision:
        ctx = GuardContext(
            item=item, history=history, now=self._clock(),
            state=self.state, config=self.config,
        )
        for check in self._checks:
            decision = check(ctx)
            if decision is not None:
                logger.warning("guard_veto",
                               item_id=item.id,
                               conversation_id=item.conversation_id,
                               thread_id=item.thread_id,
                               reason=decision.reason,
                               **decision.details)
                return decision
        return GuardDecision.allow()

    # ── Post-generation ───────────────────────────────────

    def sanitize_response(self, text: str) -> SanitizedText:
        if not self.config.trigger_word_sanitization or not self._trigger_patterns:
            return SanitizedText(text=text)

        found: list[str] = []
        cleaned = text
        for pattern in self._trigger_patterns:
            found.extend(pattern.findall(cleaned))
            cleaned = pattern.sub(lambda m: re.sub(r"\w", "*", m.group(0)), cleaned)

        if not found:
            return SanitizedText(text=text)
        logger.warning("reply_trigger_words_masked", triggers=found)
        return SanitizedText(text=cleaned, modified=True, triggers=found)

    # ── Recording ─────────────────────────────────────────

    def record_response(
        self,
        conversation_id: str,
        thread_id: Optional[str],
        actor_id: str = "",
        at: Optional[float] = None,
    ) -> None:
        """Record a delivered reply, then check whether the burst warrants an emergency stop."""
        now = self._clock()
        self.state.record((conversation_id, thread_id), actor_id, at if at is not None else now)

        if self.state.emergency_active(now):
            return
        recent = self.state.total_since(now - self.config.emergency_window_seconds)
        if recent > self.config.emergency_stop_threshold:
            self.state.activate_emergency(now, "threshold")
            logger.error("emergency_stop_activated",
                         reason="threshold",
                         replies=recent,
                         window_s=self.config.emergency_window_seconds)

    async def rebuild_from_history(self, store) -> int:
        """Reload the sliding windows from delivered replies still inside the longest window."""
        window = max(
            self.config.thread_window_seconds,
            self.config.actor_window_seconds,
            self.config.emergency_window_seconds,
        )
        since = datetime.fromtimestamp(self._clock() - window, timezone.utc)
        replies = await store.list_sent_replies(since)
        for reply in replies:
            self.state.record(
                (reply.conversation_id, reply.thread_id),
                reply.actor_id,
                reply.sent_at.timestamp(),
            )
        logger.info("guard_state_rebuilt", replies=len(replies))
        return len(replies)

    def cleanup(self) -> None:
        window = max(
            self.config.thread_window_seconds,
            self.config.actor_window_seconds,
            self.config.emergency_window_seconds,
        )
        self.state.prune(self._clock() - window)

    # ── Manual controls ───────────────────────────────────

    def activate_emergency_stop(self, reason: str = "manual") -> None:
        self.state.activate_emergency(self._clock(), reason)
        logger.warning("emergency_stop_activated", reason=reason)

    def deactivate_emergency_stop(self) -> None:
        self.state.deactivate_emergency()
        logger.info("emergency_stop_deactivated")

    def is_emergency_stop_active(self) -> bool:
        return self.state.emergency_active(self._clock())

    def status(self) -> dict[str, Any]:
        return {
            "emergency_stop": self.state.emergency_snapshot(self._clock()),
            "active_threads": self.state.active_threads,
            "active_actors": self.state.active_actors,
            "config": {
                "max_responses_per_thread": self.config.max_responses_per_thread,
                "max_responses_per_actor_per_hour": self.config.max_responses_per_actor_per_hour,
                "max_similar_responses": self.config.max_similar_responses,
                "emergency_stop_threshold": self.config.emergency_stop_threshold,
                "conversation_circle_detection": self.config.conversation_circle_detection,
                "trigger_word_sanitization": self.config.trigger_word_sanitization,
            },
        }
