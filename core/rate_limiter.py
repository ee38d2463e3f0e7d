"""
Persistent token bucket guarding every call across the platform boundary.

Tokens refill lazily at `refill_rate` per second up to `bucket_size`.
The bucket state lives in a small JSON file so a restart cannot make the
bucket look fuller than it was: the file is rewritten synchronously after
every call that consumes a token.

The file is not safe against concurrent writers in different processes.
Callers run under the tick lock, which makes this process the single writer.
"""
from __future__ import annotations

import asyncio
import json
import math
import os
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()

# Float refill can land a hair under a whole token
_TOKEN_EPSILON = 1e-9


@dataclass
class AcquireResult:
    allowed: bool
    wait_ms: int = 0


@dataclass
class RateLimiterState:
    tokens: float
    last_refill_at: float
    total_calls: int = 0
    blocked_calls: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any], bucket_size: int, now: float) -> RateLimiterState:
        tokens = float(data.get("tokens", bucket_size))
        return cls(
            tokens=max(0.0, min(float(bucket_size), tokens)),
            last_refill_at=float(data.get("last_refill_at", now)),
            total_calls=int(data.get("total_calls", 0)),
            blocked_calls=int(data.get("blocked_calls", 0)),
        )


class PersistentRateLimiter:
    """
    Token bucket with JSON-file persistence and thread-safe state.

    `try_acquire()` never blocks. `await_slot()` is the single intentional
    wait in the system: it sleeps once for the computed refill time and
    tries again.
    """

    def __init__(
        self,
        state_file: str | Path,
        bucket_size: int = 5,
        refill_rate: float = 1 / 65,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if bucket_size < 1:
            raise ValueError("bucket_size must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        self.bucket_size = bucket_size
        self.refill_rate = refill_rate
        self._state_file = Path(state_file)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._state = self._load_state()

    # ── Persistence ───────────────────────────────────────

    def _fresh_state(self) -> RateLimiterState:
        return RateLimiterState(tokens=float(self.bucket_size), last_refill_at=self._clock())

    def _load_state(self) -> RateLimiterState:
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        if not self._state_file.exists():
            state = self._fresh_state()
            self._write_state(state)
            return state
        try:
            with open(self._state_file, "r") as f:
                data = json.load(f)
            return RateLimiterState.from_dict(data, self.bucket_size, self._clock())
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("rate_limit_state_load_failed",
                           path=str(self._state_file), error=str(e))
            return self._fresh_state()

    def _write_state(self, state: RateLimiterState) -> None:
        tmp = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(asdict(state), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._state_file)

    # ── Bucket ────────────────────────────────────────────

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._state.last_refill_at)
        self._state.tokens = min(
            float(self.bucket_size), self._state.tokens + elapsed * self.refill_rate,
        )
        self._state.last_refill_at = now

    def _wait_ms(self) -> int:
        return max(1, math.ceil((1.0 - self._state.tokens) / self.refill_rate * 1000))

    def try_acquire(self) -> AcquireResult:
        with self._lock:
            self._refill()
            if self._state.tokens >= 1.0 - _TOKEN_EPSILON:
                self._state.tokens = max(0.0, self._state.tokens - 1.0)
                self._state.total_calls += 1
                self._write_state(self._state)
                logger.debug("rate_limit_token_consumed",
                             tokens_left=round(self._state.tokens, 2))
                return AcquireResult(allowed=True)
            return AcquireResult(allowed=False, wait_ms=self._wait_ms())

    def record_blocked(self) -> None:
        with self._lock:
            self._state.blocked_calls += 1
            self._write_state(self._state)

    async def await_slot(self, max_wait_ms: Optional[int] = None) -> AcquireResult:
        """
        Acquire a token, sleeping once for the refill time if the bucket is empty.

        With `max_wait_ms`, a wait longer than that is not attempted and the
        denied result is returned straight away.
        """
        result = self.try_acquire()
        if result.allowed:
            return result

        self.record_blocked()
        if max_wait_ms is not None and result.wait_ms > max_wait_ms:
            logger.info("rate_limit_slot_unavailable",
                        wait_ms=result.wait_ms, max_wait_ms=max_wait_ms)
            return result

        logger.info("rate_limit_waiting", wait_s=math.ceil(result.wait_ms / 1000))
        await self._sleep(result.wait_ms / 1000)
        return self.try_acquire()

    # ── Admin ─────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._refill()
            can_call = self._state.tokens >= 1.0 - _TOKEN_EPSILON
            return {
                "tokens": round(self._state.tokens, 2),
                "bucket_size": self.bucket_size,
                "refill_rate": self.refill_rate,
                "total_calls": self._state.total_calls,
                "blocked_calls": self._state.blocked_calls,
                "can_call_now": can_call,
                "next_call_allowed_in_ms": 0 if can_call else self._wait_ms(),
            }

    def reset(self) -> None:
        with self._lock:
            self._state = self._fresh_state()
            self._write_state(self._state)
        logger.info("rate_limiter_reset")
