"""
FastAPI Application: Admin API for the reply relay.

Provides:
- Health check
- Queue statistics and the stale-row sweep
- Rate limiter statistics and reset
- Loop guard status and the manual emergency stop
- Manual tick trigger (when an orchestrator is wired in)

Run with:
    uvicorn api.main:create_app --factory
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from config.logging import configure_logging
from config.settings import Settings, get_settings
from core.loop_guard import LoopGuard
from core.orchestrator import Orchestrator
from core.rate_limiter import PersistentRateLimiter
from database.store_base import BaseQueueStore
from database.store_factory import create_store
from job_queue.runner import TickRunner

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class EmergencyStopRequest(BaseModel):
    reason: str = "manual"


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_rate_limiter(settings: Settings) -> PersistentRateLimiter:
    return PersistentRateLimiter(
        state_file=settings.rate_limit.state_file,
        bucket_size=settings.rate_limit.bucket_size,
        refill_rate=settings.rate_limit.refill_rate,
    )


def create_app(
    store: Optional[BaseQueueStore] = None,
    rate_limiter: Optional[PersistentRateLimiter] = None,
    guard: Optional[LoopGuard] = None,
    orchestrator: Optional[Orchestrator] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the admin app. Components not passed in are created from settings.

    With an orchestrator, the app also runs the tick loop for its lifetime
    and uses the orchestrator's store, rate limiter and guard.
    """
    settings = settings or get_settings()
    if orchestrator is not None:
        store = orchestrator.store
        rate_limiter = orchestrator.rate_limiter
        guard = orchestrator.guard
    store = store or create_store(settings)
    rate_limiter = rate_limiter or build_rate_limiter(settings)
    guard = guard or LoopGuard(settings.loop_guard)
    runner = (
        TickRunner(orchestrator, interval_seconds=settings.queue.tick_interval_seconds)
        if orchestrator is not None else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if orchestrator is not None:
            await orchestrator.startup()
            await runner.start_background()
        else:
            await store.init()
            await guard.rebuild_from_history(store)

        logger.info("reply_relay_started",
                    app=settings.app_name,
                    store=type(store).__name__,
                    tick_loop=runner is not None)
        yield

        if runner is not None:
            await runner.stop(timeout=settings.queue.emit_timeout_seconds * 2)
        await store.close()
        logger.info("reply_relay_stopped")

    app = FastAPI(
        title="ReplyRelay API",
        description="Admin surface for the queue-and-guard reply relay",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.rate_limiter = rate_limiter
    app.state.guard = guard
    app.state.orchestrator = orchestrator
    app.state.runner = runner
    app.state.settings = settings

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        state = request.app.state
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "emergency_stop": state.guard.is_emergency_stop_active(),
            "tick_loop_running": bool(state.runner and state.runner.running),
        }

    # ══════════════════════════════════════════════════════════
    #  QUEUE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/queue/status")
    async def queue_status(request: Request):
        stats = await request.app.state.store.stats()
        return stats.model_dump()

    @app.post("/api/v1/queue/recover")
    async def recover_queue(
        request: Request,
        grace_seconds: Optional[int] = Query(default=None, ge=0),
    ):
        state = request.app.state
        grace = grace_seconds if grace_seconds is not None else state.settings.queue.stale_grace_seconds
        recovered = await state.store.recover_stale(grace)
        logger.info("queue_recovered", grace_seconds=grace, **recovered.model_dump())
        return {"grace_seconds": grace, **recovered.model_dump()}

    @app.post("/api/v1/queue/tick")
    async def trigger_tick(request: Request):
        orchestrator = request.app.state.orchestrator
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="No orchestrator configured")
        report = await orchestrator.tick()
        return report.as_dict()

    # ══════════════════════════════════════════════════════════
    #  RATE LIMITER
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/rate-limiter")
    async def rate_limiter_stats(request: Request):
        return request.app.state.rate_limiter.stats()

    @app.post("/api/v1/rate-limiter/reset")
    async def rate_limiter_reset(request: Request):
        limiter = request.app.state.rate_limiter
        limiter.reset()
        return limiter.stats()

    # ══════════════════════════════════════════════════════════
    #  LOOP GUARD
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/guard")
    async def guard_status(request: Request):
        return request.app.state.guard.status()

    @app.post("/api/v1/guard/emergency-stop")
    async def activate_emergency_stop(request: Request, req: Optional[EmergencyStopRequest] = None):
        guard = request.app.state.guard
        guard.activate_emergency_stop(reason=(req.reason if req else "manual"))
        return guard.status()["emergency_stop"]

    @app.delete("/api/v1/guard/emergency-stop")
    async def deactivate_emergency_stop(request: Request):
        guard = request.app.state.guard
        guard.deactivate_emergency_stop()
        return guard.status()["emergency_stop"]


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.json)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
