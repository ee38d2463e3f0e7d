"""
Tick Runner: Calls Orchestrator.tick() on a fixed interval.

Runs as a single async task inside the application process. Ticks never
overlap: the next interval starts counting after the previous tick has
finished. A tick that raises is logged and the loop carries on; the next
tick starts again from whatever the store persisted.

Usage:
    runner = TickRunner(orchestrator, interval_seconds=45)
    await runner.start()               # blocks until stop()
    await runner.start_background()    # returns immediately, runs as task
    await runner.stop()                # finish the current tick, then exit
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from core.orchestrator import Orchestrator, TickReport

logger = structlog.get_logger()


class TickRunner:

    def __init__(self, orchestrator: Orchestrator, interval_seconds: float = 45.0):
        self.orchestrator = orchestrator
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.ticks_run = 0
        self.ticks_failed = 0
        self.last_report: Optional[TickReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Run ticks until stop() is called."""
        self._stop.clear()
        logger.info("tick_runner_starting", interval=self.interval)

        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("tick_runner_stopped", ticks=self.ticks_run, failed=self.ticks_failed)

    async def run_once(self) -> Optional[TickReport]:
        """One tick with failures logged instead of raised."""
        try:
            report = await self.orchestrator.tick()
        except Exception as e:
            self.ticks_failed += 1
            logger.error("tick_failed", error=str(e), exc_info=True)
            return None
        self.ticks_run += 1
        self.last_report = report
        return report

    async def start_background(self) -> asyncio.Task:
        """Start the loop in a background task. Returns the task handle."""
        self._task = asyncio.create_task(self.start())
        return self._task

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Ask the current tick to wind down, then wait for the loop to exit."""
        self._stop.set()
        self.orchestrator.request_shutdown()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("tick_runner_stop_timeout", timeout=timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
