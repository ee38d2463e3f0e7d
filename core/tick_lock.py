"""
Tick lock: At most one tick runs against a store, across processes.

An advisory `flock` on a lock file, taken non-blocking. The holder writes
its PID into the file for operators. The lock is released by `release()`
or when the process exits.
"""
from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO, Optional

import structlog

logger = structlog.get_logger()


class TickLock:
    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        """Take the lock without waiting. False if another holder has it."""
        if self._handle is not None:
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            logger.info("tick_lock_busy", path=str(self.path))
            return False
        except OSError:
            handle.close()
            raise

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, *exc) -> None:
        self.release()
