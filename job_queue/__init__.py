"""
Job runner: Drives the orchestrator's tick on a fixed interval.

The queues themselves live in the database layer; this package only owns
the loop that decides when a tick happens.
"""
from job_queue.runner import TickRunner

__all__ = ["TickRunner"]
