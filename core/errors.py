"""
Error hierarchy for the relay.

Store-level errors abort the current tick. Collaborator errors are
attributed to a single row and never abort a batch.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay operations."""


# ── Storage ───────────────────────────────────────────────────

class StoreError(RelayError):
    """The queue store failed; the current tick cannot make progress."""


class StorageInitError(StoreError):
    """The store could not be initialized at startup."""


class ItemNotFoundError(StoreError):
    def __init__(self, kind: str, item_id):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} item {item_id!r} not found")


class IllegalTransitionError(RelayError):
    """A status change outside the allowed lifecycle. Always a programming error."""

    def __init__(self, kind: str, item_id, current: str, requested: str):
        self.kind = kind
        self.item_id = item_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Illegal {kind} transition for {item_id!r}: {current} -> {requested}"
        )


# ── Collaborators ─────────────────────────────────────────────

class CollaboratorError(RelayError):
    """Base for failures reported by Fetch / Generate / Emit."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class CollaboratorTimeout(CollaboratorError):
    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout}s", retryable=True)


class GenerationError(CollaboratorError):
    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class RateLimitedError(CollaboratorError):
    """The platform rejected a call for rate reasons. Retried without penalty."""

    def __init__(self, message: str = "rate limited", retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(message, retryable=True)
