"""
Database layer: Persistent inbound/outbound queues.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings)
  await store.init()
  await store.enqueue_inbound(item)
"""
from database.models import Base, InboundRow, OutboundRow
from database.session import (
    create_engine_for_url, get_engine, make_session_factory,
    session_scope, init_db,
)
from database.store_base import (
    BaseQueueStore, INBOUND_TRANSITIONS, OUTBOUND_TRANSITIONS,
)
from database.store import SqlQueueStore
from database.store_memory import InMemoryQueueStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "InboundRow", "OutboundRow",
    # Session management
    "create_engine_for_url", "get_engine", "make_session_factory",
    "session_scope", "init_db",
    # Store interface
    "BaseQueueStore", "INBOUND_TRANSITIONS", "OUTBOUND_TRANSITIONS",
    # Store backends
    "SqlQueueStore", "InMemoryQueueStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
