"""
Database layer — Call ledger persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  sequence = await store.append_call_state("CA123", "gathering", {"stage": 0})
"""
from database.models import (
    Base, CallRow, CallStateRow, CallInputRow,
    WebhookNotificationRow, NotificationMetricRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseLedgerStore
from database.store import SqlLedgerStore
from database.store_memory import InMemoryLedgerStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "CallRow", "CallStateRow", "CallInputRow",
    "WebhookNotificationRow", "NotificationMetricRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseLedgerStore",
    # Store backends
    "SqlLedgerStore", "InMemoryLedgerStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
