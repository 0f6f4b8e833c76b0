"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  flow = await store.get_flow("f1")
"""
from database.models import (
    Base, FetchLogRow, FlowRow, InstanceRow, LeadConfigRow, LeadRow,
    MessageRow, SessionRow,
)
from database.session import close_db, db_session, get_engine, init_db
from database.store_base import ActiveSessionExistsError, BaseFlowStore
from database.store import SqlFlowStore
from database.store_memory import InMemoryFlowStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "FlowRow", "SessionRow", "MessageRow", "InstanceRow",
    "LeadConfigRow", "LeadRow", "FetchLogRow",
    # Session management
    "get_engine", "db_session", "init_db", "close_db",
    # Store interface
    "BaseFlowStore", "ActiveSessionExistsError",
    # Store backends
    "SqlFlowStore", "InMemoryFlowStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
