"""
Store Factory — picks the flow store backend named by ``database.store_backend``.

    "memory"  dicts in this process (development, tests)
    "sql"     SQLAlchemy async over ``database.url`` (production)

The first store created is kept for the life of the process; the API and
the scheduler loops must share one store so claims and session locks agree.
"""
from __future__ import annotations

from typing import Any, Callable, Optional, Union

import structlog

from config.settings import DatabaseConfig
from database.store_base import BaseFlowStore

logger = structlog.get_logger()


def _memory_store() -> BaseFlowStore:
    from database.store_memory import InMemoryFlowStore
    return InMemoryFlowStore()


def _sql_store() -> BaseFlowStore:
    # Engine is created lazily from settings on the first query
    from database.store import SqlFlowStore
    return SqlFlowStore()


_BACKENDS: dict[str, Callable[[], BaseFlowStore]] = {
    "memory": _memory_store,
    "sql": _sql_store,
}

_instance: Optional[BaseFlowStore] = None


def _backend_name(config: Union[DatabaseConfig, dict[str, Any], None]) -> str:
    if config is None:
        return "memory"
    if isinstance(config, DatabaseConfig):
        return config.store_backend
    return config.get("store_backend", "memory")


def create_store(config: Union[DatabaseConfig, dict[str, Any], None] = None) -> BaseFlowStore:
    """
    Return the process store, building it on the first call.

    Raises ValueError for a backend name that is not registered. Later calls
    return the existing store whatever they ask for.
    """
    global _instance
    if _instance is not None:
        return _instance

    backend = _backend_name(config)
    build = _BACKENDS.get(backend)
    if build is None:
        raise ValueError(
            f"Unknown store backend {backend!r}; expected one of {sorted(_BACKENDS)}"
        )
    _instance = build()
    logger.info("store_created", backend=backend, store=type(_instance).__name__)
    return _instance


def get_store() -> BaseFlowStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
