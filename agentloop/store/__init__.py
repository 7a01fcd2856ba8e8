"""Persistence layer for agentloop workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgentLoopConfig, load_config
from .base import KeyValueStore, StoredValue
from .inmemory import InMemoryKeyValueStore
from .repository import WorkflowStore
from .sqlite import SQLiteKeyValueStore


def get_store(
    backend: Optional[str] = None, config: Optional[AgentLoopConfig] = None
) -> KeyValueStore:
    """Factory function to obtain the configured key-value store.

    The backend is selected from ``backend``, the ``AGENTLOOP_STORE`` env
    variable or loaded configuration. For ``sqlite`` and ``postgres`` the
    connection string comes from ``store.database_url``.
    """

    config = config or load_config()
    backend = (backend or os.getenv("AGENTLOOP_STORE") or config.store.backend).lower()
    database_url = config.store.database_url

    if backend == "inmemory":
        return InMemoryKeyValueStore()
    if backend == "sqlite":
        if not database_url:
            raise ValueError("sqlite store requires store.database_url")
        return SQLiteKeyValueStore(database_url.replace("sqlite://", "", 1))
    if backend == "postgres":
        if not database_url or not database_url.startswith(("postgres://", "postgresql://")):
            raise ValueError(f"Unsupported database url for postgres store: {database_url}")
        from .postgres import PostgresKeyValueStore

        return PostgresKeyValueStore(database_url)
    if backend == "redis":
        from .redis import RedisKeyValueStore

        redis_conf = config.store.redis
        return RedisKeyValueStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    raise ValueError(f"Unsupported store backend: {backend}")


__all__ = [
    "KeyValueStore",
    "StoredValue",
    "InMemoryKeyValueStore",
    "SQLiteKeyValueStore",
    "WorkflowStore",
    "get_store",
]
