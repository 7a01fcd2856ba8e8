"""In-memory implementation of the key-value store."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, Optional, Tuple

from .base import KeyValueStore, StoredValue


class InMemoryKeyValueStore(KeyValueStore):
    """Store values in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[dict[str, Any], int]] = {}
        self._lock = asyncio.Lock()
        self.writes = 0

    async def get(self, key: str) -> tuple[Optional[dict[str, Any]], int]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None, 0
            value, version = entry
            return copy.deepcopy(value), version

    async def put(self, key: str, value: dict[str, Any], expected_version: int) -> bool:
        async with self._lock:
            current = self._data.get(key)
            current_version = current[1] if current else 0
            if current_version != expected_version:
                return False
            self._data[key] = (copy.deepcopy(value), current_version + 1)
            self.writes += 1
            return True

    async def list_by_prefix(self, prefix: str) -> list[StoredValue]:
        async with self._lock:
            return [
                StoredValue(key, copy.deepcopy(value), version)
                for key, (value, version) in sorted(self._data.items())
                if key.startswith(prefix)
            ]
