"""Durable key-value store contract consumed by the orchestrator."""

from __future__ import annotations

import abc
from typing import Any, NamedTuple, Optional


class StoredValue(NamedTuple):
    key: str
    value: dict[str, Any]
    version: int


class KeyValueStore(metaclass=abc.ABCMeta):
    """Opaque durable map with per-key versions.

    Versions start at 1 for a newly created key; an absent key reports
    version 0. ``put`` is a compare-and-set on the version and never applies
    partially. There are no multi-key transactions.
    """

    async def connect(self) -> None:
        """Open backend resources (no-op by default)."""
        pass

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def get(self, key: str) -> tuple[Optional[dict[str, Any]], int]:
        """Return ``(value, version)``; ``(None, 0)`` when the key is absent."""
        raise NotImplementedError

    @abc.abstractmethod
    async def put(self, key: str, value: dict[str, Any], expected_version: int) -> bool:
        """Write ``value`` if the stored version equals ``expected_version``.

        ``expected_version=0`` means "create only if absent". Returns ``False``
        on a version mismatch, in which case nothing is written.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def list_by_prefix(self, prefix: str) -> list[StoredValue]:
        """Return all entries whose key starts with ``prefix``."""
        raise NotImplementedError
