"""Redis implementation of the key-value store."""

from __future__ import annotations

import json
from typing import Any, Optional

try:
    import redis.asyncio as redis
    from redis.exceptions import RedisError, WatchError
except ImportError:
    redis = None

from ..exceptions import StoreError
from .base import KeyValueStore, StoredValue


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store; each key is a hash holding ``value`` and ``version``.

    Conditional writes use ``WATCH``/``MULTI`` so a concurrent writer makes the
    transaction abort instead of overwriting.
    """

    namespace = "agentloop:"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisKeyValueStore")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await self._redis.ping()
        except RedisError as exc:
            raise StoreError(f"Redis connection failed: {exc}") from exc

    async def close(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def get(self, key: str) -> tuple[Optional[dict[str, Any]], int]:
        client = await self._client()
        try:
            entry = await client.hgetall(self.namespace + key)
        except RedisError as exc:
            raise StoreError(f"Redis read failed: {exc}") from exc
        if not entry:
            return None, 0
        return json.loads(entry["value"]), int(entry["version"])

    async def put(self, key: str, value: dict[str, Any], expected_version: int) -> bool:
        client = await self._client()
        name = self.namespace + key
        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(name)
                current = await pipe.hget(name, "version")
                current_version = int(current) if current else 0
                if current_version != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.hset(
                    name,
                    mapping={"value": json.dumps(value), "version": expected_version + 1},
                )
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as exc:
            raise StoreError(f"Redis write failed: {exc}") from exc

    async def list_by_prefix(self, prefix: str) -> list[StoredValue]:
        client = await self._client()
        results: list[StoredValue] = []
        try:
            names = [n async for n in client.scan_iter(match=f"{self.namespace}{prefix}*")]
            for name in sorted(names):
                entry = await client.hgetall(name)
                if not entry:
                    continue
                results.append(
                    StoredValue(
                        name[len(self.namespace):],
                        json.loads(entry["value"]),
                        int(entry["version"]),
                    )
                )
        except RedisError as exc:
            raise StoreError(f"Redis read failed: {exc}") from exc
        return results
