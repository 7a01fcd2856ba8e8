"""PostgreSQL implementation of the key-value store."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..exceptions import StoreError
from .base import KeyValueStore, StoredValue


class PostgresKeyValueStore(KeyValueStore):
    """Persist versioned values using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(f"PostgreSQL connection failed: {exc}") from exc
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_entries (
                key TEXT PRIMARY KEY,
                value JSONB NOT NULL,
                version BIGINT NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def get(self, key: str) -> tuple[Optional[dict[str, Any]], int]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT value, version FROM kv_entries WHERE key = $1", key
            )
        except asyncpg.PostgresError as exc:
            raise StoreError(f"PostgreSQL read failed: {exc}") from exc
        finally:
            await conn.close()
        if not row:
            return None, 0
        return json.loads(row["value"]), row["version"]

    async def put(self, key: str, value: dict[str, Any], expected_version: int) -> bool:
        conn = await self._connect()
        try:
            if expected_version == 0:
                status = await conn.execute(
                    """
                    INSERT INTO kv_entries (key, value, version) VALUES ($1, $2::jsonb, 1)
                    ON CONFLICT (key) DO NOTHING
                    """,
                    key,
                    json.dumps(value),
                )
            else:
                status = await conn.execute(
                    """
                    UPDATE kv_entries SET value = $1::jsonb, version = version + 1
                    WHERE key = $2 AND version = $3
                    """,
                    json.dumps(value),
                    key,
                    expected_version,
                )
        except asyncpg.PostgresError as exc:
            raise StoreError(f"PostgreSQL write failed: {exc}") from exc
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "INSERT 0 1" or "UPDATE 0".
        return status.split()[-1] == "1"

    async def list_by_prefix(self, prefix: str) -> list[StoredValue]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT key, value, version FROM kv_entries WHERE left(key, $1) = $2 ORDER BY key",
                len(prefix),
                prefix,
            )
        except asyncpg.PostgresError as exc:
            raise StoreError(f"PostgreSQL read failed: {exc}") from exc
        finally:
            await conn.close()
        return [StoredValue(r["key"], json.loads(r["value"]), r["version"]) for r in rows]
