"""SQLite implementation of the key-value store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from ..exceptions import StoreError
from .base import KeyValueStore, StoredValue


class SQLiteKeyValueStore(KeyValueStore):
    """Persist versioned values using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
                return cur.rowcount
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"SQLite write failed: {exc}") from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as exc:
                raise StoreError(f"SQLite read failed: {exc}") from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"SQLite read failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Store API
    async def get(self, key: str) -> tuple[Optional[dict[str, Any]], int]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT value, version FROM kv_entries WHERE key = ?",
            key,
        )
        if not row:
            return None, 0
        return json.loads(row["value"]), row["version"]

    async def put(self, key: str, value: dict[str, Any], expected_version: int) -> bool:
        payload = json.dumps(value)
        if expected_version == 0:
            inserted = await asyncio.to_thread(
                self._execute,
                "INSERT OR IGNORE INTO kv_entries (key, value, version) VALUES (?, ?, 1)",
                key,
                payload,
            )
            return inserted == 1
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE kv_entries SET value = ?, version = version + 1 WHERE key = ? AND version = ?",
            payload,
            key,
            expected_version,
        )
        return updated == 1

    async def list_by_prefix(self, prefix: str) -> list[StoredValue]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT key, value, version FROM kv_entries WHERE substr(key, 1, ?) = ? ORDER BY key",
            len(prefix),
            prefix,
        )
        return [
            StoredValue(row["key"], json.loads(row["value"]), row["version"])
            for row in rows
        ]

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
