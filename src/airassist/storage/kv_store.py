"""
storage/kv_store.py — Durable key-value records

Everything AIRAssist persists is a small JSON document under a fixed key:

    settings             — user overrides merged over config.yaml
    conversationHistory  — the last N conversation messages
    pendingMessages      — the offline outbound queue
    deviceHistory        — most-recently-connected peripherals
    userId               — generated once on first run

SqliteKeyValueStore keeps them in one aiosqlite table. MemoryKeyValueStore
is the in-process equivalent used by tests and --ephemeral runs.

Usage:
    store = SqliteKeyValueStore("./data/airassist.db")
    await store.init()
    await store.set("userId", "4f1c...")
    user_id = await store.get("userId")
"""

from __future__ import annotations

import asyncio
import copy
import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import aiosqlite

from airassist.exceptions import StorageError
from airassist.observability.logger import get_logger

log = get_logger(__name__)

# ── Schema DDL ────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  REAL NOT NULL
);
"""


@runtime_checkable
class KeyValueStore(Protocol):

    async def get(self, key: str, default: Any = None) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# SQLite
# ─────────────────────────────────────────────────────────────────────────────

class SqliteKeyValueStore:
    """Async SQLite-backed store. Values are JSON-encoded."""

    def __init__(self, db_path: str = "./data/airassist.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        """Create the database file and table if they don't exist."""
        Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(str(Path(self.db_path).expanduser()))
            await self._db.executescript(_SCHEMA)
            await self._db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Could not open store at {self.db_path}: {e}") from e
        log.info("kv_store.initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError(
                "SqliteKeyValueStore is not initialised (or has been closed). "
                "Call `await store.init()` before use."
            )
        return self._db

    async def get(self, key: str, default: Any = None) -> Any:
        db = self._require_db()
        try:
            async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Read of '{key}' failed: {e}") from e
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except ValueError as e:
            log.warning("kv_store.corrupt_value", key=key, error=str(e))
            return default

    async def set(self, key: str, value: Any) -> None:
        db = self._require_db()
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for '{key}' is not JSON-serializable: {e}") from e
        try:
            await db.execute(
                """INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value, updated_at = excluded.updated_at""",
                (key, encoded, time.time()),
            )
            await db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Write of '{key}' failed: {e}") from e
        log.debug("kv_store.set", key=key, size=len(encoded))

    async def delete(self, key: str) -> None:
        db = self._require_db()
        try:
            await db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await db.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Delete of '{key}' failed: {e}") from e


# ─────────────────────────────────────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────────────────────────────────────

class MemoryKeyValueStore:
    """Dict-backed store with the same copy-on-read/write semantics as SQLite."""

    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._lock = asyncio.Lock()

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def raw(self) -> dict[str, Any]:
        return self._data
