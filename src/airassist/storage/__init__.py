"""storage/ — async key-value persistence (aiosqlite or in-memory)."""

from airassist.storage.kv_store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SqliteKeyValueStore"]
