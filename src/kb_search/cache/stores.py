"""Shared (cross-process) cache tier backends."""

from __future__ import annotations

import asyncio
import fnmatch
import sqlite3
import time
from pathlib import Path
from typing import Callable, Protocol


class CacheStore(Protocol):
    """String key/value store with per-key expiry, shared by all service instances."""

    async def get(self, key: str) -> str | None:
        """Return the stored value, or None when absent or expired."""

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        """Store `value` under `key` for `ttl_seconds`."""

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern and return how many were removed."""

    async def close(self) -> None:
        """Release connections."""


class InMemoryCacheStore:
    """Process-local stand-in for the shared tier, used in tests and single-node runs."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._items: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            del self._items[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._items[key] = (value, self._clock() + ttl_seconds)

    async def delete_pattern(self, pattern: str) -> int:
        doomed = [key for key in self._items if fnmatch.fnmatchcase(key, pattern)]
        for key in doomed:
            del self._items[key]
        return len(doomed)

    async def close(self) -> None:
        self._items.clear()


class SqliteCacheStore:
    """SQLite-backed shared tier; every call runs in a worker thread."""

    def __init__(self, path: str | Path, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self._clock = clock
        _ensure_cache_table(self.path)

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await asyncio.to_thread(self._set, key, value, ttl_seconds)

    async def delete_pattern(self, pattern: str) -> int:
        return await asyncio.to_thread(self._delete_pattern, pattern)

    async def close(self) -> None:
        await asyncio.to_thread(self._purge_expired)

    def _get(self, key: str) -> str | None:
        with sqlite3.connect(self.path) as conn:
            row = conn.execute(
                "SELECT value FROM cache_entries WHERE key = ? AND expires_at > ?",
                (key, self._clock()),
            ).fetchone()
        return row[0] if row else None

    def _set(self, key: str, value: str, ttl_seconds: float) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                """
                INSERT INTO cache_entries(key, value, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                (key, value, self._clock() + ttl_seconds),
            )
            conn.commit()

    def _delete_pattern(self, pattern: str) -> int:
        with sqlite3.connect(self.path) as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE key GLOB ?", (pattern,))
            conn.commit()
            return cursor.rowcount

    def _purge_expired(self) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (self._clock(),))
            conn.commit()


def _ensure_cache_table(db_file: Path) -> None:
    db_file.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_file) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        conn.commit()
