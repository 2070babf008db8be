"""Counter stores backing quota enforcement and rate limiting."""

from __future__ import annotations

import asyncio
import dataclasses
import sqlite3
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Protocol

from kb_search.types import QuotaCounter, RateLimitWindow


class CounterStore(Protocol):
    """Quota counters keyed by `(org_id, resource)`.

    `try_consume` must be atomic: the limit check and the increment happen as
    one step, so concurrent callers can never push `used` past `limit`.
    """

    async def get(self, org_id: str, resource: str) -> QuotaCounter | None:
        """Current counter, or None when the org has none for `resource`."""

    async def list_counters(self, org_id: str) -> list[QuotaCounter]:
        """All counters of an org."""

    async def upsert_limit(self, counter: QuotaCounter) -> QuotaCounter:
        """Create the counter, or update only its limit if it already exists."""

    async def try_consume(
        self,
        org_id: str,
        resource: str,
        amount: int,
        *,
        now: datetime,
        window_start: datetime,
        next_reset: datetime,
    ) -> tuple[bool, QuotaCounter] | None:
        """Roll the window over if `reset_at <= now`, then conditionally add `amount`."""

    async def release(self, org_id: str, resource: str, amount: int) -> QuotaCounter | None:
        """Subtract `amount`, never going below zero."""

    async def set_used(self, org_id: str, resource: str, used: int) -> QuotaCounter | None:
        """Overwrite the usage value (storage gauges)."""


class InMemoryCounterStore:
    """Process-local counters. Each operation completes without yielding to the event loop."""

    def __init__(self) -> None:
        self._counters: dict[tuple[str, str], QuotaCounter] = {}

    async def get(self, org_id: str, resource: str) -> QuotaCounter | None:
        counter = self._counters.get((org_id, resource))
        return dataclasses.replace(counter) if counter else None

    async def list_counters(self, org_id: str) -> list[QuotaCounter]:
        return [
            dataclasses.replace(counter)
            for (owner, _), counter in self._counters.items()
            if owner == org_id
        ]

    async def upsert_limit(self, counter: QuotaCounter) -> QuotaCounter:
        key = (counter.org_id, counter.resource)
        existing = self._counters.get(key)
        if existing is None:
            self._counters[key] = dataclasses.replace(counter)
        else:
            existing.limit = counter.limit
        return dataclasses.replace(self._counters[key])

    async def try_consume(
        self,
        org_id: str,
        resource: str,
        amount: int,
        *,
        now: datetime,
        window_start: datetime,
        next_reset: datetime,
    ) -> tuple[bool, QuotaCounter] | None:
        counter = self._counters.get((org_id, resource))
        if counter is None:
            return None
        if counter.reset_at is not None and counter.reset_at <= now:
            counter.used = 0
            counter.window_start = window_start
            counter.reset_at = next_reset
        if counter.used + amount > counter.limit:
            return False, dataclasses.replace(counter)
        counter.used += amount
        return True, dataclasses.replace(counter)

    async def release(self, org_id: str, resource: str, amount: int) -> QuotaCounter | None:
        counter = self._counters.get((org_id, resource))
        if counter is None:
            return None
        counter.used = max(0, counter.used - amount)
        return dataclasses.replace(counter)

    async def set_used(self, org_id: str, resource: str, used: int) -> QuotaCounter | None:
        counter = self._counters.get((org_id, resource))
        if counter is None:
            return None
        counter.used = max(0, used)
        return dataclasses.replace(counter)


class SqliteCounterStore:
    """SQLite counters shared by every process pointing at the same file.

    Writes run inside `BEGIN IMMEDIATE` transactions and the increment is a
    single conditional `UPDATE`, so the limit holds across processes.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        _ensure_quota_table(self.path)

    async def get(self, org_id: str, resource: str) -> QuotaCounter | None:
        return await asyncio.to_thread(self._get, org_id, resource)

    async def list_counters(self, org_id: str) -> list[QuotaCounter]:
        return await asyncio.to_thread(self._list, org_id)

    async def upsert_limit(self, counter: QuotaCounter) -> QuotaCounter:
        return await asyncio.to_thread(self._upsert_limit, counter)

    async def try_consume(
        self,
        org_id: str,
        resource: str,
        amount: int,
        *,
        now: datetime,
        window_start: datetime,
        next_reset: datetime,
    ) -> tuple[bool, QuotaCounter] | None:
        return await asyncio.to_thread(
            self._try_consume, org_id, resource, amount, now, window_start, next_reset
        )

    async def release(self, org_id: str, resource: str, amount: int) -> QuotaCounter | None:
        return await asyncio.to_thread(
            self._write,
            "UPDATE quota_counters SET used = MAX(0, used - ?) WHERE org_id = ? AND resource = ?",
            (amount, org_id, resource),
            org_id,
            resource,
        )

    async def set_used(self, org_id: str, resource: str, used: int) -> QuotaCounter | None:
        return await asyncio.to_thread(
            self._write,
            "UPDATE quota_counters SET used = ? WHERE org_id = ? AND resource = ?",
            (max(0, used), org_id, resource),
            org_id,
            resource,
        )

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, isolation_level=None, timeout=30.0)

    def _get(self, org_id: str, resource: str) -> QuotaCounter | None:
        conn = self._connect()
        try:
            return _select(conn, org_id, resource)
        finally:
            conn.close()

    def _list(self, org_id: str) -> list[QuotaCounter]:
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM quota_counters WHERE org_id = ? ORDER BY resource",
                (org_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_counter(row) for row in rows]

    def _upsert_limit(self, counter: QuotaCounter) -> QuotaCounter:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT INTO quota_counters(org_id, resource, used, usage_limit, window_start, reset_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(org_id, resource) DO UPDATE SET usage_limit = excluded.usage_limit
                """,
                (
                    counter.org_id,
                    counter.resource,
                    counter.used,
                    counter.limit,
                    counter.window_start.isoformat(),
                    counter.reset_at.isoformat() if counter.reset_at else None,
                ),
            )
            stored = _select(conn, counter.org_id, counter.resource)
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        if stored is None:
            raise sqlite3.DatabaseError(
                f"quota counter {counter.org_id}/{counter.resource} missing after upsert"
            )
        return stored

    def _try_consume(
        self,
        org_id: str,
        resource: str,
        amount: int,
        now: datetime,
        window_start: datetime,
        next_reset: datetime,
    ) -> tuple[bool, QuotaCounter] | None:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                UPDATE quota_counters SET used = 0, window_start = ?, reset_at = ?
                WHERE org_id = ? AND resource = ? AND reset_at IS NOT NULL AND reset_at <= ?
                """,
                (window_start.isoformat(), next_reset.isoformat(), org_id, resource, now.isoformat()),
            )
            cursor = conn.execute(
                """
                UPDATE quota_counters SET used = used + ?
                WHERE org_id = ? AND resource = ? AND used + ? <= usage_limit
                """,
                (amount, org_id, resource, amount),
            )
            allowed = cursor.rowcount == 1
            counter = _select(conn, org_id, resource)
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        if counter is None:
            return None
        return allowed, counter

    def _write(
        self, sql: str, params: tuple[object, ...], org_id: str, resource: str
    ) -> QuotaCounter | None:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(sql, params)
            counter = _select(conn, org_id, resource)
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return counter


_COLUMNS = "org_id, resource, used, usage_limit, window_start, reset_at"


def _select(conn: sqlite3.Connection, org_id: str, resource: str) -> QuotaCounter | None:
    row = conn.execute(
        f"SELECT {_COLUMNS} FROM quota_counters WHERE org_id = ? AND resource = ?",
        (org_id, resource),
    ).fetchone()
    return _row_to_counter(row) if row else None


def _row_to_counter(row: tuple[object, ...]) -> QuotaCounter:
    org_id, resource, used, limit, window_start, reset_at = row
    return QuotaCounter(
        org_id=str(org_id),
        resource=str(resource),  # type: ignore[arg-type]
        used=int(used),  # type: ignore[arg-type]
        limit=int(limit),  # type: ignore[arg-type]
        window_start=datetime.fromisoformat(str(window_start)),
        reset_at=datetime.fromisoformat(str(reset_at)) if reset_at else None,
    )


def _ensure_quota_table(db_file: Path) -> None:
    db_file.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_file) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS quota_counters (
                org_id TEXT NOT NULL,
                resource TEXT NOT NULL,
                used INTEGER NOT NULL DEFAULT 0,
                usage_limit INTEGER NOT NULL,
                window_start TEXT NOT NULL,
                reset_at TEXT,
                PRIMARY KEY (org_id, resource)
            )
            """
        )
        conn.commit()


class RateLimitStore(Protocol):
    """Sliding-window hit logs keyed by `ratelimit:{resource}:{actor}`."""

    async def hit_all(
        self, entries: list[tuple[str, float, int]], *, now: float
    ) -> list[tuple[bool, int, float | None]]:
        """Prune expired hits for each `(key, window_seconds, limit)` entry.

        `now` is recorded under every key only when each key has fewer than
        its `limit` hits left; otherwise nothing is recorded. Returns one
        `(within_limit, count_after, oldest_timestamp_in_window)` per entry.
        """

    async def reset(self, key: str) -> None:
        """Forget every hit recorded under `key`."""


class InMemoryRateLimitStore:
    """Per-key deques of hit timestamps. Each call completes without yielding."""

    def __init__(self) -> None:
        self._hits: dict[str, deque[float]] = {}

    async def hit_all(
        self, entries: list[tuple[str, float, int]], *, now: float
    ) -> list[tuple[bool, int, float | None]]:
        windows = [self._pruned(key, now - window_seconds) for key, window_seconds, _ in entries]
        within = [len(hits) < limit for hits, (_, _, limit) in zip(windows, entries)]
        admit = all(within)
        outcomes: list[tuple[bool, int, float | None]] = []
        for (key, _, _), hits, ok in zip(entries, windows, within):
            if admit:
                hits.append(now)
            if hits:
                self._hits[key] = hits
            else:
                self._hits.pop(key, None)
            outcomes.append((ok, len(hits), hits[0] if hits else None))
        return outcomes

    async def reset(self, key: str) -> None:
        self._hits.pop(key, None)

    def window(self, key: str, *, actor_id: str, resource: str) -> RateLimitWindow:
        """Snapshot of the hits currently recorded for `key`."""
        return RateLimitWindow(
            actor_id=actor_id, resource=resource, timestamps=list(self._hits.get(key, ()))
        )

    def __len__(self) -> int:
        return len(self._hits)

    def _pruned(self, key: str, cutoff: float) -> deque[float]:
        hits = self._hits.get(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits
