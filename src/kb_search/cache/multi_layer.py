"""Two-tier read-through cache: process memory in front of a shared store."""

from __future__ import annotations

import fnmatch
import json
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, is_dataclass
from datetime import date, datetime
from typing import Any, Awaitable, Callable, TypeVar

from kb_search.cache.stores import CacheStore, InMemoryCacheStore
from kb_search.config import CacheConfig
from kb_search.errors import ValidationError
from kb_search.obs.observability import get_logger
from kb_search.types import CacheEntry, CacheLayer

logger = get_logger(__name__)

T = TypeVar("T")

_MISSING = object()
_ESCAPES = {"%": "%25", ":": "%3A", "*": "%2A", "?": "%3F", "[": "%5B", "]": "%5D"}


def _escape(component: str) -> str:
    return "".join(_ESCAPES.get(char, char) for char in component)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class MemoryTier:
    """Bounded LRU of `CacheEntry` objects with per-entry TTL."""

    def __init__(self, max_entries: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return _MISSING
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, *, tenant_id: str, ttl_seconds: float) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            tenant_id=tenant_id,
            inserted_at=self._clock(),
            ttl_seconds=ttl_seconds,
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete_pattern(self, pattern: str) -> int:
        doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(slots=True)
class CacheStats:
    memory_hits: int = 0
    memory_misses: int = 0
    distributed_hits: int = 0
    distributed_misses: int = 0
    distributed_errors: int = 0
    source_hits: int = 0

    def hit_rate(self) -> float:
        lookups = self.memory_hits + self.memory_misses
        if lookups == 0:
            return 0.0
        return (self.memory_hits + self.distributed_hits) / lookups


class MultiLayerCache:
    """Read-through cache keyed by organization and namespace.

    Lookup order is memory, then the shared store, then `compute_fn`. A shared
    hit refills memory; a computed value is written to both tiers. Entries of
    different organizations never share a key, and invalidation is always
    scoped to one organization.

    The shared tier is best effort: its errors and undecodable payloads are
    logged, counted and treated as misses. Concurrent misses on one key may
    each run `compute_fn`; the last writer wins.
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfig()
        self.store: CacheStore = store if store is not None else InMemoryCacheStore()
        self.memory = MemoryTier(self.config.memory_max_entries, clock=clock)
        self._stats = CacheStats()

    def build_key(self, key: str, *, org_id: str, namespace: str = "default") -> str:
        if not org_id:
            raise ValidationError("org_id is required for cache access")
        return f"{self.config.key_prefix}:{_escape(org_id)}:{_escape(namespace)}:{key}"

    async def get(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        *,
        org_id: str,
        namespace: str = "default",
        ttl_seconds: float | None = None,
    ) -> T:
        value, _ = await self.get_with_layer(
            key, compute_fn, org_id=org_id, namespace=namespace, ttl_seconds=ttl_seconds
        )
        return value

    async def get_with_layer(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        *,
        org_id: str,
        namespace: str = "default",
        ttl_seconds: float | None = None,
    ) -> tuple[T, CacheLayer]:
        ttl = self.config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("ttl_seconds must be positive")
        full_key = self.build_key(key, org_id=org_id, namespace=namespace)
        memory_ttl = min(ttl, self.config.memory_ttl_seconds)

        cached = self.memory.get(full_key)
        if cached is not _MISSING:
            self._stats.memory_hits += 1
            return cached, "memory"
        self._stats.memory_misses += 1

        shared = await self._read_shared(full_key)
        if shared is not _MISSING:
            self._stats.distributed_hits += 1
            self.memory.set(full_key, shared, tenant_id=org_id, ttl_seconds=memory_ttl)
            return shared, "distributed"
        self._stats.distributed_misses += 1

        value = await compute_fn()
        self._stats.source_hits += 1
        self.memory.set(full_key, value, tenant_id=org_id, ttl_seconds=memory_ttl)
        await self._write_shared(full_key, value, ttl)
        return value, "source"

    async def set(
        self,
        key: str,
        value: Any,
        *,
        org_id: str,
        namespace: str = "default",
        ttl_seconds: float | None = None,
    ) -> None:
        ttl = self.config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        full_key = self.build_key(key, org_id=org_id, namespace=namespace)
        self.memory.set(
            full_key,
            value,
            tenant_id=org_id,
            ttl_seconds=min(ttl, self.config.memory_ttl_seconds),
        )
        await self._write_shared(full_key, value, ttl)

    async def invalidate(
        self, pattern: str = "*", *, org_id: str, namespace: str | None = None
    ) -> int:
        """Drop entries of `org_id` whose key matches the glob `pattern`."""

        namespace_part = "*" if namespace is None else _escape(namespace)
        if not org_id:
            raise ValidationError("org_id is required for cache access")
        full_pattern = f"{self.config.key_prefix}:{_escape(org_id)}:{namespace_part}:{pattern}"
        removed = self.memory.delete_pattern(full_pattern)
        try:
            removed_shared = await self.store.delete_pattern(full_pattern)
        except Exception as exc:  # noqa: BLE001 - shared tier is best effort
            self._stats.distributed_errors += 1
            logger.warning("cache.invalidate_failed", pattern=full_pattern, error=str(exc))
            removed_shared = 0
        logger.info(
            "cache.invalidated",
            org_id=org_id,
            pattern=full_pattern,
            memory_removed=removed,
            shared_removed=removed_shared,
        )
        return max(removed, removed_shared)

    def stats(self) -> dict[str, float | int]:
        return {**asdict(self._stats), "memory_size": len(self.memory), "hit_rate": self.hit_rate()}

    def hit_rate(self) -> float:
        return self._stats.hit_rate()

    async def close(self) -> None:
        self.memory.clear()
        try:
            await self.store.close()
        except Exception as exc:  # noqa: BLE001 - shutdown must not raise
            logger.warning("cache.close_failed", error=str(exc))

    async def _read_shared(self, full_key: str) -> Any:
        try:
            raw = await self.store.get(full_key)
        except Exception as exc:  # noqa: BLE001 - shared tier is best effort
            self._stats.distributed_errors += 1
            logger.warning("cache.read_failed", key=full_key, error=str(exc))
            return _MISSING
        if raw is None:
            return _MISSING
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("cache.decode_failed", key=full_key)
            return _MISSING

    async def _write_shared(self, full_key: str, value: Any, ttl: float) -> None:
        try:
            payload = json.dumps(value, default=_json_default)
        except (TypeError, ValueError) as exc:
            logger.warning("cache.encode_failed", key=full_key, error=str(exc))
            return
        try:
            await self.store.set(full_key, payload, ttl)
        except Exception as exc:  # noqa: BLE001 - shared tier is best effort
            self._stats.distributed_errors += 1
            logger.warning("cache.write_failed", key=full_key, error=str(exc))
