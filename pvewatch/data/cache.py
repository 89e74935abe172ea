"""In-memory snapshot cache with TTL, LRU eviction and request coalescing.

Every upstream read goes through :meth:`SnapshotCache.get_or_compute` so that
concurrent subscribers and API requests share one upstream call per key.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Pattern, Union

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 100
DEFAULT_CLEANUP_INTERVAL = 60.0

_MISSING = object()


@dataclass
class CacheEntry:
    """A single cached value and its bookkeeping."""

    data: Any
    timestamp: float
    ttl: float
    access_count: int = 1
    last_accessed: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class SnapshotCache:
    """Short-TTL, size-bounded cache keyed by query signature.

    Entries expire lazily on read and through a periodic sweep. When the
    cache is full, inserting a new key evicts the entry that was read least
    recently. Concurrent misses on the same key share one in-flight fetch.
    """

    def __init__(
        self,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl = ttl
        self.max_entries = max_entries
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._cleanup_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    # --- Basic operations ---

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for ``key`` or ``default``."""
        value = self._lookup(key)
        return default if value is _MISSING else value

    def has(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict_lru()
        self._entries[key] = CacheEntry(
            data=data,
            timestamp=now,
            ttl=self.ttl if ttl is None else ttl,
            last_accessed=now,
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Return the raw entry without touching access bookkeeping."""
        return self._entries.get(key)

    # --- Coalescing read-through ---

    async def get_or_compute(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value for ``key`` or compute it once.

        Concurrent callers that miss on the same key await the same in-flight
        fetch. Cancelling one waiter does not cancel the shared fetch.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            return value

        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._compute(key, fetcher, ttl))
            future.add_done_callback(_consume_exception)
            self._inflight[key] = future
        return await asyncio.shield(future)

    async def _compute(self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl: Optional[float]) -> Any:
        try:
            data = await fetcher()
            self.set(key, data, ttl)
            return data
        finally:
            self._inflight.pop(key, None)

    def inflight(self, key: str) -> bool:
        return key in self._inflight

    # --- Maintenance ---

    def cleanup(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("[cache] Swept %d expired entries", len(expired))
        return len(expired)

    def invalidate(self, pattern: Union[str, Pattern[str]]) -> int:
        """Delete entries whose key contains ``pattern`` (or matches a regex)."""
        if isinstance(pattern, str):
            keys = [key for key in self._entries if pattern in key]
        else:
            keys = [key for key in self._entries if pattern.search(key)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())

    async def close(self) -> None:
        """Stop the periodic sweep and drop all entries."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()

    def stats(self) -> Dict[str, Any]:
        timestamps = [entry.timestamp for entry in self._entries.values()]
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0,
            "oldest_entry": min(timestamps) if timestamps else None,
            "newest_entry": max(timestamps) if timestamps else None,
            "inflight": len(self._inflight),
        }

    # --- Internals ---

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return _MISSING

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._misses += 1
            return _MISSING

        entry.access_count += 1
        entry.last_accessed = now
        self._hits += 1
        return entry.data

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
        del self._entries[oldest_key]
        logger.debug("[cache] Evicted least recently used entry %s", oldest_key)


def _consume_exception(future: asyncio.Future) -> None:
    # Mark the exception as retrieved when every waiter has gone away
    if not future.cancelled():
        future.exception()


class CacheKeys:
    """Cache key generators."""

    @staticmethod
    def cluster_summary() -> str:
        return "cluster-summary"

    @staticmethod
    def node_metrics(node: str, range_seconds: float) -> str:
        return f"node-metrics-{node}-{range_seconds:g}"

    @staticmethod
    def api_response(endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        suffix = f"-{json.dumps(params, sort_keys=True, default=str)}" if params else ""
        return f"api-{endpoint}{suffix}"
