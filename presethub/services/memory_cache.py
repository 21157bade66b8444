"""In-memory stale-while-revalidate cache with per-key refresh deduplication."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from presethub.config import Settings
from presethub.exceptions import NetworkError

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]

CACHE_VERSION = "1.0"


class EntryState(str, enum.Enum):
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float
    version: str = CACHE_VERSION

    def is_fresh(self, now: float) -> bool:
        return now - self.timestamp < self.ttl


class RevalidatingCache:
    """Serves cached values immediately and refreshes stale ones in the background.

    Per key the cache moves through Fresh -> Stale -> Refreshing -> Fresh.
    A stale read schedules at most one background refresh per key; every
    other reader keeps getting the previous value until that refresh swaps
    in a new one. A failed refresh leaves the previous value in place.
    """

    def __init__(
        self,
        ttl_by_kind: dict[str, float] | None = None,
        default_ttl: float = 30.0,
        fetch_timeout: float | None = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl_by_kind = dict(ttl_by_kind or {})
        self._default_ttl = default_ttl
        self._fetch_timeout = fetch_timeout
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._refreshing: dict[str, asyncio.Task] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Token per in-flight cold load; invalidation drops it so the result is not stored
        self._loading: dict[str, object] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> RevalidatingCache:
        return cls(
            ttl_by_kind=settings.ttl_by_resource_kind,
            default_ttl=settings.ttl_for("contents"),
            fetch_timeout=settings.fetch_timeout_seconds,
        )

    def ttl_for(self, kind: str) -> float:
        return self._ttl_by_kind.get(kind, self._default_ttl)

    # ── Reads ──

    async def read(
        self,
        key: str,
        fetch: Fetcher,
        *,
        kind: str = "contents",
        load_cached: Fetcher | None = None,
        revalidate_loaded: bool = True,
    ) -> Any:
        """Return the value for ``key``, fetching it only on a cold miss.

        ``load_cached`` is consulted before ``fetch`` on a cold miss (e.g. the
        persistent tier). A value found there is served as stale and
        revalidated in the background unless ``revalidate_loaded`` is False.

        Errors only propagate from the cold-miss path.
        """
        entry = self._entries.get(key)
        if entry is None:
            return await self._load(key, fetch, kind, load_cached, revalidate_loaded)

        if not entry.is_fresh(self._clock()):
            self._schedule_refresh(key, fetch, kind)
        return entry.data

    async def _load(
        self,
        key: str,
        fetch: Fetcher,
        kind: str,
        load_cached: Fetcher | None,
        revalidate_loaded: bool,
    ) -> Any:
        # Concurrent cold readers of the same key share one fetch
        async with self._locks[key]:
            entry = self._entries.get(key)
            if entry is not None:
                return entry.data

            token = object()
            self._loading[key] = token
            try:
                if load_cached is not None:
                    data = await load_cached()
                    if data is not None:
                        logger.debug("Loaded %s from persistent cache", key)
                        if self._loading.get(key) is token:
                            self._store(key, data, kind, stale=revalidate_loaded)
                            if revalidate_loaded:
                                self._schedule_refresh(key, fetch, kind)
                        return data

                logger.debug("Cache miss for %s, fetching", key)
                data = await self._fetch(key, fetch)
                if self._loading.get(key) is token:
                    self._store(key, data, kind)
                else:
                    logger.debug("Not storing %s, invalidated during fetch", key)
                return data
            finally:
                if self._loading.get(key) is token:
                    del self._loading[key]

    async def _fetch(self, key: str, fetch: Fetcher) -> Any:
        try:
            return await asyncio.wait_for(fetch(), timeout=self._fetch_timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Fetch for {key} timed out after {self._fetch_timeout}s") from e

    # ── Background refresh ──

    def _schedule_refresh(self, key: str, fetch: Fetcher, kind: str) -> bool:
        # No await between the membership check and the insert
        if key in self._refreshing:
            return False
        self._refreshing[key] = asyncio.create_task(
            self._refresh(key, fetch, kind), name=f"refresh:{key}"
        )
        return True

    async def _refresh(self, key: str, fetch: Fetcher, kind: str) -> None:
        try:
            data = await self._fetch(key, fetch)
        except Exception as e:
            logger.warning("Background refresh failed for %s: %s", key, e)
        else:
            self._store(key, data, kind)
            logger.debug("Background refresh completed for %s", key)
        finally:
            if self._refreshing.get(key) is asyncio.current_task():
                del self._refreshing[key]

    async def wait_for_refreshes(self) -> None:
        """Block until every in-flight background refresh has finished."""
        while self._refreshing:
            await asyncio.gather(*list(self._refreshing.values()), return_exceptions=True)

    # ── Writes / invalidation ──

    def _store(self, key: str, data: Any, kind: str, stale: bool = False) -> None:
        ttl = self.ttl_for(kind)
        timestamp = self._clock() - ttl if stale else self._clock()
        self._entries[key] = CacheEntry(data=data, timestamp=timestamp, ttl=ttl)

    def prime(self, key: str, data: Any, kind: str = "contents") -> None:
        """Store a value fetched elsewhere (e.g. during warm-up)."""
        self._store(key, data, kind)

    def _cancel_refresh(self, key: str) -> None:
        task = self._refreshing.pop(key, None)
        if task is not None:
            task.cancel()

    def _drop_lock(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def invalidate(self, key: str) -> bool:
        self._cancel_refresh(key)
        self._loading.pop(key, None)
        self._drop_lock(key)
        return self._entries.pop(key, None) is not None

    def invalidate_by_prefix(self, prefix: str) -> int:
        """Remove all keys starting with ``prefix``. Returns count removed."""
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            self.invalidate(k)
        return len(keys)

    def clear(self) -> int:
        count = len(self._entries)
        for key in list(self._refreshing):
            self._cancel_refresh(key)
        self._loading.clear()
        for key in list(self._locks):
            self._drop_lock(key)
        self._entries.clear()
        return count

    async def close(self) -> None:
        tasks = list(self._refreshing.values())
        self._refreshing.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Introspection ──

    def get_entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def state(self, key: str) -> EntryState | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if key in self._refreshing:
            return EntryState.REFRESHING
        if entry.is_fresh(self._clock()):
            return EntryState.FRESH
        return EntryState.STALE

    def keys(self) -> list[str]:
        return list(self._entries)

    @property
    def refreshing(self) -> frozenset[str]:
        return frozenset(self._refreshing)

    def stats(self) -> dict:
        """Return entry counts by state, oldest entry age and the TTL table."""
        now = self._clock()
        fresh = 0
        oldest_age = 0.0
        for entry in self._entries.values():
            if entry.is_fresh(now):
                fresh += 1
            oldest_age = max(oldest_age, now - entry.timestamp)
        total = len(self._entries)
        return {
            "total_entries": total,
            "fresh_entries": fresh,
            "stale_entries": total - fresh,
            "refreshing": len(self._refreshing),
            "oldest_entry_age_seconds": round(oldest_age, 1) if total > 0 else 0,
            "ttl_seconds": {**self._ttl_by_kind, "default": self._default_ttl},
        }
