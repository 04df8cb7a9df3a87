"""
Cache manager implementing the cache-aside pattern.

get_or_fetch() checks the store first and only calls the fetch function on
a miss. Writes after a fetch are fire-and-forget: the caller gets the data
before the write lands, and a failed write never fails the call. Until a
write lands, its data is served from a pending-write buffer so that a
back-to-back call still sees a hit.

With single_flight enabled (the default), concurrent misses on the same key
share one in-flight fetch instead of each calling the provider.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, TypeVar

from pulse.cache.store import PersistentCacheStore
from pulse.config import Settings
from pulse.logging import get_logger
from pulse.types import CacheStats, FetchResult, FetchState

logger = get_logger(__name__)

T = TypeVar("T")

WarmEntry = tuple[str, Any] | tuple[str, Any, float] | Mapping[str, Any]


class CacheManager:
    """Cache-aside orchestration over a PersistentCacheStore.

    The manager is the only component that writes entries; the store
    never originates them.
    """

    def __init__(
        self,
        store: PersistentCacheStore,
        namespace: str | None = None,
        default_ttl: float = 60,
        single_flight: bool = True,
        on_write: Callable[[str, bool], None] | None = None,
    ) -> None:
        """Initialize cache manager.

        Args:
            store: Backing cache store.
            namespace: Namespace for all keys (defaults to the store's first).
            default_ttl: TTL in seconds when get_or_fetch() is given none.
            single_flight: Coalesce concurrent misses on the same key.
            on_write: Called as on_write(key, written) after each background
                write completes. Observability only.
        """
        self.store = store
        self.namespace = namespace or store.namespaces[0]
        self.default_ttl = default_ttl
        self.single_flight = single_flight
        self.on_write = on_write
        self._in_flight: dict[str, asyncio.Future[Any]] = {}
        # key -> (data, expires_at ms, write task)
        self._pending_writes: dict[str, tuple[Any, int, asyncio.Task[None]]] = {}
        self._write_tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls,
        store: PersistentCacheStore,
        settings: Settings,
    ) -> CacheManager:
        return cls(
            store,
            namespace=settings.CACHE_DEFAULT_NAMESPACE,
            default_ttl=settings.TTL_DEFAULT,
            single_flight=settings.CACHE_SINGLE_FLIGHT,
        )

    @property
    def in_flight_keys(self) -> list[str]:
        """Keys with a fetch currently outstanding."""
        return list(self._in_flight)

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> FetchResult[T]:
        """Return cached data for key, or fetch, store and return it.

        Args:
            key: Namespaced cache key (e.g., "stock:quote:AAPL").
            fetch_fn: Zero-argument coroutine function producing fresh data.
                Not called on a hit.
            ttl: Time to live in seconds for a freshly fetched value.

        Returns:
            FetchResult with the data and whether it came from the cache.

        Raises:
            Whatever fetch_fn raises. Nothing is cached in that case.
        """
        ttl = self.default_ttl if ttl is None else ttl
        logger.debug("Cache lookup", key=key, state=FetchState.CACHE_LOOKUP.value)

        pending = self._pending_writes.get(key)
        if pending is not None:
            if pending[1] > self.store.now():
                logger.debug(
                    "Cache hit (pending write)", key=key, state=FetchState.CACHE_HIT.value
                )
                return FetchResult(data=pending[0], cached=True)
            # Expired before its write landed
            del self._pending_writes[key]

        cached = await self.store.get(self.namespace, key)
        if cached is not None:
            logger.debug("Cache hit", key=key, state=FetchState.CACHE_HIT.value)
            return FetchResult(data=cached, cached=True)

        logger.debug("Cache miss", key=key, state=FetchState.CACHE_MISS.value)

        if not self.single_flight:
            data = await self._fetch_and_store(key, fetch_fn, ttl)
            return FetchResult(data=data, cached=False)

        future = self._in_flight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._fetch_and_store(key, fetch_fn, ttl))
            self._in_flight[key] = future
            future.add_done_callback(lambda f, k=key: self._forget_in_flight(k, f))
        else:
            logger.debug("Joining in-flight fetch", key=key)

        # A cancelled caller must not cancel a fetch other callers share.
        data = await asyncio.shield(future)
        return FetchResult(data=data, cached=False)

    def _forget_in_flight(self, key: str, future: asyncio.Future[Any]) -> None:
        if self._in_flight.get(key) is future:
            del self._in_flight[key]
        # Mark a failure as retrieved when every waiter was cancelled.
        if not future.cancelled():
            future.exception()

    async def _fetch_and_store(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: float,
    ) -> T:
        logger.debug("Fetching", key=key, state=FetchState.FETCHING.value)
        try:
            data = await fetch_fn()
        except Exception as e:
            logger.debug("Fetch failed", key=key, state=FetchState.FAILED.value, error=str(e))
            raise

        if data is None:
            logger.debug("Fetch returned no data, not caching", key=key)
            return data

        if not self.store.enabled:
            return data

        self._schedule_write(key, data, ttl)
        return data

    def _schedule_write(self, key: str, data: Any, ttl: float) -> None:
        logger.debug("Scheduling cache write", key=key, state=FetchState.CACHE_WRITE.value)
        task = asyncio.create_task(self._write(key, data, ttl))
        expires_at = self.store.now() + int(ttl * 1000)
        self._pending_writes[key] = (data, expires_at, task)
        self._write_tasks.add(task)
        task.add_done_callback(self._write_tasks.discard)
        task.add_done_callback(lambda t, k=key: self._forget_write(k, t))

    def _forget_write(self, key: str, task: asyncio.Task[None]) -> None:
        pending = self._pending_writes.get(key)
        if pending is not None and pending[2] is task:
            del self._pending_writes[key]

    async def _write(self, key: str, data: Any, ttl: float) -> None:
        written = await self.store.set(self.namespace, key, data, ttl)
        if self.on_write is not None:
            try:
                self.on_write(key, written)
            except Exception as e:
                logger.warning("on_write callback failed", key=key, error=str(e))

    async def drain(self) -> None:
        """Wait until every scheduled cache write has completed."""
        while self._write_tasks:
            await asyncio.gather(*list(self._write_tasks), return_exceptions=True)

    async def invalidate(self, key: str) -> None:
        """Delete a single entry.

        Scheduled writes are allowed to land first so they cannot
        resurrect the entry afterwards.
        """
        await self.drain()
        await self.store.delete(self.namespace, key)
        logger.debug("Invalidated", key=key)

    async def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> int:
        """Delete every key matching a prefix or regular expression.

        A str is treated as a literal prefix; a compiled pattern is applied
        with search(). Lists the whole namespace, so cost is O(n) in the
        number of keys.

        Returns:
            Number of keys deleted.
        """
        regex = re.compile(f"^{re.escape(pattern)}") if isinstance(pattern, str) else pattern

        await self.drain()
        keys = await self.store.get_all_keys(self.namespace)
        matched = [key for key in keys if regex.search(key)]

        await asyncio.gather(*(self.store.delete(self.namespace, key) for key in matched))

        logger.info(
            "Invalidated by pattern",
            pattern=regex.pattern,
            matched=len(matched),
            scanned=len(keys),
        )
        return len(matched)

    async def warm_cache(
        self,
        entries: Iterable[WarmEntry],
        default_ttl: float | None = None,
    ) -> int:
        """Preload entries concurrently, bypassing any fetch.

        Args:
            entries: (key, data), (key, data, ttl) tuples or mappings with
                "key", "data" and optional "ttl".
            default_ttl: TTL for entries that carry none.

        Returns:
            Number of entries submitted.
        """
        fallback_ttl = self.default_ttl if default_ttl is None else default_ttl
        writes = []
        for entry in entries:
            if isinstance(entry, Mapping):
                key, data, ttl = entry["key"], entry["data"], entry.get("ttl")
            elif len(entry) == 3:
                key, data, ttl = entry
            else:
                key, data = entry
                ttl = None
            writes.append(
                self.store.set(self.namespace, key, data, fallback_ttl if ttl is None else ttl)
            )

        await asyncio.gather(*writes)
        logger.info("Cache warmed", entries=len(writes), namespace=self.namespace)
        return len(writes)

    async def clear_all(self) -> None:
        """Clear every namespace of the underlying store."""
        await self.drain()
        await self.store.clear_all()

    async def get_stats(self) -> dict[str, CacheStats]:
        """Stats for every configured namespace."""
        namespaces = self.store.namespaces
        results = await asyncio.gather(*(self.store.get_stats(ns) for ns in namespaces))
        return dict(zip(namespaces, results))
