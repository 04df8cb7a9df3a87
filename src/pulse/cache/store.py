"""
Persistent, namespaced cache store with per-entry TTL.

Expiry is lazy: there is no background sweeper. An expired entry is
detected when it is read, deleted, and reported as absent.

Every storage failure is caught here and degraded to "no cache" behavior:
reads miss, writes and deletes become no-ops. Callers never see a
CacheError.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Sequence
from typing import Any

from pulse.cache.base import KeyValueBackend
from pulse.cache.memory_backend import InMemoryBackend
from pulse.cache.sqlite_backend import SQLiteBackend
from pulse.config import Settings
from pulse.exceptions import ConfigurationError
from pulse.logging import get_logger
from pulse.types import CacheEntry, CacheStats, now_ms

logger = get_logger(__name__)


class PersistentCacheStore:
    """Namespaced TTL cache over a KeyValueBackend.

    The namespace set is fixed at construction. The backend is opened on
    first use; concurrent first users share a single in-flight
    initialization.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        namespaces: Sequence[str],
        enabled: bool = True,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize cache store.

        Args:
            backend: Storage backend (not yet opened).
            namespaces: Namespace names to create on initialization.
            enabled: When False, get() and get_entry() always miss and set() is
                a no-op.
            clock: Returns the current time in epoch milliseconds.
        """
        if not namespaces:
            raise ConfigurationError("At least one cache namespace is required")

        self.backend = backend
        self.namespaces = tuple(namespaces)
        self.enabled = enabled
        self._clock = clock
        self._ready = False
        self._init_task: asyncio.Future[None] | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> PersistentCacheStore:
        """Build a store with the backend selected by CACHE_BACKEND."""
        backend: KeyValueBackend
        if settings.CACHE_BACKEND == "sqlite":
            backend = SQLiteBackend(settings.cache_db_path)
        else:
            backend = InMemoryBackend()
        return cls(
            backend,
            settings.CACHE_NAMESPACES,
            enabled=settings.CACHE_ENABLED,
        )

    async def __aenter__(self) -> PersistentCacheStore:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def now(self) -> int:
        """Current time in epoch ms, as used for entry timestamps."""
        return self._clock()

    @property
    def is_initialized(self) -> bool:
        return self._ready

    async def init(self) -> None:
        """Open the backend once, however many callers race here.

        A failed initialization is forgotten so a later call can retry.

        Raises:
            CacheError: If the backend cannot be opened.
        """
        if self._ready:
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._open())

        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _open(self) -> None:
        await self.backend.open(self.namespaces)
        self._ready = True
        logger.debug("Cache store initialized", backend=self.backend.name)

    async def close(self) -> None:
        """Wait for background work, then close the backend."""
        await self.drain()
        await self.backend.close()
        self._ready = False
        self._init_task = None

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Await all fire-and-forget work (hit counts) started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def get(self, namespace: str, key: str) -> Any | None:
        """Get live data for a key.

        Expired entries are deleted and reported as absent. A hit schedules
        a best-effort hit_count increment and returns immediately.

        Returns:
            The cached data, or None on a miss, expiry, or storage failure.
        """
        if not self.enabled:
            return None

        try:
            await self.init()
            entry = await self.backend.get(namespace, key)
        except Exception as e:
            logger.warning("Cache get failed", namespace=namespace, key=key, error=str(e))
            return None

        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            await self._purge_expired(namespace, entry)
            return None

        self._spawn(self._increment_hit_count(namespace, entry))
        return entry.data

    async def get_entry(self, namespace: str, key: str) -> CacheEntry | None:
        """Get the raw live entry (with metadata) for diagnostics."""
        if not self.enabled:
            return None
        try:
            await self.init()
            entry = await self.backend.get(namespace, key)
        except Exception as e:
            logger.warning("Cache get failed", namespace=namespace, key=key, error=str(e))
            return None

        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry

    async def set(
        self,
        namespace: str,
        key: str,
        data: Any,
        ttl_seconds: float,
    ) -> bool:
        """Store data under key, overwriting any existing entry.

        Failures are logged, never raised.

        Returns:
            Whether the entry was written.
        """
        if not self.enabled:
            return False

        entry = CacheEntry.create(key, data, ttl_seconds, timestamp=self._clock())
        try:
            await self.init()
            await self.backend.set(namespace, entry)
        except Exception as e:
            logger.warning("Cache set failed", namespace=namespace, key=key, error=str(e))
            return False

        logger.debug("Cache set", namespace=namespace, key=key, ttl=ttl_seconds)
        return True

    async def delete(self, namespace: str, key: str) -> None:
        try:
            await self.init()
            await self.backend.delete(namespace, key)
        except Exception as e:
            logger.warning(
                "Cache delete failed", namespace=namespace, key=key, error=str(e)
            )

    async def clear(self, namespace: str) -> None:
        """Delete every entry in one namespace."""
        try:
            await self.init()
            await self.backend.clear(namespace)
        except Exception as e:
            logger.warning("Cache clear failed", namespace=namespace, error=str(e))
            return

        logger.info("Cache namespace cleared", namespace=namespace)

    async def clear_all(self) -> None:
        """Clear every configured namespace."""
        await asyncio.gather(*(self.clear(ns) for ns in self.namespaces))

    async def get_all_keys(self, namespace: str) -> list[str]:
        """List all keys in a namespace, including expired ones not yet purged."""
        try:
            await self.init()
            return await self.backend.keys(namespace)
        except Exception as e:
            logger.warning("Cache key listing failed", namespace=namespace, error=str(e))
            return []

    async def get_stats(self, namespace: str) -> CacheStats:
        """Compute entry, expiry and hit statistics for a namespace.

        total_hits is advisory (see CacheEntry.hit_count).
        """
        try:
            await self.init()
            entries = await self.backend.values(namespace)
        except Exception as e:
            logger.warning("Cache stats failed", namespace=namespace, error=str(e))
            return CacheStats()

        now = self._clock()
        return CacheStats(
            total_entries=len(entries),
            expired_not_yet_purged=sum(1 for e in entries if e.is_expired(now)),
            total_hits=sum(e.hit_count for e in entries),
        )

    async def _purge_expired(self, namespace: str, seen: CacheEntry) -> None:
        """Delete an expired entry unless it was rewritten since we read it."""
        try:
            current = await self.backend.get(namespace, seen.key)
            if current is not None and current.timestamp == seen.timestamp:
                await self.backend.delete(namespace, seen.key)
                logger.debug("Purged expired entry", namespace=namespace, key=seen.key)
        except Exception as e:
            logger.warning(
                "Expired entry purge failed",
                namespace=namespace,
                key=seen.key,
                error=str(e),
            )

    async def _increment_hit_count(self, namespace: str, seen: CacheEntry) -> None:
        # Read-modify-write without a lock: concurrent hits may under-count.
        try:
            current = await self.backend.get(namespace, seen.key)
            if current is None or current.timestamp != seen.timestamp:
                return
            current.hit_count += 1
            await self.backend.set(namespace, current)
        except Exception as e:
            logger.debug("Hit count update failed", key=seen.key, error=str(e))
