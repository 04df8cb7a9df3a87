"""
Tests for the cache-aside manager.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import pytest

from pulse.cache.manager import CacheManager
from pulse.cache.memory_backend import InMemoryBackend
from pulse.cache.store import PersistentCacheStore
from pulse.exceptions import APICallError
from pulse.types import CacheEntry


class CountingFetch:
    """Fetch function that counts calls and can be held open."""

    def __init__(self, result: Any = None, error: Exception | None = None) -> None:
        self.result = {"price": 100.0} if result is None else result
        self.error = error
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self) -> Any:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


async def wait_for_calls(fetch: CountingFetch, calls: int) -> None:
    """Let the loop run until fetch has been entered the given number of times."""
    while fetch.calls < calls:
        await asyncio.sleep(0)
    for _ in range(5):
        await asyncio.sleep(0)


class UnwritableBackend(InMemoryBackend):
    async def set(self, namespace: str, entry: CacheEntry) -> None:
        raise OSError("disk full")


class HeldWriteBackend(InMemoryBackend):
    """Backend whose writes block until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def set(self, namespace: str, entry: CacheEntry) -> None:
        await self.release.wait()
        await super().set(namespace, entry)


@pytest.fixture
def manager(memory_store: PersistentCacheStore) -> CacheManager:
    return CacheManager(memory_store, namespace="quotes", default_ttl=15)


class TestGetOrFetch:
    """Tests for the cache-aside read path."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, manager: CacheManager) -> None:
        """Back-to-back calls: the second is served from cache."""
        fetch = CountingFetch({"price": 190.5})

        first = await manager.get_or_fetch("stock:quote:AAPL", fetch, ttl=15)
        second = await manager.get_or_fetch("stock:quote:AAPL", fetch, ttl=15)

        assert first.data == {"price": 190.5}
        assert first.cached is False
        assert second.data == {"price": 190.5}
        assert second.cached is True
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_hit_after_write_lands(self, manager: CacheManager) -> None:
        fetch = CountingFetch()
        await manager.get_or_fetch("k", fetch)
        await manager.drain()

        result = await manager.get_or_fetch("k", fetch)
        assert result.cached is True
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_refetch_after_expiry(self, manager: CacheManager, clock) -> None:
        fetch = CountingFetch()
        await manager.get_or_fetch("k", fetch, ttl=1)
        await manager.drain()

        clock.advance(1)
        result = await manager.get_or_fetch("k", fetch, ttl=1)

        assert result.cached is False
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_unlanded_write_served_until_ttl_passes(self, clock) -> None:
        """A write still in flight counts as a hit only while its TTL holds."""
        backend = HeldWriteBackend()
        store = PersistentCacheStore(backend, ["quotes"], clock=clock)
        manager = CacheManager(store)
        fetch = CountingFetch()

        await manager.get_or_fetch("k", fetch, ttl=1)
        clock.advance(0.5)
        assert (await manager.get_or_fetch("k", fetch, ttl=1)).cached is True

        clock.advance(5)
        result = await manager.get_or_fetch("k", fetch, ttl=1)

        assert result.cached is False
        assert fetch.calls == 2

        backend.release.set()
        await manager.drain()
        await store.close()

    @pytest.mark.asyncio
    async def test_default_ttl_used(
        self, manager: CacheManager, memory_store: PersistentCacheStore
    ) -> None:
        await manager.get_or_fetch("k", CountingFetch())
        await manager.drain()

        entry = await memory_store.get_entry("quotes", "k")
        assert entry is not None
        assert entry.ttl_seconds == 15

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_and_is_not_cached(self, manager: CacheManager) -> None:
        failing = CountingFetch(error=APICallError("HTTP 404", code="HTTP_ERROR", status=404))

        with pytest.raises(APICallError):
            await manager.get_or_fetch("k", failing)
        await manager.drain()

        assert manager.in_flight_keys == []
        working = CountingFetch({"price": 1})
        result = await manager.get_or_fetch("k", working)
        assert result.cached is False
        assert working.calls == 1

    @pytest.mark.asyncio
    async def test_none_result_not_cached(self, manager: CacheManager) -> None:
        calls = 0

        async def fetch_nothing() -> None:
            nonlocal calls
            calls += 1
            return None

        await manager.get_or_fetch("k", fetch_nothing)
        await manager.drain()
        result = await manager.get_or_fetch("k", fetch_nothing)

        assert result.data is None
        assert result.cached is False
        assert calls == 2

    @pytest.mark.asyncio
    async def test_failed_write_does_not_fail_call(self, clock) -> None:
        store = PersistentCacheStore(UnwritableBackend(), ["quotes"], clock=clock)
        manager = CacheManager(store)
        fetch = CountingFetch()

        result = await manager.get_or_fetch("k", fetch)
        await manager.drain()

        assert result.data == {"price": 100.0}
        assert (await manager.get_or_fetch("k", fetch)).cached is False
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_disabled_cache_always_fetches(self, memory_backend: InMemoryBackend) -> None:
        store = PersistentCacheStore(memory_backend, ["quotes"], enabled=False)
        manager = CacheManager(store)
        fetch = CountingFetch()

        first = await manager.get_or_fetch("k", fetch)
        second = await manager.get_or_fetch("k", fetch)

        assert not first.cached
        assert not second.cached
        assert fetch.calls == 2


class TestSingleFlight:
    """Concurrent misses on one key."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, manager: CacheManager) -> None:
        fetch = CountingFetch({"price": 42})
        fetch.gate = asyncio.Event()

        tasks = [asyncio.create_task(manager.get_or_fetch("k", fetch)) for _ in range(5)]
        await wait_for_calls(fetch, 1)
        assert manager.in_flight_keys == ["k"]

        fetch.gate.set()
        results = await asyncio.gather(*tasks)

        assert fetch.calls == 1
        assert all(r.data == {"price": 42} for r in results)
        assert manager.in_flight_keys == []

    @pytest.mark.asyncio
    async def test_concurrent_misses_without_single_flight(
        self, memory_store: PersistentCacheStore
    ) -> None:
        manager = CacheManager(memory_store, single_flight=False)
        fetch = CountingFetch()
        fetch.gate = asyncio.Event()

        tasks = [asyncio.create_task(manager.get_or_fetch("k", fetch)) for _ in range(3)]
        await wait_for_calls(fetch, 3)
        fetch.gate.set()
        results = await asyncio.gather(*tasks)

        assert fetch.calls == 3
        assert all(not r.cached for r in results)

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_caller(self, manager: CacheManager) -> None:
        fetch = CountingFetch(error=APICallError("HTTP 400", code="HTTP_ERROR", status=400))
        fetch.gate = asyncio.Event()

        tasks = [asyncio.create_task(manager.get_or_fetch("k", fetch)) for _ in range(3)]
        await wait_for_calls(fetch, 1)
        fetch.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert fetch.calls == 1
        assert all(isinstance(r, APICallError) for r in results)

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_fetch(
        self, manager: CacheManager
    ) -> None:
        fetch = CountingFetch({"price": 7})
        fetch.gate = asyncio.Event()

        first = asyncio.create_task(manager.get_or_fetch("k", fetch))
        second = asyncio.create_task(manager.get_or_fetch("k", fetch))
        await wait_for_calls(fetch, 1)

        first.cancel()
        fetch.gate.set()
        result = await second

        assert result.data == {"price": 7}
        assert first.cancelled()
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_different_keys_fetch_independently(self, manager: CacheManager) -> None:
        fetch = CountingFetch()
        await asyncio.gather(
            manager.get_or_fetch("a", fetch),
            manager.get_or_fetch("b", fetch),
        )
        assert fetch.calls == 2


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_single_key(self, manager: CacheManager) -> None:
        fetch = CountingFetch()
        await manager.get_or_fetch("k", fetch)

        # Write may still be pending; it must not resurrect the entry
        await manager.invalidate("k")
        await manager.drain()

        result = await manager.get_or_fetch("k", fetch)
        assert result.cached is False
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_pattern_regex(
        self, manager: CacheManager, memory_store: PersistentCacheStore
    ) -> None:
        await manager.warm_cache(
            [
                ("stock:quote:AAPL", {"price": 1}),
                ("stock:quote:MSFT", {"price": 2}),
                ("crypto:price:BTC", {"price": 3}),
            ]
        )

        removed = await manager.invalidate_pattern(re.compile(r"^stock:"))

        assert removed == 2
        assert await memory_store.get_all_keys("quotes") == ["crypto:price:BTC"]

    @pytest.mark.asyncio
    async def test_invalidate_pattern_string_is_literal_prefix(
        self, manager: CacheManager, memory_store: PersistentCacheStore
    ) -> None:
        await manager.warm_cache([("a.b:1", 1), ("axb:1", 2), ("za.b:1", 3)])

        removed = await manager.invalidate_pattern("a.b")

        assert removed == 1
        assert sorted(await memory_store.get_all_keys("quotes")) == ["axb:1", "za.b:1"]

    @pytest.mark.asyncio
    async def test_invalidate_pattern_includes_pending_writes(
        self, manager: CacheManager, memory_store: PersistentCacheStore
    ) -> None:
        await manager.get_or_fetch("stock:quote:AAPL", CountingFetch())

        assert await manager.invalidate_pattern("stock:") == 1
        assert await memory_store.get_all_keys("quotes") == []

    @pytest.mark.asyncio
    async def test_invalidate_pattern_no_match(self, manager: CacheManager) -> None:
        await manager.warm_cache([("k", 1)])
        assert await manager.invalidate_pattern(re.compile("zzz")) == 0


class TestWarmCache:
    @pytest.mark.asyncio
    async def test_accepts_tuples_and_mappings(
        self, manager: CacheManager, memory_store: PersistentCacheStore
    ) -> None:
        count = await manager.warm_cache(
            [
                ("a", 1),
                ("b", 2, 300),
                {"key": "c", "data": 3, "ttl": 5},
                {"key": "d", "data": 4},
            ],
            default_ttl=30,
        )

        assert count == 4
        ttls = {}
        for key in "abcd":
            entry = await memory_store.get_entry("quotes", key)
            assert entry is not None
            ttls[key] = entry.ttl_seconds
        assert ttls == {"a": 30, "b": 300, "c": 5, "d": 30}

    @pytest.mark.asyncio
    async def test_warmed_entries_are_hits(self, manager: CacheManager) -> None:
        await manager.warm_cache([("k", {"price": 9})])
        fetch = CountingFetch()

        result = await manager.get_or_fetch("k", fetch)

        assert result.cached is True
        assert result.data == {"price": 9}
        assert fetch.calls == 0


class TestObservability:
    @pytest.mark.asyncio
    async def test_on_write_reports_outcome(self, memory_store: PersistentCacheStore) -> None:
        writes: list[tuple[str, bool]] = []
        manager = CacheManager(memory_store, on_write=lambda k, ok: writes.append((k, ok)))

        await manager.get_or_fetch("k", CountingFetch())
        await manager.drain()

        assert writes == [("k", True)]

    @pytest.mark.asyncio
    async def test_on_write_reports_failed_write(self, clock) -> None:
        writes: list[tuple[str, bool]] = []
        store = PersistentCacheStore(UnwritableBackend(), ["quotes"], clock=clock)
        manager = CacheManager(store, on_write=lambda k, ok: writes.append((k, ok)))

        await manager.get_or_fetch("k", CountingFetch())
        await manager.drain()

        assert writes == [("k", False)]

    @pytest.mark.asyncio
    async def test_on_write_errors_are_contained(self, memory_store: PersistentCacheStore) -> None:
        def explode(key: str, written: bool) -> None:
            raise RuntimeError("observer bug")

        manager = CacheManager(memory_store, on_write=explode)
        result = await manager.get_or_fetch("k", CountingFetch())
        await manager.drain()

        assert result.data == {"price": 100.0}

    @pytest.mark.asyncio
    async def test_stats_per_namespace(
        self, manager: CacheManager, memory_store: PersistentCacheStore
    ) -> None:
        await manager.warm_cache([("a", 1), ("b", 2)])
        await memory_store.set("crypto", "c", 3, 10)

        stats = await manager.get_stats()

        assert set(stats) == {"quotes", "crypto"}
        assert stats["quotes"].total_entries == 2
        assert stats["crypto"].total_entries == 1

    @pytest.mark.asyncio
    async def test_clear_all(self, manager: CacheManager, memory_store: PersistentCacheStore) -> None:
        await manager.get_or_fetch("k", CountingFetch())
        await memory_store.set("crypto", "c", 3, 10)

        await manager.clear_all()

        assert await memory_store.get_all_keys("quotes") == []
        assert await memory_store.get_all_keys("crypto") == []
