"""
In-memory cache backend.

Dict-of-dicts storage for tests and for running with persistence disabled.
Entries are copied on the way in and out so callers mutating a returned
entry (e.g. bumping hit_count) do not write through without a set().
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace

from pulse.cache.base import KeyValueBackend
from pulse.exceptions import CacheError
from pulse.types import CacheEntry


class InMemoryBackend(KeyValueBackend):
    """Process-local backend keeping entries in dictionaries."""

    name = "memory"

    def __init__(self) -> None:
        self._stores: dict[str, dict[str, CacheEntry]] | None = None
        self.open_count = 0

    async def open(self, namespaces: Sequence[str]) -> None:
        self.open_count += 1
        self._stores = {ns: {} for ns in namespaces}

    def _store(self, namespace: str, key: str) -> dict[str, CacheEntry]:
        if self._stores is None:
            raise CacheError("Backend not opened", key)
        try:
            return self._stores[namespace]
        except KeyError:
            raise CacheError(
                f"Unknown namespace {namespace!r}",
                key,
                context={"namespace": namespace},
            ) from None

    async def get(self, namespace: str, key: str) -> CacheEntry | None:
        entry = self._store(namespace, key).get(key)
        return replace(entry) if entry is not None else None

    async def set(self, namespace: str, entry: CacheEntry) -> None:
        self._store(namespace, entry.key)[entry.key] = replace(entry)

    async def delete(self, namespace: str, key: str) -> None:
        self._store(namespace, key).pop(key, None)

    async def keys(self, namespace: str) -> list[str]:
        return list(self._store(namespace, namespace).keys())

    async def values(self, namespace: str) -> list[CacheEntry]:
        return [replace(e) for e in self._store(namespace, namespace).values()]

    async def clear(self, namespace: str) -> None:
        self._store(namespace, namespace).clear()

    async def close(self) -> None:
        self._stores = None
