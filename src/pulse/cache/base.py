"""
Base classes for caching.

KeyValueBackend is the generic keyed-store interface the persistent cache
store is written against. Backends store whole CacheEntry records, grouped
into a fixed set of namespaces declared when the backend is opened.

Backends raise CacheError on any storage failure; they never swallow errors.
Degrading to "no cache" behavior is the store's job, not the backend's.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from pulse.types import CacheEntry


class KeyValueBackend(ABC):
    """Abstract interface for namespaced cache backends."""

    name: str = "backend"

    @abstractmethod
    async def open(self, namespaces: Sequence[str]) -> None:
        """Open the underlying storage and create the given namespaces."""
        ...

    @abstractmethod
    async def get(self, namespace: str, key: str) -> CacheEntry | None:
        """Get an entry, expired or not."""
        ...

    @abstractmethod
    async def set(self, namespace: str, entry: CacheEntry) -> None:
        """Insert or overwrite an entry."""
        ...

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> None:
        """Delete an entry. Deleting a missing key is not an error."""
        ...

    @abstractmethod
    async def keys(self, namespace: str) -> list[str]:
        """List all keys in a namespace."""
        ...

    @abstractmethod
    async def values(self, namespace: str) -> list[CacheEntry]:
        """List all entries in a namespace."""
        ...

    @abstractmethod
    async def clear(self, namespace: str) -> None:
        """Delete every entry in a namespace."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying storage handle."""
        ...
