"""
Cache package for data persistence.

This package provides caching layers for:
- Backends (base.py, memory_backend.py, sqlite_backend.py): namespaced
  key-value storage of CacheEntry records
- Store (store.py): TTL, lazy expiration, hit accounting, failure degradation
- Manager (manager.py): cache-aside get_or_fetch, invalidation, warming
"""

from pulse.cache.base import KeyValueBackend
from pulse.cache.manager import CacheManager
from pulse.cache.memory_backend import InMemoryBackend
from pulse.cache.sqlite_backend import SQLiteBackend
from pulse.cache.store import PersistentCacheStore

__all__ = [
    "CacheManager",
    "InMemoryBackend",
    "KeyValueBackend",
    "PersistentCacheStore",
    "SQLiteBackend",
]
