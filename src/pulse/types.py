"""
Core types for the PULSE data layer.

This module defines the fundamental data structures used throughout the system:
- FetchState enum naming the request/cache lifecycle states
- Mutable CacheEntry dataclass (hit_count changes on reads)
- Frozen dataclasses for values handed to callers (NormalizedResponse,
  RateLimitInfo, CacheStats, FetchResult)
- RequestConfig for per-call executor settings
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from uuid6 import uuid7

T = TypeVar("T")


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "req").

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


class FetchState(str, Enum):
    """States of one logical request + cache flow."""

    COLD = "cold"
    CACHE_LOOKUP = "cache_lookup"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    FETCHING = "fetching"
    FETCH_RETRY = "fetch_retry"
    FETCH_SUCCESS = "fetch_success"
    CACHE_WRITE = "cache_write"
    DONE = "done"
    FETCH_EXHAUSTED = "fetch_exhausted"
    FAILED = "failed"


@dataclass
class CacheEntry:
    """A cached payload with TTL metadata.

    ``expires_at`` is derived from ``timestamp + ttl_seconds * 1000`` and
    never stored independently of them. ``hit_count`` is advisory: it is
    incremented without any locking and may under-count under concurrent
    reads.
    """

    key: str
    data: Any
    timestamp: int  # epoch ms
    ttl_seconds: float
    hit_count: int = 0

    @property
    def expires_at(self) -> int:
        """Expiry instant in epoch milliseconds."""
        return self.timestamp + int(self.ttl_seconds * 1000)

    def is_expired(self, now: int | None = None) -> bool:
        """An entry expiring exactly now is already expired."""
        current = now_ms() if now is None else now
        return self.expires_at <= current

    @classmethod
    def create(
        cls,
        key: str,
        data: Any,
        ttl_seconds: float,
        timestamp: int | None = None,
    ) -> CacheEntry:
        """Factory method to create a fresh entry stamped with the current time."""
        return cls(
            key=key,
            data=data,
            timestamp=now_ms() if timestamp is None else timestamp,
            ttl_seconds=ttl_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "data": self.data,
            "timestamp": self.timestamp,
            "ttl_seconds": self.ttl_seconds,
            "expires_at": self.expires_at,
            "hit_count": self.hit_count,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CacheEntry:
        return cls(
            key=raw["key"],
            data=raw.get("data"),
            timestamp=int(raw["timestamp"]),
            ttl_seconds=raw["ttl_seconds"],
            hit_count=int(raw.get("hit_count", 0)),
        )


@dataclass(frozen=True)
class RateLimitInfo:
    """Provider quota state parsed from X-RateLimit-* headers."""

    limit: int | None
    remaining: int | None
    reset: int  # epoch ms
    source: str

    def is_limited(self, now: int | None = None) -> bool:
        """True while the quota is exhausted and has not reset yet."""
        current = now_ms() if now is None else now
        return self.remaining == 0 and current < self.reset


@dataclass(frozen=True)
class NormalizedResponse(Generic[T]):
    """Uniform response shape returned for every external call."""

    data: T
    success: bool
    timestamp: int  # epoch ms
    source: str
    cached: bool = False
    error: str | None = None


@dataclass(frozen=True)
class RequestConfig:
    """Per-call settings for RequestExecutor.request().

    Any field left as None falls back to the executor defaults.
    """

    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str | int | float | bool] | None = None
    body: Any = None
    timeout: float | None = None  # seconds
    retries: int | None = None
    retry_delay: float | None = None  # seconds
    exponential_backoff: bool | None = None


@dataclass(frozen=True)
class CacheStats:
    """Per-namespace cache statistics."""

    total_entries: int = 0
    expired_not_yet_purged: int = 0
    total_hits: int = 0


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Result of CacheManager.get_or_fetch()."""

    data: T
    cached: bool
