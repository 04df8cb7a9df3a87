"""
Custom exception hierarchy for the PULSE data layer.

All exceptions inherit from PulseError, which provides optional context
for structured error handling and logging.

Retry policy is driven by these types:
- APICallError with a 5xx status is retryable, any other status is not
- RateLimitError is never retried automatically
- CacheError never leaves the cache store boundary
- DataFetchError is terminal (retry budget exhausted)
"""

from __future__ import annotations

from typing import Any

import httpx


class PulseError(Exception):
    """Base exception for all PULSE data layer errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(PulseError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing provider API key for a direct call
        - Unknown cache backend name
    """

    pass


class APICallError(PulseError):
    """Raised for a completed request with a non-2xx (and non-429) status.

    Attributes:
        code: Short error code (e.g., "HTTP_ERROR", "PARSE_ERROR").
        status: HTTP status code, if the request completed.
        source: Identifier of the provider that answered.
    """

    def __init__(
        self,
        message: str,
        code: str,
        status: int | None = None,
        source: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = {"code": code, "status": status, "source": source}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.code = code
        self.status = status
        self.source = source

    @property
    def is_server_error(self) -> bool:
        """Whether the status is in the 5xx range."""
        return self.status is not None and 500 <= self.status < 600


class RateLimitError(PulseError):
    """Raised when a provider answers HTTP 429.

    Never retried by the executor. Callers should wait until
    ``reset_time`` (epoch milliseconds) or use a fallback path.
    """

    def __init__(
        self,
        message: str,
        source: str,
        reset_time: int,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = {"source": source, "reset_time": reset_time}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.source = source
        self.reset_time = reset_time

    def retry_after_ms(self, now_ms: int) -> int:
        """Milliseconds to wait before the quota resets (never negative)."""
        return max(0, self.reset_time - now_ms)


class CacheError(PulseError):
    """Raised by cache backends on storage failures.

    Always caught at the PersistentCacheStore boundary and degraded to
    a miss or a no-op.
    """

    def __init__(
        self,
        message: str,
        key: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = {"key": key}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.key = key


class DataFetchError(PulseError):
    """Raised when fetching external data fails for good.

    Context should include:
        - source: The data source that failed
        - attempts: Number of attempts made
        - last_error: String form of the last underlying failure
    """

    def __init__(
        self,
        message: str,
        source: str,
        fallback_used: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx: dict[str, Any] = {"source": source, "fallback_used": fallback_used}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.source = source
        self.fallback_used = fallback_used


class TransportError(PulseError):
    """Network-level failure (connection refused, DNS, timeout).

    Wraps the underlying httpx exception so the retry policy can be
    expressed over PulseError types only.
    """

    def __init__(
        self,
        message: str,
        source: str,
        timed_out: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx: dict[str, Any] = {"source": source, "timed_out": timed_out}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.source = source
        self.timed_out = timed_out


def is_retryable(exc: BaseException) -> bool:
    """Return True if the executor may retry after this failure."""
    if isinstance(exc, RateLimitError):
        return False
    if isinstance(exc, TransportError):
        return True
    if isinstance(exc, APICallError):
        return exc.is_server_error
    return isinstance(exc, httpx.TransportError)
