"""
Primary/secondary fallback chaining.

Domain services usually reach providers through an intermediary (the
backend proxy). When that path fails and fallback is enabled, the call is
retried transparently against the provider directly.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import httpx

from pulse.exceptions import DataFetchError, PulseError
from pulse.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FallbackResult(Generic[T]):
    """Data plus which path produced it."""

    data: T
    source: str
    fallback_used: bool


class FallbackChain:
    """Runs a primary call and, on failure, a secondary one.

    Failures that trigger the fallback are PulseError (including
    RateLimitError, since the direct path has its own quota) and httpx
    errors. Anything else is a bug and propagates unchanged.
    """

    def __init__(
        self,
        primary_source: str,
        secondary_source: str,
        fallback_enabled: bool = True,
        primary_enabled: bool = True,
    ) -> None:
        self.primary_source = primary_source
        self.secondary_source = secondary_source
        self.fallback_enabled = fallback_enabled
        self.primary_enabled = primary_enabled

    async def call(
        self,
        primary: Callable[[], Awaitable[T]],
        secondary: Callable[[], Awaitable[T]],
        description: str = "request",
    ) -> FallbackResult[T]:
        """Run primary, falling back to secondary if allowed.

        Raises:
            The primary's error when fallback is disabled.
            DataFetchError(fallback_used=True) when both paths fail.
        """
        if not self.primary_enabled:
            data = await secondary()
            return FallbackResult(data=data, source=self.secondary_source, fallback_used=False)

        try:
            data = await primary()
            return FallbackResult(data=data, source=self.primary_source, fallback_used=False)
        except (PulseError, httpx.HTTPError) as primary_error:
            if not self.fallback_enabled:
                raise
            logger.warning(
                "Primary path failed, falling back",
                description=description,
                primary=self.primary_source,
                secondary=self.secondary_source,
                error=str(primary_error),
            )

        try:
            data = await secondary()
        except (PulseError, httpx.HTTPError) as secondary_error:
            raise DataFetchError(
                f"Both {self.primary_source} and {self.secondary_source} failed "
                f"for {description}",
                source=self.secondary_source,
                fallback_used=True,
                context={"error": str(secondary_error)},
            ) from secondary_error

        return FallbackResult(data=data, source=self.secondary_source, fallback_used=True)
