"""
Data fetching package.

This package handles outbound calls to external providers:
- RequestExecutor: timeout, retry/backoff, rate-limit detection
- FallbackChain: backend proxy first, direct provider on failure
"""

from pulse.data.executor import RequestExecutor, compute_backoff_delay
from pulse.data.fallback import FallbackChain, FallbackResult

__all__ = [
    "FallbackChain",
    "FallbackResult",
    "RequestExecutor",
    "compute_backoff_delay",
]
