"""
Pytest configuration and fixtures for PULSE tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator, Generator
from unittest.mock import patch

import pytest

from pulse.cache.memory_backend import InMemoryBackend
from pulse.cache.store import PersistentCacheStore
from pulse.config import Settings, clear_settings_cache


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing.

    Uses the in-memory backend and a fake Finnhub key.
    """
    env_vars = {
        "CACHE_ENABLED": "true",
        "CACHE_BACKEND": "memory",
        "CACHE_DIR": ".test_cache",
        "CACHE_NAMESPACES": "quotes,crypto,news,metadata",
        "CACHE_DEFAULT_NAMESPACE": "quotes",
        "FINNHUB_API_KEY": "test-finnhub-key",
        "REQUEST_TIMEOUT": "2.5",
        "REQUEST_RETRIES": "2",
        "REQUEST_RETRY_DELAY": "0.5",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        # Clear any cached settings
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration.

    Uses temp_dir for the cache directory.
    """
    with patch.dict(os.environ, {"CACHE_DIR": str(temp_dir / "cache")}):
        clear_settings_cache()
        from pulse.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def memory_backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
async def memory_store(
    memory_backend: InMemoryBackend, clock: FakeClock
) -> AsyncGenerator[PersistentCacheStore, None]:
    """In-memory store with quotes and crypto namespaces on the fake clock."""
    store = PersistentCacheStore(memory_backend, ["quotes", "crypto"], clock=clock)
    yield store
    await store.close()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
