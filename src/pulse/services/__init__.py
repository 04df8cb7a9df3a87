"""
Domain services and their wiring.

build_services() constructs the whole object graph explicitly from
settings. Nothing here is a module-level singleton, so tests can build
their own graph with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass

from pulse.cache.manager import CacheManager
from pulse.cache.store import PersistentCacheStore
from pulse.config import Settings, get_settings
from pulse.data.executor import RequestExecutor
from pulse.services.market import (
    BackendQuoteProvider,
    CoinGeckoPriceProvider,
    CryptoService,
    FinnhubQuoteProvider,
    QuoteService,
)


@dataclass
class Services:
    """Everything a caller needs, plus the resources to close."""

    store: PersistentCacheStore
    quotes_cache: CacheManager
    crypto_cache: CacheManager
    executors: list[RequestExecutor]
    quotes: QuoteService
    crypto: CryptoService

    async def close(self) -> None:
        for executor in self.executors:
            await executor.close()
        await self.quotes_cache.drain()
        await self.crypto_cache.drain()
        await self.store.close()


def build_services(settings: Settings | None = None) -> Services:
    """Wire store, cache managers, executors and services from settings."""
    settings = settings or get_settings()
    if settings.CACHE_BACKEND == "sqlite":
        settings.ensure_directories()

    store = PersistentCacheStore.from_settings(settings)
    quotes_cache = CacheManager(
        store,
        namespace="quotes" if "quotes" in store.namespaces else settings.CACHE_DEFAULT_NAMESPACE,
        default_ttl=settings.TTL_STOCK_QUOTE,
        single_flight=settings.CACHE_SINGLE_FLIGHT,
    )
    crypto_cache = CacheManager(
        store,
        namespace="crypto" if "crypto" in store.namespaces else settings.CACHE_DEFAULT_NAMESPACE,
        default_ttl=settings.TTL_CRYPTO_PRICE,
        single_flight=settings.CACHE_SINGLE_FLIGHT,
    )

    finnhub = RequestExecutor(
        settings.FINNHUB_BASE_URL,
        default_headers={"X-Finnhub-Token": settings.FINNHUB_API_KEY or ""},
        source="finnhub",
        settings=settings,
    )
    backend = RequestExecutor(settings.BACKEND_URL, source="backend", settings=settings)
    coingecko = RequestExecutor(settings.COINGECKO_BASE_URL, source="coingecko", settings=settings)

    quotes = QuoteService(
        quotes_cache,
        direct=FinnhubQuoteProvider(finnhub, api_key=settings.FINNHUB_API_KEY),
        backend=BackendQuoteProvider(backend) if settings.BACKEND_ENABLED else None,
        fallback_enabled=settings.BACKEND_FALLBACK,
        ttl=settings.TTL_STOCK_QUOTE,
    )
    crypto = CryptoService(
        crypto_cache,
        CoinGeckoPriceProvider(coingecko),
        ttl=settings.TTL_CRYPTO_PRICE,
    )

    return Services(
        store=store,
        quotes_cache=quotes_cache,
        crypto_cache=crypto_cache,
        executors=[finnhub, backend, coingecko],
        quotes=quotes,
        crypto=crypto,
    )
