"""
Market data services.

Stock quotes and crypto prices served through the cache-aside manager.
Provider adapters do the thin normalization of provider payloads; the
services own cache keys and TTLs.

Cache keys:
    stock:quote:{SYMBOL}
    crypto:price:{SYMBOL}
    crypto:batch:{SYM1,SYM2,...}  (sorted)
"""

from __future__ import annotations

import asyncio
from typing import Any

from pulse.cache.manager import CacheManager
from pulse.data.executor import RequestExecutor
from pulse.data.fallback import FallbackChain
from pulse.exceptions import APICallError, ConfigurationError
from pulse.logging import get_logger

logger = get_logger(__name__)

CRYPTO_ID_MAP: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "DOGE": "dogecoin",
    "ADA": "cardano",
    "XRP": "ripple",
}

STOCK_QUOTE_PREFIX = "stock:quote:"


def _normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


class FinnhubQuoteProvider:
    """Direct stock quotes from Finnhub."""

    source_name = "finnhub"

    def __init__(self, executor: RequestExecutor, api_key: str | None = None) -> None:
        self.executor = executor
        self.api_key = api_key

    async def get_quote(self, symbol: str) -> dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError(
                "FINNHUB_API_KEY not configured",
                context={"symbol": symbol},
            )

        response = await self.executor.get("/quote", {"symbol": symbol})
        raw = response.data or {}
        return {
            "symbol": symbol,
            "price": raw.get("c"),
            "change": raw.get("d"),
            "change_percent": raw.get("dp"),
            "open": raw.get("o"),
            "high": raw.get("h"),
            "low": raw.get("l"),
            "previous_close": raw.get("pc"),
            # Finnhub reports epoch seconds
            "timestamp": int(raw["t"]) * 1000 if raw.get("t") else response.timestamp,
        }


class BackendQuoteProvider:
    """Stock quotes through the PULSE backend proxy."""

    source_name = "backend"

    def __init__(self, executor: RequestExecutor) -> None:
        self.executor = executor

    async def get_quote(self, symbol: str) -> dict[str, Any]:
        response = await self.executor.get(f"/api/market/quote/{symbol}")
        payload = response.data or {}
        data = payload.get("data") if isinstance(payload, dict) else None
        if not data:
            raise APICallError(
                payload.get("error", "Backend returned no quote data")
                if isinstance(payload, dict)
                else "Backend returned no quote data",
                code="EMPTY_RESPONSE",
                source=self.source_name,
                context={"symbol": symbol},
            )
        return {
            "symbol": symbol,
            "price": data.get("price"),
            "change": data.get("change"),
            "change_percent": data.get("changePercent"),
            "open": data.get("open"),
            "high": data.get("high"),
            "low": data.get("low"),
            "previous_close": data.get("previousClose"),
            "timestamp": data.get("timestamp", response.timestamp),
        }


class CoinGeckoPriceProvider:
    """Crypto spot prices from CoinGecko's simple price endpoint."""

    source_name = "coingecko"

    def __init__(self, executor: RequestExecutor) -> None:
        self.executor = executor

    async def get_simple_prices(self, symbols: list[str]) -> dict[str, Any]:
        ids = [CRYPTO_ID_MAP.get(s, s.lower()) for s in symbols]
        response = await self.executor.get(
            "/simple/price",
            {
                "ids": ",".join(ids),
                "vs_currencies": "usd",
                "include_24hr_change": True,
                "include_market_cap": True,
                "include_24hr_vol": True,
            },
        )
        return response.data or {}

    def transform(self, symbol: str, prices: dict[str, Any]) -> dict[str, Any]:
        coin_id = CRYPTO_ID_MAP.get(symbol, symbol.lower())
        raw = prices.get(coin_id)
        if not raw:
            raise APICallError(
                f"No price returned for {symbol}",
                code="NOT_FOUND",
                source=self.source_name,
                context={"coin_id": coin_id},
            )
        return {
            "symbol": symbol,
            "price": raw.get("usd"),
            "change_percent_24h": raw.get("usd_24h_change"),
            "market_cap": raw.get("usd_market_cap"),
            "volume_24h": raw.get("usd_24h_vol"),
        }


class QuoteService:
    """Stock quotes with caching and backend-to-direct fallback."""

    def __init__(
        self,
        cache: CacheManager,
        direct: FinnhubQuoteProvider,
        backend: BackendQuoteProvider | None = None,
        fallback_enabled: bool = True,
        ttl: float = 15,
    ) -> None:
        """Initialize quote service.

        Args:
            cache: Cache manager for the quotes namespace.
            direct: Provider called directly (secondary path).
            backend: Proxy provider tried first; None skips straight to direct.
            fallback_enabled: Use the direct path when the backend fails.
            ttl: Quote TTL in seconds.
        """
        self.cache = cache
        self.direct = direct
        self.backend = backend
        self.ttl = ttl
        self.chain = FallbackChain(
            primary_source=BackendQuoteProvider.source_name,
            secondary_source=direct.source_name,
            fallback_enabled=fallback_enabled,
            primary_enabled=backend is not None,
        )

    @staticmethod
    def cache_key(symbol: str) -> str:
        return f"{STOCK_QUOTE_PREFIX}{_normalize_symbol(symbol)}"

    async def get_quote(self, symbol: str) -> dict[str, Any]:
        """Get a stock quote.

        Returns:
            Quote dict with price fields plus ``cached`` and ``source``
            ("cache" on a hit, else the provider that answered).
        """
        symbol = _normalize_symbol(symbol)

        async def fetch() -> dict[str, Any]:
            result = await self.chain.call(
                lambda: self.backend.get_quote(symbol),  # type: ignore[union-attr]
                lambda: self.direct.get_quote(symbol),
                description=f"quote {symbol}",
            )
            return {**result.data, "provider": result.source}

        result = await self.cache.get_or_fetch(self.cache_key(symbol), fetch, self.ttl)
        return {
            **result.data,
            "cached": result.cached,
            "source": "cache" if result.cached else result.data["provider"],
        }

    async def get_batch_quotes(self, symbols: list[str]) -> list[dict[str, Any]]:
        """Get several quotes concurrently, dropping the ones that fail."""
        results = await asyncio.gather(
            *(self.get_quote(s) for s in symbols), return_exceptions=True
        )
        quotes = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                logger.warning("Quote failed in batch", symbol=symbol, error=str(result))
                continue
            quotes.append(result)
        return quotes

    async def invalidate_quote(self, symbol: str) -> None:
        await self.cache.invalidate(self.cache_key(symbol))

    async def invalidate_all(self) -> int:
        """Drop every cached stock quote."""
        return await self.cache.invalidate_pattern(STOCK_QUOTE_PREFIX)


class CryptoService:
    """Crypto prices with caching."""

    def __init__(
        self,
        cache: CacheManager,
        provider: CoinGeckoPriceProvider,
        ttl: float = 10,
    ) -> None:
        self.cache = cache
        self.provider = provider
        self.ttl = ttl

    async def get_price(self, symbol: str) -> dict[str, Any]:
        symbol = _normalize_symbol(symbol)

        async def fetch() -> dict[str, Any]:
            prices = await self.provider.get_simple_prices([symbol])
            return self.provider.transform(symbol, prices)

        result = await self.cache.get_or_fetch(f"crypto:price:{symbol}", fetch, self.ttl)
        return {
            **result.data,
            "cached": result.cached,
            "source": "cache" if result.cached else self.provider.source_name,
        }

    async def get_batch_prices(self, symbols: list[str]) -> list[dict[str, Any]]:
        """Get several prices with one upstream call, cached as one entry."""
        normalized = sorted({_normalize_symbol(s) for s in symbols})

        async def fetch() -> list[dict[str, Any]]:
            prices = await self.provider.get_simple_prices(normalized)
            return [self.provider.transform(s, prices) for s in normalized]

        result = await self.cache.get_or_fetch(
            f"crypto:batch:{','.join(normalized)}", fetch, self.ttl
        )
        source = "cache" if result.cached else self.provider.source_name
        return [{**price, "cached": result.cached, "source": source} for price in result.data]
