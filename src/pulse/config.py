"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates cache, request and provider settings and provides typed access.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Cache:
        CACHE_ENABLED: Master switch; disabled means every read misses
        CACHE_BACKEND: "sqlite" (persistent) or "memory"
        CACHE_DIR: Directory holding the SQLite database
        CACHE_NAMESPACES: Comma-separated store names created at init
        CACHE_DEFAULT_NAMESPACE: Namespace used by the cache manager
        CACHE_SINGLE_FLIGHT: Coalesce concurrent misses on the same key

    Requests:
        REQUEST_TIMEOUT: Per-attempt timeout in seconds
        REQUEST_RETRIES: Additional attempts after the first
        REQUEST_RETRY_DELAY: Base backoff delay in seconds
        REQUEST_EXPONENTIAL_BACKOFF: Double the delay on each retry

    Providers:
        BACKEND_URL / BACKEND_ENABLED / BACKEND_FALLBACK: Proxy path and
            whether to fall back to direct provider calls
        FINNHUB_BASE_URL / FINNHUB_API_KEY: Direct stock quotes
        COINGECKO_BASE_URL: Direct crypto prices
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cache
    CACHE_ENABLED: bool = Field(default=True, description="Enable caching")
    CACHE_BACKEND: Literal["sqlite", "memory"] = Field(
        default="sqlite", description="Cache storage backend"
    )
    CACHE_DIR: Path = Field(default=Path(".cache"), description="Cache directory")
    CACHE_DB_NAME: str = Field(
        default="pulse_cache.db", description="SQLite database file name"
    )
    CACHE_NAMESPACES: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["quotes", "crypto", "news", "metadata"],
        description="Cache namespaces (store names)",
    )
    CACHE_DEFAULT_NAMESPACE: str = Field(
        default="quotes", description="Namespace used by the cache manager"
    )
    CACHE_SINGLE_FLIGHT: bool = Field(
        default=True, description="Share one fetch between concurrent misses"
    )

    # TTLs in seconds
    TTL_STOCK_QUOTE: int = Field(default=15, ge=1, description="Stock quote TTL")
    TTL_CRYPTO_PRICE: int = Field(default=10, ge=1, description="Crypto price TTL")
    TTL_DEFAULT: int = Field(default=60, ge=1, description="Default TTL")

    # Request defaults
    REQUEST_TIMEOUT: float = Field(
        default=5.0, gt=0.0, description="Per-attempt timeout in seconds"
    )
    REQUEST_RETRIES: int = Field(
        default=2, ge=0, le=10, description="Additional attempts after the first"
    )
    REQUEST_RETRY_DELAY: float = Field(
        default=1.0, gt=0.0, description="Base retry delay in seconds"
    )
    REQUEST_EXPONENTIAL_BACKOFF: bool = Field(
        default=True, description="Exponential instead of constant backoff"
    )

    # Providers
    BACKEND_URL: str = Field(
        default="http://localhost:3001", description="Backend proxy base URL"
    )
    BACKEND_ENABLED: bool = Field(default=True, description="Route through backend")
    BACKEND_FALLBACK: bool = Field(
        default=True, description="Fall back to direct provider calls"
    )
    FINNHUB_BASE_URL: str = Field(
        default="https://finnhub.io/api/v1", description="Finnhub API base URL"
    )
    FINNHUB_API_KEY: str | None = Field(default=None, description="Finnhub API key")
    COINGECKO_BASE_URL: str = Field(
        default="https://api.coingecko.com/api/v3",
        description="CoinGecko API base URL",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    @field_validator("CACHE_NAMESPACES", mode="before")
    @classmethod
    def split_namespaces(cls, v: object) -> object:
        """Accept a comma-separated string from the environment."""
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("CACHE_NAMESPACES")
    @classmethod
    def validate_namespaces(cls, v: list[str]) -> list[str]:
        """Require at least one namespace and no duplicates."""
        if not v:
            raise ValueError("CACHE_NAMESPACES must name at least one namespace")
        if len(set(v)) != len(v):
            raise ValueError("CACHE_NAMESPACES must not contain duplicates")
        return v

    @model_validator(mode="after")
    def validate_default_namespace(self) -> Settings:
        """Ensure the manager's namespace is one of the configured ones."""
        if self.CACHE_DEFAULT_NAMESPACE not in self.CACHE_NAMESPACES:
            raise ValueError(
                f"CACHE_DEFAULT_NAMESPACE {self.CACHE_DEFAULT_NAMESPACE!r} "
                f"is not in CACHE_NAMESPACES {self.CACHE_NAMESPACES!r}"
            )
        return self

    @property
    def cache_db_path(self) -> Path:
        """Full path of the SQLite cache database."""
        return self.CACHE_DIR / self.CACHE_DB_NAME

    def ensure_directories(self) -> None:
        """Create the cache directory if it doesn't exist."""
        self.CACHE_DIR.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings with API keys redacted for display."""
        def redact(value: str | None) -> str | None:
            if value is None:
                return None
            return f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "***"

        return {
            "CACHE_ENABLED": self.CACHE_ENABLED,
            "CACHE_BACKEND": self.CACHE_BACKEND,
            "CACHE_DIR": str(self.CACHE_DIR),
            "CACHE_DB_NAME": self.CACHE_DB_NAME,
            "CACHE_NAMESPACES": ",".join(self.CACHE_NAMESPACES),
            "CACHE_DEFAULT_NAMESPACE": self.CACHE_DEFAULT_NAMESPACE,
            "CACHE_SINGLE_FLIGHT": self.CACHE_SINGLE_FLIGHT,
            "TTL_STOCK_QUOTE": self.TTL_STOCK_QUOTE,
            "TTL_CRYPTO_PRICE": self.TTL_CRYPTO_PRICE,
            "TTL_DEFAULT": self.TTL_DEFAULT,
            "REQUEST_TIMEOUT": self.REQUEST_TIMEOUT,
            "REQUEST_RETRIES": self.REQUEST_RETRIES,
            "REQUEST_RETRY_DELAY": self.REQUEST_RETRY_DELAY,
            "REQUEST_EXPONENTIAL_BACKOFF": self.REQUEST_EXPONENTIAL_BACKOFF,
            "BACKEND_URL": self.BACKEND_URL,
            "BACKEND_ENABLED": self.BACKEND_ENABLED,
            "BACKEND_FALLBACK": self.BACKEND_FALLBACK,
            "FINNHUB_BASE_URL": self.FINNHUB_BASE_URL,
            "FINNHUB_API_KEY": redact(self.FINNHUB_API_KEY),
            "COINGECKO_BASE_URL": self.COINGECKO_BASE_URL,
            "LOG_LEVEL": self.LOG_LEVEL,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
