"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
PnL indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _split_csv(v: object, *, name: str) -> tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        return tuple(p.strip() for p in v.split(",") if p.strip())
    if isinstance(v, (list, tuple)):
        return tuple(str(x).strip() for x in v if str(x).strip())
    raise TypeError(f"Invalid {name} type")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Blockchain RPC provider pool settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("https://mainnet.base.org",),
        alias="CHAIN_RPC_URLS",
        description="RPC endpoints in priority order (comma-separated)",
    )
    provider_strategy: Literal["race", "priority"] = Field(
        default="priority",
        alias="CHAIN_PROVIDER_STRATEGY",
        description="How metadata and balance calls pick providers",
    )
    provider_timeout_seconds: float = Field(
        default=10.0,
        alias="CHAIN_PROVIDER_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Overall timeout for one gateway call across all providers",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Per-provider request rate limit",
    )
    unhealthy_after_failures: int = Field(
        default=3,
        alias="CHAIN_UNHEALTHY_AFTER_FAILURES",
        ge=1,
        le=100,
        description="Consecutive failures before a provider is marked unhealthy",
    )
    recovery_interval_seconds: float = Field(
        default=60.0,
        alias="CHAIN_RECOVERY_INTERVAL_SECONDS",
        ge=0.0,
        le=3600.0,
        description="How long an unhealthy provider is skipped before being retried",
    )
    metadata_cache_ttl_seconds: int = Field(
        default=24 * 3600,
        alias="CHAIN_METADATA_CACHE_TTL_SECONDS",
        ge=60,
        le=30 * 24 * 3600,
        description="Redis TTL for token symbol/decimals",
    )

    @field_validator("rpc_urls", mode="before")
    @classmethod
    def _parse_rpc_urls(cls, v: object) -> tuple[str, ...]:
        urls = _split_csv(v, name="CHAIN_RPC_URLS")
        if not urls:
            raise ValueError("CHAIN_RPC_URLS must list at least one endpoint")
        for url in urls:
            if not url.startswith(("http://", "https://")):
                raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return urls


class SwapFeedSettings(BaseSettings):
    """Upstream swap feed (GraphQL DEX trades API) settings."""

    model_config = SettingsConfigDict(env_prefix="SWAP_FEED_", extra="ignore")

    url: str = Field(
        default="https://streaming.bitquery.io/graphql",
        alias="SWAP_FEED_URL",
        description="GraphQL endpoint of the swap feed",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="SWAP_FEED_API_KEY",
        description="Bearer token for the swap feed",
    )
    network: str = Field(
        default="base",
        alias="SWAP_FEED_NETWORK",
        description="Network name passed to the feed query",
    )
    page_size: int = Field(
        default=500,
        alias="SWAP_FEED_PAGE_SIZE",
        ge=1,
        le=25_000,
        description="Swaps requested per page",
    )
    max_pages: int = Field(
        default=200,
        alias="SWAP_FEED_MAX_PAGES",
        ge=1,
        le=100_000,
        description="Safety ceiling on pages fetched per ingestion run",
    )
    page_retries: int = Field(
        default=3,
        alias="SWAP_FEED_PAGE_RETRIES",
        ge=0,
        le=20,
        description="Retries for a page that fails with a transient error",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        alias="SWAP_FEED_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff between page retries (doubles each retry)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        alias="SWAP_FEED_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="HTTP timeout for one page request",
    )
    protocol_fee_addresses: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="SWAP_FEED_PROTOCOL_FEE_ADDRESSES",
        description="Protocol contract addresses whose legs are never wallet trades (comma-separated)",
    )
    fee_protocol_hint: str = Field(
        default="clanker",
        alias="SWAP_FEED_FEE_PROTOCOL_HINT",
        description="Protocol name fragment whose dust legs are treated as fee transfers",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("SWAP_FEED_URL must be an HTTP(S) endpoint")
        return v

    @field_validator("protocol_fee_addresses", mode="before")
    @classmethod
    def _parse_fee_addresses(cls, v: object) -> tuple[str, ...]:
        return tuple(a.lower() for a in _split_csv(v, name="SWAP_FEED_PROTOCOL_FEE_ADDRESSES"))


class IndexerSettings(BaseSettings):
    """Wallet indexing job queue and worker pool settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    workers: int = Field(
        default=4,
        alias="INDEXER_WORKERS",
        ge=1,
        le=256,
        description="Number of indexing worker tasks",
    )
    queue_size: int = Field(
        default=1000,
        alias="INDEXER_QUEUE_SIZE",
        ge=1,
        le=1_000_000,
        description="Maximum queued indexing jobs before triggers are rejected",
    )
    max_concurrent_upstream: int = Field(
        default=2,
        alias="INDEXER_MAX_CONCURRENT_UPSTREAM",
        ge=1,
        le=256,
        description="Maximum jobs talking to the swap feed at once",
    )
    job_timeout_seconds: float = Field(
        default=300.0,
        alias="INDEXER_JOB_TIMEOUT_SECONDS",
        gt=0.0,
        le=24 * 3600.0,
        description="Overall timeout after which a job's registration is marked FAILED",
    )
    default_genesis_block: int = Field(
        default=0,
        alias="INDEXER_DEFAULT_GENESIS_BLOCK",
        ge=0,
        description="Starting block when neither the wallet nor the token has a cursor",
    )
    persist_retries: int = Field(
        default=3,
        alias="INDEXER_PERSIST_RETRIES",
        ge=0,
        le=20,
        description="Retries for conflicting database writes",
    )
    stale_sweep_interval_seconds: float = Field(
        default=60.0,
        alias="INDEXER_STALE_SWEEP_INTERVAL_SECONDS",
        gt=0.0,
        le=24 * 3600.0,
        description="How often registrations stuck in INDEXING past the job timeout are marked FAILED",
    )
    status_max_entries: int = Field(
        default=10_000,
        alias="INDEXER_STATUS_MAX_ENTRIES",
        ge=1,
        le=1_000_000,
        description="Maximum jobs kept in the status registry",
    )
    status_ttl_seconds: float = Field(
        default=3600.0,
        alias="INDEXER_STATUS_TTL_SECONDS",
        ge=1.0,
        le=30 * 24 * 3600.0,
        description="How long finished jobs remain visible in the status registry",
    )


class PricingSettings(BaseSettings):
    """Current token price source settings."""

    model_config = SettingsConfigDict(env_prefix="PRICING_", extra="ignore")

    dexscreener_url: str = Field(
        default="https://api.dexscreener.com/latest/dex",
        alias="PRICING_DEXSCREENER_URL",
        description="DexScreener API base URL",
    )
    cache_ttl_seconds: int = Field(
        default=300,
        alias="PRICING_CACHE_TTL_SECONDS",
        ge=1,
        le=24 * 3600,
        description="How long a fetched price is reused",
    )
    timeout_seconds: float = Field(
        default=3.0,
        alias="PRICING_TIMEOUT_SECONDS",
        gt=0.0,
        le=60.0,
        description="HTTP timeout for price lookups",
    )

    @field_validator("dexscreener_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("PRICING_DEXSCREENER_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from pnl_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.chain.rpc_urls)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    swap_feed: SwapFeedSettings = Field(
        default_factory=lambda: SwapFeedSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    pricing: PricingSettings = Field(
        default_factory=lambda: PricingSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_urls": ", ".join(self.chain.rpc_urls),
                "provider_strategy": self.chain.provider_strategy,
                "provider_timeout_seconds": str(self.chain.provider_timeout_seconds),
            },
            "swap_feed": {
                "url": self.swap_feed.url,
                "api_key": "(set)" if self.swap_feed.api_key else "(not set)",
                "network": self.swap_feed.network,
                "page_size": str(self.swap_feed.page_size),
                "max_pages": str(self.swap_feed.max_pages),
            },
            "indexer": {
                "workers": str(self.indexer.workers),
                "queue_size": str(self.indexer.queue_size),
                "job_timeout_seconds": str(self.indexer.job_timeout_seconds),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(
        self, *, command: Literal["index-wallet", "sync-token", "recalculate", "add-token"]
    ) -> None:
        """Validate command-specific requirements.

        Commands that read the swap feed refuse to run without an API key.
        """
        if command in ("index-wallet", "sync-token") and not self.swap_feed.api_key:
            raise ValueError("SWAP_FEED_API_KEY is required to read the swap feed")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
