"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
NFT Whale Tracker application, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """Ethereum RPC and collection contract settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://ethereum-rpc.publicnode.com",
        alias="CHAIN_RPC_URL",
        description="Primary Ethereum RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback Ethereum RPC endpoint",
    )
    contract_address: str = Field(
        default="0x60E4d786628Fea6478F785A6d7e704777c86a7c6",
        alias="CHAIN_CONTRACT_ADDRESS",
        description="ERC-721 collection contract to track",
    )
    genesis_block: int = Field(
        default=0,
        alias="CHAIN_GENESIS_BLOCK",
        ge=0,
        description="First block to replay from when starting in genesis mode",
    )
    logs_chunk_size_blocks: int = Field(
        default=2_000,
        alias="CHAIN_LOGS_CHUNK_SIZE_BLOCKS",
        ge=1,
        le=500_000,
        description="Block chunk size for eth_getLogs scans",
    )
    max_concurrent_requests: int = Field(
        default=5,
        alias="CHAIN_MAX_CONCURRENT_REQUESTS",
        ge=1,
        le=100,
        description="Maximum simultaneous outstanding RPC requests within a tick",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1_000.0,
        description="Client-side RPC rate limit",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("contract_address")
    @classmethod
    def validate_contract_address(cls, v: str) -> str:
        if not _ADDRESS_RE.match(v):
            raise ValueError("CHAIN_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v


class MonitorSettings(BaseSettings):
    """Block polling loop settings."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_", extra="ignore")

    poll_interval_seconds: float = Field(
        default=12.0,
        alias="MONITOR_POLL_INTERVAL_SECONDS",
        ge=0.5,
        le=3600.0,
        description="How often to poll for new blocks (Ethereum block time ~12s)",
    )
    slow_interval_seconds: float = Field(
        default=300.0,
        alias="MONITOR_SLOW_INTERVAL_SECONDS",
        ge=5.0,
        le=86_400.0,
        description="How often to re-check slow-moving metrics such as floor price",
    )
    start_mode: Literal["head", "genesis"] = Field(
        default="head",
        alias="MONITOR_START_MODE",
        description="Start from the current chain head or replay from CHAIN_GENESIS_BLOCK",
    )
    whale_threshold: int = Field(
        default=20,
        alias="MONITOR_WHALE_THRESHOLD",
        ge=1,
        le=100_000,
        description="Token count at which a holder is considered a whale",
    )
    metrics_window_hours: int = Field(
        default=24,
        alias="MONITOR_METRICS_WINDOW_HOURS",
        ge=1,
        le=24 * 30,
        description="Window for trading metrics used by price/volume alerts",
    )
    event_retention_hours: int = Field(
        default=24 * 7,
        alias="MONITOR_EVENT_RETENTION_HOURS",
        ge=1,
        le=24 * 90,
        description="How long ingested events are kept in memory for windowed metrics",
    )


class CacheSettings(BaseSettings):
    """Read-through metrics cache settings."""

    model_config = SettingsConfigDict(env_prefix="CACHE_", extra="ignore")

    ttl_seconds: int = Field(
        default=600,
        alias="CACHE_TTL_SECONDS",
        ge=1,
        le=7 * 24 * 3600,
        description="TTL for cached metrics",
    )
    key_prefix: str = Field(
        default="nft:metrics:",
        alias="CACHE_KEY_PREFIX",
        description="Redis key prefix for cached metrics",
    )


class BroadcastSettings(BaseSettings):
    """Real-time event broadcast settings."""

    model_config = SettingsConfigDict(env_prefix="BROADCAST_", extra="ignore")

    channel: str = Field(
        default="nft:events",
        alias="BROADCAST_CHANNEL",
        description="Redis pub/sub channel for new transfer events",
    )


class TelegramSettings(BaseSettings):
    """Telegram notification settings."""

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_", extra="ignore")

    bot_token: SecretStr | None = Field(
        default=None,
        alias="TELEGRAM_BOT_TOKEN",
        description="Telegram bot token",
    )
    chat_id: str | None = Field(
        default=None,
        alias="TELEGRAM_CHAT_ID",
        description="Telegram chat ID for alerts",
    )

    @property
    def enabled(self) -> bool:
        """Check if Telegram notifications are enabled."""
        return self.bot_token is not None and self.chat_id is not None


class WebhookSettings(BaseSettings):
    """Generic JSON webhook notification settings."""

    model_config = SettingsConfigDict(env_prefix="ALERT_WEBHOOK_", extra="ignore")

    url: SecretStr | None = Field(
        default=None,
        alias="ALERT_WEBHOOK_URL",
        description="Webhook URL receiving alert payloads",
    )

    @property
    def enabled(self) -> bool:
        """Check if webhook notifications are enabled."""
        return self.url is not None


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from nft_whale_tracker.config import get_settings

        settings = get_settings()
        print(settings.chain.contract_address)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
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
    monitor: MonitorSettings = Field(
        default_factory=lambda: MonitorSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    cache: CacheSettings = Field(
        default_factory=lambda: CacheSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    broadcast: BroadcastSettings = Field(
        default_factory=lambda: BroadcastSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    telegram: TelegramSettings = Field(
        default_factory=lambda: TelegramSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    webhook: WebhookSettings = Field(
        default_factory=lambda: WebhookSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Run without sending actual notifications",
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
            "redis_url": self._redact_url(self.redis.url),
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
                "contract_address": self.chain.contract_address,
                "logs_chunk_size_blocks": str(self.chain.logs_chunk_size_blocks),
                "max_concurrent_requests": str(self.chain.max_concurrent_requests),
            },
            "monitor": {
                "poll_interval_seconds": str(self.monitor.poll_interval_seconds),
                "slow_interval_seconds": str(self.monitor.slow_interval_seconds),
                "start_mode": self.monitor.start_mode,
                "whale_threshold": str(self.monitor.whale_threshold),
                "metrics_window_hours": str(self.monitor.metrics_window_hours),
            },
            "telegram_enabled": str(self.telegram.enabled),
            "webhook_enabled": str(self.webhook.enabled),
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["run", "replay"]) -> None:
        """Validate command-specific requirements.

        Raises:
            ValueError: If a capability required by the command is not configured.
        """
        if self.monitor.metrics_window_hours > self.monitor.event_retention_hours:
            raise ValueError(
                "MONITOR_METRICS_WINDOW_HOURS must not exceed MONITOR_EVENT_RETENTION_HOURS"
            )
        if command == "run" and not self.dry_run and not (self.telegram.enabled or self.webhook.enabled):
            logging.getLogger(__name__).warning("No notification channels configured")

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

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

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
