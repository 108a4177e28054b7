# =============================================================================
# TravelWatch Settings Configuration
# =============================================================================
"""
Centralized configuration management using Pydantic Settings.

This module provides type-safe configuration loaded from environment variables
and .env files, following the 12-factor app methodology.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class KafkaSettings(BaseSettings):
    """Kafka connection and topic configuration."""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Kafka broker addresses"
    )
    topic_transactions: str = Field(
        default="transactions",
        description="Topic for incoming transactions"
    )
    topic_candidates: str = Field(
        default="fraud_candidates",
        description="Topic for emitted fraud candidates"
    )
    consumer_group: str = Field(
        default="travelwatch-detectors",
        description="Consumer group ID"
    )


class RedisSettings(BaseSettings):
    """Redis connection used by the account lookup."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")


class JoinSettings(BaseSettings):
    """Windowed join parameters."""

    model_config = SettingsConfigDict(env_prefix="JOIN_")

    # Only the forward ("after") bound is configurable, the backward bound is 0
    window_seconds: int = Field(
        default=600,
        gt=0,
        description="Maximum gap between two transactions of a pair (W)"
    )
    retention_seconds: int = Field(
        default=600,
        gt=0,
        description="How long a transaction stays matchable behind the watermark (R)"
    )
    max_buffer_per_key: int = Field(
        default=1000,
        ge=2,
        description="Hard cap on buffered transactions per account"
    )
    partitions: int = Field(
        default=4,
        ge=1,
        le=256,
        description="Number of key-sharded worker partitions"
    )
    allow_arrival_time_fallback: bool = Field(
        default=True,
        description="Use arrival time when the payload carries no timestamp"
    )
    idle_key_seconds: Optional[int] = Field(
        default=None,
        gt=0,
        description="Wall-clock inactivity before an account's state is dropped (default: R)"
    )

    @model_validator(mode="after")
    def validate_retention(self) -> "JoinSettings":
        """Ensure retention_seconds >= window_seconds."""
        if self.retention_seconds < self.window_seconds:
            raise ValueError(
                f"retention_seconds ({self.retention_seconds}) must be >= "
                f"window_seconds ({self.window_seconds})"
            )
        return self

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000

    @property
    def retention_ms(self) -> int:
        return self.retention_seconds * 1000

    @property
    def idle_key_ms(self) -> int:
        seconds = self.retention_seconds if self.idle_key_seconds is None else self.idle_key_seconds
        return seconds * 1000


class LookupSettings(BaseSettings):
    """Account metadata lookup configuration."""

    model_config = SettingsConfigDict(env_prefix="LOOKUP_")

    enabled: bool = Field(default=False, description="Attach account contact data")
    backend: Literal["memory", "redis"] = Field(
        default="redis",
        description="Lookup implementation"
    )
    timeout_seconds: float = Field(
        default=0.5,
        gt=0.0,
        description="Upper bound on a single lookup"
    )


class Settings(BaseSettings):
    """
    Master settings aggregating all configuration sections.

    Usage:
        settings = get_settings()
        print(settings.kafka.bootstrap_servers)
        print(settings.join.window_ms)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    log_level: str = Field(default="INFO")

    # Nested settings
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    join: JoinSettings = Field(default_factory=JoinSettings)
    lookup: LookupSettings = Field(default_factory=LookupSettings)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings loaded from environment.

    Note:
        Settings are cached for performance. Call `get_settings.cache_clear()`
        to reload settings if environment changes.
    """
    return Settings()
