"""
querycache Configuration Management

Settings are loaded from ``QUERY_CACHE_*`` environment variables (or a
``.env`` file) with Pydantic Settings. ``CacheConfig`` is the mutable
runtime view the cache coordinator toggles.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Cache settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QUERY_CACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ═══════════════════════════════════════════════════════════════
    # TIERS
    # ═══════════════════════════════════════════════════════════════
    request_cache_enabled: bool = Field(default=True, description="Enable the ephemeral tier")
    persistent_cache_enabled: bool = Field(default=True, description="Enable the durable tier")
    auto_promote: bool = Field(
        default=True, description="Copy durable hits into the ephemeral tier"
    )
    default_ttl: int = Field(default=3600, ge=1, description="Durable TTL in seconds")
    default_store: str | None = Field(default=None, description="Named durable store")
    max_ephemeral_items: int = Field(
        default=1000, ge=1, description="Max entries per ephemeral cache"
    )

    # ═══════════════════════════════════════════════════════════════
    # REDIS STORE (Optional)
    # ═══════════════════════════════════════════════════════════════
    redis_url: str | None = Field(default=None, description="Redis URL")
    redis_password: str | None = Field(default=None, description="Redis password")
    key_prefix: str = Field(default="querycache", description="Namespace for Redis keys")

    # ═══════════════════════════════════════════════════════════════
    # LOGGING
    # ═══════════════════════════════════════════════════════════════
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    json_logs: bool = Field(default=False, description="Render logs as JSON")
    log_stats: bool = Field(
        default=False, description="Log ephemeral cache statistics after each request"
    )

    @field_validator("key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        """Keep the prefix free of separators so key parsing stays unambiguous."""
        v = v.strip().rstrip(":")
        if not v:
            raise ValueError("key_prefix must not be empty")
        return v

    @field_validator("default_store")
    @classmethod
    def normalize_default_store(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


@dataclass
class CacheConfig:
    """Runtime switches of the cache coordinator; every field can change live."""

    request_cache_enabled: bool = True
    persistent_cache_enabled: bool = True
    auto_promote: bool = True
    default_ttl: int = 3600
    default_store: str | None = None
    max_ephemeral_items: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheConfig:
        return cls(
            request_cache_enabled=settings.request_cache_enabled,
            persistent_cache_enabled=settings.persistent_cache_enabled,
            auto_promote=settings.auto_promote,
            default_ttl=settings.default_ttl,
            default_store=settings.default_store,
            max_ephemeral_items=settings.max_ephemeral_items,
        )

    def update(self, **changes: Any) -> None:
        """Apply ``changes``; unknown option names raise ``KeyError``."""
        for name, value in changes.items():
            if name not in self.__dataclass_fields__:
                raise KeyError(f"Unknown cache option: {name}")
            setattr(self, name, value)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
