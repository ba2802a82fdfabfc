"""Unified configuration schema for hubsync.

Defines Pydantic models for the config file structure with dedicated
sections for the Supabase connection, sync tuning, and logging. Includes
an adapter to the flat ``Config`` dataclass used at runtime.

Usage:
    from hubsync.config_schema import (
        UnifiedConfig, build_config, to_legacy_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_legacy_config(unified, cli_overrides={"url": "https://..."})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class SupabaseConfig(BaseModel):
    """Supabase connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="Supabase project URL")
    api_key: str | None = Field(
        default=None, description="Supabase anon/public API key"
    )
    email: str | None = Field(
        default=None, description="Account used for password sign-in"
    )
    password: str | None = Field(
        default=None, description="Password for the sign-in account"
    )
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    max_parallel_requests: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum concurrent requests to the store (1-100)",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Retry, refresh and paging settings.

    Attributes:
        retry_attempts: Total attempts per remote call.
        retry_base_delay: First backoff delay in seconds.
        retry_factor: Multiplier applied to the delay after each retry.
        retry_max_delay: Backoff ceiling in seconds.
        realtime: Subscribe to the store's realtime channel for refreshes.
        poll_interval: Fallback refresh period in seconds.
        initial_refresh_delay: Delay before the first scheduled refresh.
        page_size: Rows fetched per page in bulk reads.
        activity_timeout: Wall-clock budget for activity logging.
    """

    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=0.3, gt=0)
    retry_factor: float = Field(default=2.0, ge=1)
    retry_max_delay: float = Field(default=3.0, gt=0)
    realtime: bool = True
    poll_interval: float = Field(default=60.0, ge=1, le=3600)
    initial_refresh_delay: float = Field(default=2.0, ge=0)
    page_size: int = Field(default=1000, ge=1, le=10000)
    activity_timeout: float = Field(default=1.5, gt=0)

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has defaults, so ``UnifiedConfig()`` is always valid.
    """

    supabase: SupabaseConfig = Field(default_factory=SupabaseConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}

    def fallbacks(self) -> dict:
        """Flatten the supabase and sync sections into ``load_config`` fallbacks."""
        merged = {
            k: v for k, v in self.supabase.model_dump().items() if v is not None
        }
        merged.update(self.sync.model_dump())
        return merged


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_legacy_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the runtime ``Config`` dataclass,
    applying CLI overrides on top.

    CLI overrides dict keys: url, api_key, email, password, insecure, debug.

    Returns:
        ``Config`` instance (NOT validated; run ``validate_config()``
        separately if needed).
    """
    from .config import Config

    overrides = cli_overrides or {}
    sb = unified.supabase
    sync = unified.sync

    return Config(
        supabase_url=overrides.get("url") or sb.url or "",
        api_key=overrides.get("api_key") or sb.api_key or "",
        email=overrides.get("email") or sb.email,
        password=overrides.get("password") or sb.password,
        insecure=overrides.get("insecure", False) or sb.insecure,
        debug=overrides.get("debug", False) or sb.debug,
        retry_attempts=sync.retry_attempts,
        retry_base_delay=sync.retry_base_delay,
        retry_factor=sync.retry_factor,
        retry_max_delay=sync.retry_max_delay,
        realtime=sync.realtime,
        poll_interval=sync.poll_interval,
        initial_refresh_delay=sync.initial_refresh_delay,
        page_size=sync.page_size,
        activity_timeout=sync.activity_timeout,
        max_parallel_requests=sb.max_parallel_requests,
    )
