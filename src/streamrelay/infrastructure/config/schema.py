"""Pydantic configuration models with validation."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import (
    AliasChoices,
    AliasPath,
    BaseModel,
    Field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .defaults import DEFAULT_USER_AGENT

Environment = Literal["dev", "test", "prod"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console"]


class ProxyConfig(BaseModel):
    """Configuration for the media proxy (caches, range state, sweeps).

    All values configurable via YAML (proxy section) or ENV vars.
    """

    enabled: bool = Field(
        default=True,
        description="Mount the /m3u8-proxy, /ts-proxy and /sub-proxy routes.",
    )
    public_base_url: Optional[str] = Field(
        default=None,
        description=(
            "Base URL written into rewritten playlists. "
            "If unset, derived from X-Forwarded-Proto and the Host header."
        ),
    )

    cache_disabled: bool = Field(
        default=False,
        description="Disable the segment cache (every lookup misses).",
    )
    cache_max_entries: int = Field(
        default=2000,
        description="Maximum number of cached segment bodies.",
    )
    cache_expiry_seconds: float = Field(
        default=7200.0,
        description="Age after which a cached segment is never served.",
    )
    cache_sweep_interval_seconds: float = Field(
        default=1800.0,
        description="Interval of the segment cache expiry/size sweep.",
    )

    open_range_clamp_ttl_seconds: float = Field(
        default=300.0,
        description="Window in which only the first bytes=0- request is clamped.",
    )
    clamp_sweep_interval_seconds: float = Field(
        default=600.0,
        description="Interval of the clamp-state sweep.",
    )

    tail_prefetch_ttl_seconds: float = Field(
        default=600.0,
        description="Lifetime of a prefetched tail window.",
    )
    tail_sweep_interval_seconds: float = Field(
        default=900.0,
        description="Interval of the tail-window sweep.",
    )

    progressive_max_end_bytes: int = Field(
        default=256 * 1024 * 1024 - 1,
        description="Absolute ceiling for progressive open-range growth.",
    )
    progressive_max_tracked_urls: int = Field(
        default=10_000,
        description="Max URLs with progressive state (least recently used evicted).",
    )

    shutdown_drain_seconds: float = Field(
        default=5.0,
        description="How long shutdown waits for in-flight prefetches.",
    )

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().rstrip("/")
        return v or None

    @field_validator("cache_max_entries", "progressive_max_tracked_urls")
    @classmethod
    def _validate_positive_count(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("entry limits must be > 0")
        return v

    @field_validator(
        "cache_expiry_seconds",
        "cache_sweep_interval_seconds",
        "open_range_clamp_ttl_seconds",
        "clamp_sweep_interval_seconds",
        "tail_prefetch_ttl_seconds",
        "tail_sweep_interval_seconds",
    )
    @classmethod
    def _validate_positive_duration(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("durations must be > 0")
        return v


class AppConfig(BaseModel):
    """
    Canonical application configuration (validated, final).

    Note:
    - YAML is expected to be sectioned (http/logging/proxy).
    - Environment variables are handled by EnvOverrides(BaseSettings) to allow strict
      precedence control (defaults < YAML < ENV < CLI) in load.py.
    """

    # General
    app_name: str = Field(default="streamrelay", description="Application name.")
    environment: Environment = Field(
        default="dev",
        description="Runtime environment (affects defaults like log format).",
    )

    # Upstream HTTP client (YAML section: http.*)
    http_timeout_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices(
            "http_timeout_seconds",
            AliasPath("http", "timeout_seconds"),
        ),
        description="Upstream HTTP timeout in seconds (per connect/read).",
    )
    http_follow_redirects: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "http_follow_redirects",
            AliasPath("http", "follow_redirects"),
        ),
        description="Whether the upstream client follows redirects.",
    )
    http_user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        validation_alias=AliasChoices(
            "http_user_agent",
            AliasPath("http", "user_agent"),
        ),
        description="Default User-Agent for upstream requests.",
    )
    http_max_concurrent: int = Field(
        default=50,
        validation_alias=AliasChoices(
            "http_max_concurrent",
            AliasPath("http", "max_concurrent"),
        ),
        description="Max concurrent upstream connection setups.",
    )

    # Logging (YAML section: logging.*)
    log_level: LogLevel = Field(
        default="INFO",
        validation_alias=AliasChoices(
            "log_level",
            AliasPath("logging", "level"),
        ),
        description="Log level.",
    )
    log_format: Optional[LogFormat] = Field(
        default=None,
        validation_alias=AliasChoices(
            "log_format",
            AliasPath("logging", "format"),
        ),
        description=(
            "Log renderer format (console/json). If unset, derived from environment."
        ),
    )

    # Media proxy (YAML section: proxy.*)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)

    @field_validator("http_timeout_seconds")
    @classmethod
    def _validate_http_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("http_timeout_seconds must be > 0")
        return v

    @field_validator("http_max_concurrent")
    @classmethod
    def _validate_max_concurrent(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("http_max_concurrent must be > 0")
        return v

    @model_validator(mode="after")
    def _derive_defaults(self) -> "AppConfig":
        # Default log format: console in dev/test, json in prod.
        if self.log_format is None:
            self.log_format = "json" if self.environment == "prod" else "console"
        return self

    def to_sectioned_dict(self) -> dict[str, Any]:
        """
        Dump configuration in the sectioned shape used by config.yaml/docs.
        """
        return {
            "app_name": self.app_name,
            "environment": self.environment,
            "http": {
                "timeout_seconds": self.http_timeout_seconds,
                "follow_redirects": self.http_follow_redirects,
                "user_agent": self.http_user_agent,
                "max_concurrent": self.http_max_concurrent,
            },
            "logging": {"level": self.log_level, "format": self.log_format},
            "proxy": self.proxy.model_dump(),
        }


class EnvOverrides(BaseSettings):
    """
    Environment-variable overrides (all optional).

    Intended usage:
    - load.py creates EnvOverrides() to read STREAMRELAY_* variables,
      converts to dict of set values, merges into YAML/defaults,
      then validates AppConfig.

    Supported env var examples (flat, explicit):
    - STREAMRELAY_HTTP_TIMEOUT_SECONDS
    - STREAMRELAY_LOG_LEVEL
    - STREAMRELAY_DISABLE_CACHE
    - STREAMRELAY_ENABLE_PROXY
    - STREAMRELAY_PUBLIC_BASE_URL
    """

    model_config = SettingsConfigDict(
        env_prefix="STREAMRELAY_",
        extra="ignore",
        case_sensitive=False,
    )

    app_name: Optional[str] = None
    environment: Optional[Environment] = None

    http_timeout_seconds: Optional[float] = None
    http_follow_redirects: Optional[bool] = None
    http_user_agent: Optional[str] = None
    http_max_concurrent: Optional[int] = None

    log_level: Optional[LogLevel] = None
    log_format: Optional[LogFormat] = None

    enable_proxy: Optional[bool] = None
    public_base_url: Optional[str] = None
    disable_cache: Optional[bool] = None
    cache_max_entries: Optional[int] = None
    cache_expiry_seconds: Optional[float] = None

    def to_update_dict(self) -> dict[str, Any]:
        """
        Return only values that were actually provided (non-None), for merging.
        """
        return self.model_dump(exclude_none=True)
