"""Hardcoded default configuration values."""

from __future__ import annotations

from typing import Any

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

DEFAULT_CONFIG: dict[str, Any] = {
    "app_name": "streamrelay",
    "environment": "dev",
    "http": {
        "timeout_seconds": 30.0,
        "follow_redirects": True,
        "user_agent": DEFAULT_USER_AGENT,
        "max_concurrent": 50,
    },
    "logging": {
        "level": "INFO",
        "format": None,  # Derived from environment in schema.py
    },
    "proxy": {
        "enabled": True,
        "public_base_url": None,
        "cache_disabled": False,
        "cache_max_entries": 2000,
        "cache_expiry_seconds": 2 * 60 * 60,
        "cache_sweep_interval_seconds": 30 * 60,
        "open_range_clamp_ttl_seconds": 5 * 60,
        "clamp_sweep_interval_seconds": 10 * 60,
        "tail_prefetch_ttl_seconds": 10 * 60,
        "tail_sweep_interval_seconds": 15 * 60,
        "progressive_max_end_bytes": 256 * 1024 * 1024 - 1,
        "progressive_max_tracked_urls": 10_000,
        "shutdown_drain_seconds": 5.0,
    },
}
