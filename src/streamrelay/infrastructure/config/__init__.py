from __future__ import annotations

from .load import load_config
from .schema import AppConfig, EnvOverrides, ProxyConfig

__all__ = ["AppConfig", "EnvOverrides", "ProxyConfig", "load_config"]
