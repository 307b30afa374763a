"""Application state container for FastAPI dependency injection."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
from starlette.datastructures import State

from streamrelay.infrastructure.config import AppConfig

if TYPE_CHECKING:
    from streamrelay.application.use_cases import (
        PlaylistProxyUseCase,
        SegmentProxyUseCase,
        SubtitleProxyUseCase,
    )
    from streamrelay.infrastructure.metrics import ProxyMetrics
    from streamrelay.infrastructure.proxy import ProxyRuntime


class AppState(State):
    """FastAPI application state with all DI resources.

    Lifecycle managed by composition.py::lifespan().
    """

    # Configuration
    config: AppConfig

    # Infrastructure
    http_client: httpx.AsyncClient
    proxy_runtime: ProxyRuntime

    # Metrics (zero-impact in-memory counters, owned by the runtime)
    metrics: ProxyMetrics

    # Use cases
    playlist_uc: PlaylistProxyUseCase
    segment_uc: SegmentProxyUseCase
    subtitle_uc: SubtitleProxyUseCase
