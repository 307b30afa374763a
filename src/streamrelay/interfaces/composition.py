"""Composition root: dependency injection via FastAPI lifespan."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import cast

import httpx
import structlog
from fastapi import FastAPI

from streamrelay.application.use_cases import (
    PlaylistProxyUseCase,
    SegmentProxyUseCase,
    SubtitleProxyUseCase,
)
from streamrelay.infrastructure.config.schema import AppConfig
from streamrelay.infrastructure.proxy import ProxyRuntime
from streamrelay.infrastructure.proxy.playlist_rewriter import rewrite_playlist
from streamrelay.infrastructure.proxy.range_negotiation import build_relay_headers
from streamrelay.interfaces.app_state import AppState

log = structlog.get_logger(__name__)


def _create_http_client(config: AppConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.http_timeout_seconds),
        headers={"User-Agent": config.http_user_agent},
        follow_redirects=config.http_follow_redirects,
        limits=httpx.Limits(max_connections=config.http_max_concurrent * 2),
    )


def wire_use_cases(state: AppState, runtime: ProxyRuntime) -> None:
    """Build the proxy use cases on top of *runtime*."""
    state.proxy_runtime = runtime
    state.metrics = runtime.metrics
    state.playlist_uc = PlaylistProxyUseCase(
        upstream=runtime.upstream,
        prefetcher=runtime.prefetcher,
        spawner=runtime.spawner,
        rewrite=rewrite_playlist,
        metrics=runtime.metrics,
    )
    state.segment_uc = SegmentProxyUseCase(
        upstream=runtime.upstream,
        cache=runtime.segment_cache,
        tail_cache=runtime.tail_cache,
        negotiator=runtime.negotiator,
        spawner=runtime.spawner,
        relay_headers=build_relay_headers,
        metrics=runtime.metrics,
    )
    state.subtitle_uc = SubtitleProxyUseCase(
        upstream=runtime.upstream,
        metrics=runtime.metrics,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan Hook: Initialize and cleanup all resources (DI Composition Root).

    Order matters:
        1. HTTP client (shared by every upstream call)
        2. Proxy runtime (caches, range state, background work)
        3. Use cases (stateless, wired on top of the runtime)

    Teardown runs in reverse: background work is drained before the
    HTTP client it uses is closed.
    """
    state = cast(AppState, app.state)
    config = state.config

    # 1) HTTP client
    state.http_client = _create_http_client(config)
    log.info(
        "http_client_initialized",
        timeout_seconds=config.http_timeout_seconds,
        max_concurrent=config.http_max_concurrent,
    )

    # 2) Proxy runtime
    runtime = ProxyRuntime.from_config(config, state.http_client)
    runtime.start()

    # 3) Use cases
    wire_use_cases(state, runtime)
    log.info(
        "proxy_initialized",
        enabled=config.proxy.enabled,
        cache_disabled=config.proxy.cache_disabled,
        public_base_url=config.proxy.public_base_url,
    )

    try:
        yield
    finally:
        await runtime.aclose()
        await state.http_client.aclose()
        log.info("http_client_closed")
