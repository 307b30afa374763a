"""Shared test fixtures for the streamrelay test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest

from streamrelay.infrastructure.config.schema import ProxyConfig
from streamrelay.infrastructure.proxy import ProxyRuntime
from streamrelay.infrastructure.proxy.upstream import UpstreamClient

# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
async def http_client() -> AsyncIterator[httpx.AsyncClient]:
    """Real httpx.AsyncClient for use with respx mocking."""
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture()
def upstream(http_client: httpx.AsyncClient) -> UpstreamClient:
    return UpstreamClient(http_client, max_concurrent=10)


@pytest.fixture()
async def runtime(upstream: UpstreamClient) -> AsyncIterator[ProxyRuntime]:
    """Independent ProxyRuntime (sweeps not started)."""
    rt = ProxyRuntime(upstream=upstream, config=ProxyConfig())
    yield rt
    await rt.aclose()
